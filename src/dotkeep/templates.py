"""Template rendering and drift detection backed by the render store."""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Iterator

from jinja2 import Environment, StrictUndefined, TemplateError

from .context import HostContext
from .filesystem import ensure_symlink, hash_bytes, path_exists
from .models import ModifiedTemplate, RenderRecord
from .store import RenderStore, StoreError

logger = logging.getLogger(__name__)

TEMPLATE_SUFFIX = ".tmpl"
RENDERED_SUFFIX = ".tmpl.rendered"
CONFLICT_SUFFIX = ".tmpl.conflict"


class TemplateRenderError(RuntimeError):
    """Raised when a template cannot be read or rendered."""


def is_template_file(name: str) -> bool:
    return name.endswith(TEMPLATE_SUFFIX) and len(name) > len(TEMPLATE_SUFFIX)


def is_rendered_file(name: str) -> bool:
    return name.endswith(RENDERED_SUFFIX)


def is_conflict_file(name: str) -> bool:
    return name.endswith(CONFLICT_SUFFIX)


def rendered_path(template: Path) -> Path:
    return template.with_name(template.name + RENDERED_SUFFIX[len(TEMPLATE_SUFFIX) :])


def conflict_path(template: Path) -> Path:
    return template.with_name(template.name + CONFLICT_SUFFIX[len(TEMPLATE_SUFFIX) :])


def link_path(template: Path) -> Path:
    """Return the in-backup name that points at the rendered output (``foo.tmpl`` -> ``foo``)."""

    return template.with_name(template.name[: -len(TEMPLATE_SUFFIX)])


def iter_templates(directory: Path) -> Iterator[Path]:
    """Yield template sources below ``directory`` in a stable order."""

    if not directory.is_dir():
        return
    for dirpath, dirnames, filenames in os.walk(directory):
        dirnames.sort()
        for name in sorted(filenames):
            if is_rendered_file(name) or is_conflict_file(name) or not is_template_file(name):
                continue
            yield Path(dirpath) / name


class TemplateEngine:
    """Renders ``*.tmpl`` files and answers drift questions about them.

    Without a store every drift predicate is ``False`` and renders are not
    recorded.
    """

    def __init__(
        self,
        store: RenderStore | None,
        backup_root: Path,
        host: HostContext,
        *,
        history_keep: int = 10,
    ) -> None:
        self.store = store
        self.backup_root = backup_root
        self.host = host
        self.history_keep = history_keep
        self._jinja = Environment(
            autoescape=False,
            undefined=StrictUndefined,
            keep_trailing_newline=True,
        )

    def template_key(self, template: Path) -> str:
        """Return the render-store key for ``template``."""

        try:
            return template.relative_to(self.backup_root).as_posix()
        except ValueError:
            return template.as_posix()

    # ------------------------------------------------------------------
    # Drift

    def has_outdated_templates(self, backup_dir: Path) -> bool:
        """Return ``True`` if any template was never rendered or changed since its last render."""

        if self.store is None:
            return False
        for template in iter_templates(backup_dir):
            try:
                record = self.store.get_latest_render(self.template_key(template))
                source_hash = hash_bytes(template.read_bytes())
            except (StoreError, OSError) as exc:
                logger.warning("skipping outdated check for %s: %s", template, exc)
                continue
            if record is None or record.template_hash != source_hash:
                return True
        return False

    def has_modified_rendered_files(self, backup_dir: Path) -> bool:
        """Return ``True`` if any rendered output differs from its last pure render."""

        return bool(self.modified_templates(backup_dir, first_only=True))

    def modified_templates(self, backup_dir: Path, *, first_only: bool = False) -> list[ModifiedTemplate]:
        if self.store is None:
            return []
        modified: list[ModifiedTemplate] = []
        for template in iter_templates(backup_dir):
            key = self.template_key(template)
            output = rendered_path(template)
            try:
                record = self.store.get_latest_render(key)
                if record is None:
                    continue
                current = output.read_bytes()
            except FileNotFoundError:
                continue
            except (StoreError, OSError) as exc:
                logger.warning("skipping modified check for %s: %s", template, exc)
                continue
            if current != record.pure_render:
                modified.append(
                    ModifiedTemplate(
                        template_path=template,
                        rendered_path=output,
                        key=key,
                        pure_render=record.pure_render,
                        current=current,
                    )
                )
                if first_only:
                    break
        return modified

    def forget(self, backup_dir: Path) -> int:
        """Drop the render history of every template under ``backup_dir``."""

        if self.store is None:
            return 0
        removed = 0
        for template in iter_templates(backup_dir):
            removed += self.store.remove_template(self.template_key(template))
        return removed

    # ------------------------------------------------------------------
    # Rendering

    def render_bytes(self, template: Path, source: bytes) -> bytes:
        variables = {
            "os": self.host.os,
            "distro": self.host.distro,
            "hostname": self.host.hostname,
            "user": self.host.user,
            "env": dict(os.environ),
        }
        try:
            text = self._jinja.from_string(source.decode("utf-8")).render(**variables)
        except (TemplateError, UnicodeDecodeError) as exc:
            raise TemplateRenderError(f"Failed to render template '{template}': {exc}") from exc
        return text.encode("utf-8")

    def render_folder(self, backup_dir: Path, *, force: bool = False) -> list[Path]:
        """Render every template below ``backup_dir`` and return the outputs written."""

        written: list[Path] = []
        for template in iter_templates(backup_dir):
            output = self.render_template(template, force=force)
            if output is not None:
                written.append(output)
        return written

    def render_template(self, template: Path, *, force: bool = False) -> Path | None:
        """Render one template, record it and link ``foo`` to ``foo.tmpl.rendered``.

        Returns the path written, or ``None`` when the template was unchanged.
        A hand-edited rendered file is never overwritten unless ``force`` is set;
        the new render goes to the conflict file instead.
        """

        try:
            source = template.read_bytes()
        except OSError as exc:
            raise TemplateRenderError(f"Failed to read template '{template}': {exc}") from exc

        key = self.template_key(template)
        source_hash = hash_bytes(source)
        output = rendered_path(template)
        record = self._latest(key)

        if not force and record is not None and record.template_hash == source_hash and path_exists(output):
            logger.debug("template %s unchanged, skipping render", key)
            ensure_symlink(link_path(template), output)
            return None

        rendered = self.render_bytes(template, source)
        destination = output
        if not force and record is not None and path_exists(output):
            current = output.read_bytes()
            if current != record.pure_render and current != rendered:
                destination = conflict_path(template)
                logger.warning("%s was edited by hand; new render written to %s", output, destination)

        logger.info("rendering template %s -> %s", key, destination)
        destination.write_bytes(rendered)
        self._record(key, rendered, source_hash)
        ensure_symlink(link_path(template), output)
        return destination

    def _latest(self, key: str) -> RenderRecord | None:
        if self.store is None:
            return None
        try:
            return self.store.get_latest_render(key)
        except StoreError as exc:
            logger.warning("failed to query render history for %s: %s", key, exc)
            return None

    def _record(self, key: str, rendered: bytes, source_hash: str) -> None:
        if self.store is None:
            return
        try:
            self.store.save_render(key, rendered, source_hash, self.host.os, self.host.hostname)
            self.store.prune_history(key, self.history_keep)
        except StoreError as exc:
            logger.warning("failed to save render record for %s: %s", key, exc)
