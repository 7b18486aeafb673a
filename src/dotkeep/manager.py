"""Restore, adopt and backup operations for configured entries."""

from __future__ import annotations

import logging
import os
from pathlib import Path

from .config import EntryConfig
from .filesystem import (
    copy_entry,
    ensure_symlink,
    is_symlink,
    move_path,
    path_exists,
    set_aside,
    symlink_points_to,
)
from .templates import TemplateEngine, TemplateRenderError

logger = logging.getLogger(__name__)


class DotkeepError(RuntimeError):
    """Raised when dotkeep encounters an unrecoverable state."""


class DotkeepManager:
    """Links targets to their backups, adopting unmanaged targets on the way."""

    def __init__(
        self,
        templates: TemplateEngine | None = None,
        *,
        dry_run: bool = False,
        force_render: bool = False,
    ) -> None:
        self.templates = templates
        self.dry_run = dry_run
        self.force_render = force_render

    def restore_folder(self, entry: EntryConfig, backup: Path, target: Path) -> None:
        """Make ``target`` a symlink to the ``backup`` folder."""

        try:
            self._link(backup, target, label=entry.name)
        except OSError as exc:
            raise DotkeepError(f"Restoring '{target}' failed: {exc}") from exc

        if entry.is_template_folder and self.templates is not None and not self.dry_run:
            try:
                self.templates.render_folder(backup, force=self.force_render)
            except (TemplateRenderError, OSError) as exc:
                raise DotkeepError(str(exc)) from exc

    def restore_files(self, entry: EntryConfig, backup: Path, target: Path) -> None:
        """Link each listed file under ``target`` to its counterpart under ``backup``."""

        if not self.dry_run:
            backup.mkdir(parents=True, exist_ok=True)

        linked = 0
        for name in entry.files:
            try:
                if self._link(backup / name, target / name, label=f"{entry.name}/{name}", required=False):
                    linked += 1
            except OSError as exc:
                raise DotkeepError(f"Restoring '{target / name}' failed: {exc}") from exc

        if linked == 0 and not self.dry_run:
            raise DotkeepError(f"None of the files of '{entry.name}' exist in '{backup}' or '{target}'")

    def backup_folder(self, entry: EntryConfig, backup: Path, target: Path) -> bool:
        """Copy the live ``target`` folder into ``backup``.

        Returns ``False`` when there was nothing to copy: the target is missing
        or is a symlink, which already points into the backup.
        """

        if not path_exists(target):
            logger.debug("%s does not exist, nothing to back up", target)
            return False
        if is_symlink(target):
            logger.debug("skipping symlink %s", target)
            return False

        self._ensure_writable(backup)
        if self.dry_run:
            logger.info("[dry-run] would back up %s -> %s", target, backup)
            return True

        try:
            copy_entry(target, backup)
        except OSError as exc:
            raise DotkeepError(f"Backing up '{target}' failed: {exc}") from exc
        logger.info("backed up %s -> %s", target, backup)
        return True

    def backup_files(self, entry: EntryConfig, backup: Path, target: Path) -> bool:
        """Copy each listed file that exists under ``target`` into ``backup``."""

        if not target.is_dir():
            logger.debug("%s does not exist, nothing to back up", target)
            return False

        copied = 0
        for name in entry.files:
            source = target / name
            if not path_exists(source) or is_symlink(source):
                logger.debug("skipping %s: missing or a symlink", source)
                continue
            self._ensure_writable(backup / name)
            if self.dry_run:
                logger.info("[dry-run] would back up %s -> %s", source, backup / name)
                copied += 1
                continue
            try:
                copy_entry(source, backup / name)
            except OSError as exc:
                raise DotkeepError(f"Backing up '{source}' failed: {exc}") from exc
            logger.info("backed up %s -> %s", source, backup / name)
            copied += 1
        return copied > 0

    # ------------------------------------------------------------------
    # Internal helpers

    def _link(self, backup: Path, target: Path, *, label: str, required: bool = True) -> bool:
        if symlink_points_to(target, backup):
            logger.debug("%s already linked", target)
            return True

        self._ensure_writable(target)

        if self.dry_run:
            logger.info("[dry-run] would link %s -> %s", target, backup)
            return True

        if is_symlink(target):
            logger.info("removing incorrect symlink %s", target)
            target.unlink()

        if not path_exists(backup) and path_exists(target):
            logger.info("adopting %s into %s", target, backup)
            move_path(target, backup)

        if not path_exists(backup):
            if required:
                raise DotkeepError(f"Backup '{backup}' for '{label}' does not exist and there is nothing to adopt")
            logger.debug("skipping %s: not present in backup or target", label)
            return False

        if path_exists(target):
            moved = set_aside(target)
            logger.warning("existing %s moved aside to %s", target, moved)

        ensure_symlink(target, backup)
        logger.info("linked %s -> %s", target, backup)
        return True

    def _ensure_writable(self, path: Path) -> None:
        existing_ancestor = path.parent
        while not existing_ancestor.exists() and existing_ancestor != existing_ancestor.parent:
            existing_ancestor = existing_ancestor.parent

        if not os.access(existing_ancestor, os.W_OK | os.X_OK):
            raise DotkeepError(
                f"Cannot write to ancestor directory '{existing_ancestor}' for '{path}'. Run with elevated privileges."
            )
