"""Sequential execution of restore, backup, install and delete over a selection."""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from .config import EntryConfig, PackageSpec
from .models import ApplicationItem, BatchResult, EntryItem, ResultItem, SubEntryKey
from .selection import SelectionModel

logger = logging.getLogger(__name__)

APPLICATION_LEVEL = -1


class Restorer(Protocol):
    def restore_folder(self, entry: EntryConfig, backup: Path, target: Path) -> None: ...

    def restore_files(self, entry: EntryConfig, backup: Path, target: Path) -> None: ...


class Backer(Protocol):
    def backup_folder(self, entry: EntryConfig, backup: Path, target: Path) -> bool: ...

    def backup_files(self, entry: EntryConfig, backup: Path, target: Path) -> bool: ...


class Installer(Protocol):
    def install(self, spec: PackageSpec, method: str) -> str: ...


class Deleter(Protocol):
    def delete_application(self, app_index: int) -> None: ...

    def delete_entry(self, app_index: int, entry_index: int) -> bool:
        """Delete one entry and return ``True`` if its application went with it."""
        ...


@dataclass(frozen=True, slots=True)
class EntryTask:
    name: str
    key: SubEntryKey


@dataclass(frozen=True, slots=True)
class InstallItem:
    name: str
    app: int
    spec: PackageSpec


@dataclass(frozen=True, slots=True)
class DeleteItem:
    """A delete addressed by configuration indices; ``entry`` is -1 for a whole application."""

    name: str
    app: int
    entry: int

    @property
    def sort_key(self) -> tuple[int, int]:
        return (self.app, self.entry)


class BatchExecutor:
    """Plans work items from a selection and runs them one at a time.

    A failing item is recorded and the run moves on; nothing is retried.
    """

    def __init__(
        self,
        applications: Sequence[ApplicationItem],
        selection: SelectionModel,
        resolve_paths: Callable[[EntryItem], tuple[Path, Path]],
    ) -> None:
        self.applications = applications
        self.selection = selection
        self.resolve_paths = resolve_paths

    # ------------------------------------------------------------------
    # Restore

    def plan_restore(self) -> list[EntryTask]:
        return self._plan_entries()

    def _plan_entries(self) -> list[EntryTask]:
        """Selected applications first (minus exclusions), then independent sub-entries."""

        items: list[EntryTask] = []
        seen: set[SubEntryKey] = set()

        for app_index in self.selection.selected_applications():
            if not 0 <= app_index < len(self.applications):
                continue
            app = self.applications[app_index]
            for sub_index, entry in enumerate(app.entries):
                if self.selection.is_excluded(app_index, sub_index):
                    continue
                key = SubEntryKey(app_index, sub_index)
                seen.add(key)
                items.append(EntryTask(name=f"{app.name}/{entry.name}", key=key))

        for key in self.selection.independent_sub_entries():
            if key in seen or not self._has_entry(key):
                continue
            app = self.applications[key.app]
            seen.add(key)
            items.append(EntryTask(name=f"{app.name}/{app.entries[key.sub].name}", key=key))

        return items

    def run_restore(self, items: Sequence[EntryTask], restorer: Restorer) -> BatchResult:
        results: list[ResultItem] = []
        for item in items:
            entry_item = self.applications[item.key.app].entries[item.key.sub]
            backup, target = self.resolve_paths(entry_item)
            try:
                if entry_item.entry.is_folder:
                    restorer.restore_folder(entry_item.entry, backup, target)
                else:
                    restorer.restore_files(entry_item.entry, backup, target)
            except Exception as exc:  # noqa: BLE001
                logger.warning("restore of %s failed: %s", item.name, exc)
                results.append(ResultItem(item.name, False, f"Failed: {exc}"))
                continue
            results.append(ResultItem(item.name, True, f"Restored: {target} → {backup}"))
        return BatchResult(results=tuple(results))

    # ------------------------------------------------------------------
    # Backup

    def plan_backup(self) -> list[EntryTask]:
        return self._plan_entries()

    def run_backup(self, items: Sequence[EntryTask], backer: Backer) -> BatchResult:
        results: list[ResultItem] = []
        for item in items:
            entry_item = self.applications[item.key.app].entries[item.key.sub]
            backup, target = self.resolve_paths(entry_item)
            try:
                if entry_item.entry.is_folder:
                    copied = backer.backup_folder(entry_item.entry, backup, target)
                else:
                    copied = backer.backup_files(entry_item.entry, backup, target)
            except Exception as exc:  # noqa: BLE001
                logger.warning("backup of %s failed: %s", item.name, exc)
                results.append(ResultItem(item.name, False, f"Failed: {exc}"))
                continue
            message = f"Backed up: {target} → {backup}" if copied else f"Nothing to back up at {target}"
            results.append(ResultItem(item.name, True, message))
        return BatchResult(results=tuple(results))

    # ------------------------------------------------------------------
    # Install

    def plan_install(self) -> list[InstallItem]:
        items: list[InstallItem] = []
        for app_index in self.selection.selected_applications():
            if not 0 <= app_index < len(self.applications):
                continue
            app = self.applications[app_index]
            spec = app.application.package
            if spec is not None and app.pkg_installed is False:
                items.append(InstallItem(name=app.name, app=app_index, spec=spec))
        return items

    def run_install(self, items: Sequence[InstallItem], installer: Installer) -> BatchResult:
        results: list[ResultItem] = []
        for item in items:
            app = self.applications[item.app]
            try:
                message = installer.install(item.spec, app.pkg_method or "none")
            except Exception as exc:  # noqa: BLE001
                logger.warning("install of %s failed: %s", item.name, exc)
                results.append(ResultItem(item.name, False, f"Failed: {exc}"))
                continue
            app.pkg_installed = True
            results.append(ResultItem(item.name, True, message or "Installed"))
        return BatchResult(results=tuple(results))

    # ------------------------------------------------------------------
    # Delete

    def plan_delete(self) -> list[DeleteItem]:
        """Return delete items ordered highest configuration index first."""

        items: list[DeleteItem] = []
        for app_index in self.selection.selected_applications():
            if not 0 <= app_index < len(self.applications):
                continue
            app = self.applications[app_index]
            kept = [
                entry
                for sub_index, entry in enumerate(app.entries)
                if not self.selection.is_excluded(app_index, sub_index)
            ]
            if len(kept) == len(app.entries):
                items.append(DeleteItem(name=app.name, app=app.config_index, entry=APPLICATION_LEVEL))
            else:
                items.extend(
                    DeleteItem(name=f"{app.name}/{entry.name}", app=app.config_index, entry=entry.config_index)
                    for entry in kept
                )

        for key in self.selection.independent_sub_entries():
            if not self._has_entry(key):
                continue
            app = self.applications[key.app]
            entry = app.entries[key.sub]
            items.append(DeleteItem(name=f"{app.name}/{entry.name}", app=app.config_index, entry=entry.config_index))

        items.sort(key=lambda item: item.sort_key, reverse=True)
        return items

    def run_delete(self, items: Sequence[DeleteItem], deleter: Deleter) -> BatchResult:
        """Run deletes in the given (reverse index) order.

        Indices below the one just deleted are unaffected, so every later item
        still addresses what it was planned against.
        """

        results: list[ResultItem] = []
        removed_apps: set[int] = set()

        for item in items:
            if item.app in removed_apps:
                if item.entry != APPLICATION_LEVEL:
                    results.append(ResultItem(item.name, True, "Removed with its application"))
                continue
            try:
                if item.entry == APPLICATION_LEVEL:
                    deleter.delete_application(item.app)
                    removed_apps.add(item.app)
                elif deleter.delete_entry(item.app, item.entry):
                    removed_apps.add(item.app)
            except Exception as exc:  # noqa: BLE001
                logger.warning("delete of %s failed: %s", item.name, exc)
                results.append(ResultItem(item.name, False, f"Failed: {exc}"))
                continue
            results.append(ResultItem(item.name, True, "Deleted successfully"))

        return BatchResult(results=tuple(results))

    def _has_entry(self, key: SubEntryKey) -> bool:
        return 0 <= key.app < len(self.applications) and 0 <= key.sub < len(self.applications[key.app].entries)
