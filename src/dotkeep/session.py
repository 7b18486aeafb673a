"""The single owner of configuration, state table and selection for one run."""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from pathlib import Path

from .batch import BatchExecutor
from .config import ApplicationConfig, Config, PackageSpec, expand_path, save_config
from .context import HostContext
from .detection import application_state, detect_entry_state
from .dispatcher import CheckDispatcher
from .manager import DotkeepError, DotkeepManager
from .models import (
    ApplicationItem,
    BatchResult,
    EntryItem,
    EntryStateResult,
    ModifiedTemplate,
    PathState,
    SubEntryKey,
)
from .packages import PackageInstaller
from .selection import SelectionModel
from .store import RenderStore, StoreError
from .templates import TemplateEngine

logger = logging.getLogger(__name__)


class SelectionError(DotkeepError):
    """Raised when a batch operation has nothing (or something unknown) to act on."""


class PersistenceError(DotkeepError):
    """Raised when a configuration edit could not be saved and was rolled back."""


class ReconcileSession:
    """Holds the application table and runs checks and batch operations against it.

    All mutation happens on the caller's thread. Checks run on the dispatcher and
    are folded back in with :meth:`merge_results`.
    """

    def __init__(
        self,
        config: Config,
        *,
        host: HostContext | None = None,
        store: RenderStore | None = None,
        manager: DotkeepManager | None = None,
        installer: PackageInstaller | None = None,
        dispatcher: CheckDispatcher | None = None,
        save: Callable[[Config, Path], None] = save_config,
        filter_enabled: bool = True,
    ) -> None:
        self.config = config
        self.host = host or HostContext.detect()
        self.store = store
        self.templates = TemplateEngine(
            store,
            config.settings.backup_root,
            self.host,
            history_keep=config.settings.history_keep,
        )
        self.manager = manager or DotkeepManager(self.templates)
        self.installer = installer or PackageInstaller(self.host.os)
        self.dispatcher = dispatcher or CheckDispatcher()
        self.selection = SelectionModel()
        self.filter_enabled = filter_enabled
        self.applications: list[ApplicationItem] = []
        self._save = save
        self.build_items()

    def __enter__(self) -> "ReconcileSession":
        return self

    def __exit__(self, *_exc_info: object) -> None:
        self.close()

    def close(self) -> None:
        self.dispatcher.shutdown()

    # ------------------------------------------------------------------
    # State table

    def build_items(self) -> list[ApplicationItem]:
        """Rebuild the table from the current config; clears the selection."""

        items: list[ApplicationItem] = []
        for app_index, application in enumerate(self.config.applications):
            entries: list[EntryItem] = []
            for entry_index, entry in enumerate(application.entries):
                target = entry.target_for(self.host.os)
                if target is None:
                    continue
                entries.append(EntryItem(entry=entry, target=target, config_index=entry_index))
            items.append(
                ApplicationItem(
                    application=application,
                    config_index=app_index,
                    entries=entries,
                    is_filtered=self.filter_enabled and not application.matches(self.host),
                )
            )
        self.applications = items
        self.selection.clear()
        return items

    def entry_paths(self, item: EntryItem) -> tuple[Path, Path]:
        """Return ``(backup, target)`` for ``item`` on this host."""

        backup = self.config.resolve_backup(item.entry.backup)
        target = expand_path(item.target, base_dir=self.config.config_path.parent)
        return backup, target

    def entry(self, key: SubEntryKey) -> EntryItem | None:
        if not 0 <= key.app < len(self.applications):
            return None
        entries = self.applications[key.app].entries
        if not 0 <= key.sub < len(entries):
            return None
        return entries[key.sub]

    def application_state(self, app_index: int) -> PathState:
        return application_state(self.applications[app_index])

    def recheck(self, keys: Iterable[SubEntryKey]) -> None:
        """Re-detect ``keys`` synchronously, ignoring coordinates that no longer exist."""

        for key in keys:
            item = self.entry(key)
            if item is not None:
                item.state = self._entry_check(item)()

    # ------------------------------------------------------------------
    # Asynchronous checks

    def schedule_checks(self) -> None:
        """Dispatch a check for every entry and package of each visible application."""

        for app_index, app in enumerate(self.applications):
            if app.is_filtered:
                continue
            self._dispatch(app_index)

    def merge_results(self) -> int:
        """Fold every arrived check result into the table and return how many applied."""

        applied = 0
        for result in self.dispatcher.drain():
            if isinstance(result, EntryStateResult):
                item = self.entry(result.key)
                if item is None:
                    logger.debug("discarding stale state result for %s", result.key)
                    continue
                item.state = result.state
            else:
                if not 0 <= result.app < len(self.applications):
                    logger.debug("discarding stale package result for application %d", result.app)
                    continue
                app = self.applications[result.app]
                app.pkg_method = result.method
                app.pkg_installed = result.installed
            applied += 1
        return applied

    def wait_for_checks(self, timeout: float | None = None) -> int:
        self.dispatcher.wait(timeout)
        return self.merge_results()

    def _dispatch(self, app_index: int, *, only_unresolved: bool = False) -> None:
        app = self.applications[app_index]
        for sub_index, item in enumerate(app.entries):
            if only_unresolved and item.state is not PathState.LOADING:
                continue
            item.state = PathState.LOADING
            self.dispatcher.submit_entry(SubEntryKey(app_index, sub_index), self._entry_check(item))

        spec = app.application.package
        if spec is not None and (not only_unresolved or app.pkg_installed is None):
            self.dispatcher.submit_package(app_index, self._package_check(spec))

    def _entry_check(self, item: EntryItem) -> Callable[[], PathState]:
        backup, target = self.entry_paths(item)
        entry = item.entry

        def check() -> PathState:
            return detect_entry_state(
                backup,
                target,
                is_folder=entry.is_folder,
                files=entry.files,
                template=entry.template,
                drift=self.templates,
            )

        return check

    def _package_check(self, spec: PackageSpec) -> Callable[[], tuple[str, bool]]:
        installer = self.installer

        def check() -> tuple[str, bool]:
            method = installer.detect_install_method(spec)
            return method, installer.is_installed(spec, method)

        return check

    # ------------------------------------------------------------------
    # Filtering

    def hidden_applications(self) -> list[int]:
        """Indices of applications the filter hides on this host."""

        return [
            index for index, app in enumerate(self.applications) if not app.application.matches(self.host)
        ]

    def hidden_selection_count(self) -> int:
        return self.selection.count_hidden(self.hidden_applications())

    def clear_hidden_selections(self) -> None:
        self.selection.clear_hidden(self.hidden_applications())

    def set_filter(self, enabled: bool) -> None:
        """Switch filtering on or off.

        Relaxing the filter dispatches checks only for entries of formerly
        hidden applications that were never resolved.
        """

        self.filter_enabled = enabled
        for app_index, app in enumerate(self.applications):
            was_filtered = app.is_filtered
            app.is_filtered = enabled and not app.application.matches(self.host)
            if was_filtered and not app.is_filtered:
                self._dispatch(app_index, only_unresolved=True)

    # ------------------------------------------------------------------
    # Selection helpers

    def select_by_names(
        self,
        applications: Iterable[str] = (),
        entries: Iterable[str] = (),
        *,
        select_all: bool = False,
    ) -> None:
        """Select applications by name and entries given as ``APP/ENTRY``."""

        if select_all:
            for app_index, app in enumerate(self.applications):
                if not app.is_filtered and not self.selection.is_application_selected(app_index):
                    self.selection.toggle_application(app_index, len(app.entries))

        for name in applications:
            app_index = self._visible_application(name)
            if not self.selection.is_application_selected(app_index):
                self.selection.toggle_application(app_index, len(self.applications[app_index].entries))

        for raw in entries:
            app_name, _, entry_name = raw.partition("/")
            if not entry_name:
                raise SelectionError(f"Entry '{raw}' must be given as APP/ENTRY")
            app_index = self._visible_application(app_name)
            app = self.applications[app_index]
            sub_index = next((i for i, item in enumerate(app.entries) if item.name == entry_name), -1)
            if sub_index < 0:
                raise SelectionError(f"Application '{app_name}' has no entry '{entry_name}' for {self.host.os}")
            if not self.selection.is_sub_entry_selected(app_index, sub_index):
                self.selection.toggle_sub_entry(app_index, sub_index)

    def _visible_application(self, name: str) -> int:
        for app_index, app in enumerate(self.applications):
            if app.name == name:
                if app.is_filtered:
                    raise SelectionError(f"Application '{name}' is filtered out on this host")
                return app_index
        raise SelectionError(f"Unknown application '{name}'")

    def _require_selection(self) -> None:
        if not self.selection.active:
            raise SelectionError("Nothing is selected")

    # ------------------------------------------------------------------
    # Batch operations

    def restore_selected(self) -> BatchResult:
        self._require_selection()
        self.merge_results()
        executor = self._executor()
        items = executor.plan_restore()
        result = executor.run_restore(items, self.manager)
        self.recheck(item.key for item in items)
        return result

    def backup_selected(self) -> BatchResult:
        """Copy live targets of the selection into the backup root."""

        self._require_selection()
        self.merge_results()
        executor = self._executor()
        items = executor.plan_backup()
        result = executor.run_backup(items, self.manager)
        self.recheck(item.key for item in items)
        return result

    def install_selected(self) -> BatchResult:
        self._require_selection()
        self.merge_results()
        executor = self._executor()
        return executor.run_install(executor.plan_install(), self.installer)

    def delete_selected(self) -> BatchResult:
        """Delete the selection from the configuration, then rebuild the table."""

        self._require_selection()
        self.merge_results()
        executor = self._executor()
        result = executor.run_delete(executor.plan_delete(), self)
        self.build_items()
        self.schedule_checks()
        return result

    def _executor(self) -> BatchExecutor:
        return BatchExecutor(self.applications, self.selection, self.entry_paths)

    # ------------------------------------------------------------------
    # Configuration edits

    def delete_application(self, app_index: int) -> None:
        application = self.config.applications[app_index]
        self._commit(self.config.without_application(app_index))
        self._forget_history(application, range(len(application.entries)))

    def delete_entry(self, app_index: int, entry_index: int) -> bool:
        """Delete one entry; returns ``True`` when that removed the whole application."""

        application = self.config.applications[app_index]
        collapsed = len(application.entries) == 1
        self._commit(self.config.without_entry(app_index, entry_index))
        self._forget_history(application, [entry_index])
        return collapsed

    def _commit(self, updated: Config) -> None:
        previous = self.config
        self.config = updated
        try:
            self._save(updated, updated.config_path)
        except OSError as exc:
            self.config = previous
            raise PersistenceError(f"Saving '{updated.config_path}' failed, change rolled back: {exc}") from exc

    def _forget_history(self, application: ApplicationConfig, entry_indices: Iterable[int]) -> None:
        for entry_index in entry_indices:
            entry = application.entries[entry_index]
            if not entry.is_template_folder:
                continue
            try:
                removed = self.templates.forget(self.config.resolve_backup(entry.backup))
            except StoreError as exc:
                logger.warning("could not drop render history of %s/%s: %s", application.name, entry.name, exc)
                continue
            logger.debug("dropped %d render records for %s/%s", removed, application.name, entry.name)

    # ------------------------------------------------------------------
    # Drift

    def modified_templates(self) -> list[ModifiedTemplate]:
        """Every rendered template whose file differs from its last pure render."""

        modified: list[ModifiedTemplate] = []
        for app in self.applications:
            if app.is_filtered:
                continue
            for item in app.entries:
                if not item.entry.is_template_folder:
                    continue
                backup, _target = self.entry_paths(item)
                modified.extend(self.templates.modified_templates(backup))
        return modified
