from __future__ import annotations

from pathlib import Path

from dotkeep.batch import APPLICATION_LEVEL, BatchExecutor, DeleteItem
from dotkeep.config import ApplicationConfig, Config, EntryConfig, PackageSpec, Settings
from dotkeep.manager import DotkeepError
from dotkeep.models import ApplicationItem, EntryItem, SubEntryKey
from dotkeep.selection import SelectionModel


def _application(name: str, entry_names: list[str], *, package: PackageSpec | None = None) -> ApplicationConfig:
    entries = tuple(
        EntryConfig(name=entry, backup=f"{name}/{entry}", targets={"linux": f"~/.{name}/{entry}"})
        for entry in entry_names
    )
    return ApplicationConfig(name=name, entries=entries, package=package)


def _items(applications: list[ApplicationConfig]) -> list[ApplicationItem]:
    items = []
    for app_index, application in enumerate(applications):
        entries = [
            EntryItem(entry=entry, target=entry.targets["linux"], config_index=entry_index)
            for entry_index, entry in enumerate(application.entries)
        ]
        items.append(ApplicationItem(application=application, config_index=app_index, entries=entries))
    return items


def _resolve(item: EntryItem) -> tuple[Path, Path]:
    return Path("/backup") / item.entry.backup, Path("/home") / item.target


class RecordingRestorer:
    def __init__(self, failing: set[str] | None = None) -> None:
        self.failing = failing or set()
        self.calls: list[tuple[str, str]] = []

    def restore_folder(self, entry: EntryConfig, backup: Path, target: Path) -> None:
        self.calls.append(("folder", entry.backup))
        if entry.backup in self.failing:
            raise DotkeepError(f"cannot restore {entry.backup}")

    def restore_files(self, entry: EntryConfig, backup: Path, target: Path) -> None:
        self.calls.append(("files", entry.backup))


class ConfigDeleter:
    """Applies deletes to a real ``Config`` value the way the session does."""

    def __init__(self, config: Config, failing: set[tuple[int, int]] | None = None) -> None:
        self.config = config
        self.failing = failing or set()
        self.calls: list[tuple[int, int]] = []

    def delete_application(self, app_index: int) -> None:
        self.calls.append((app_index, APPLICATION_LEVEL))
        self.config = self.config.without_application(app_index)

    def delete_entry(self, app_index: int, entry_index: int) -> bool:
        self.calls.append((app_index, entry_index))
        if (app_index, entry_index) in self.failing:
            raise OSError("disk full")
        collapsed = len(self.config.applications[app_index].entries) == 1
        self.config = self.config.without_entry(app_index, entry_index)
        return collapsed


def _config(applications: list[ApplicationConfig]) -> Config:
    settings = Settings(backup_root=Path("/backup"), state_db=Path("/backup/state.db"))
    return Config(config_path=Path("/cfg/dotkeep.toml"), settings=settings, applications=tuple(applications))


# ----------------------------------------------------------------------
# restore


def test_plan_restore_order_and_exclusions() -> None:
    apps = [_application("zsh", ["rc", "env"]), _application("nvim", ["config", "spell", "lazy"])]
    selection = SelectionModel()
    selection.toggle_sub_entry(0, 1)
    selection.toggle_application(1, 3)
    selection.toggle_sub_entry(1, 1)

    executor = BatchExecutor(_items(apps), selection, _resolve)
    plan = executor.plan_restore()

    assert [item.key for item in plan] == [SubEntryKey(1, 0), SubEntryKey(1, 2), SubEntryKey(0, 1)]
    assert plan[0].name == "nvim/config"


def test_plan_restore_skips_stale_coordinates() -> None:
    apps = [_application("zsh", ["rc"])]
    selection = SelectionModel()
    selection.toggle_sub_entry(0, 4)
    selection.toggle_sub_entry(7, 0)

    assert BatchExecutor(_items(apps), selection, _resolve).plan_restore() == []


def test_run_restore_continues_after_failure() -> None:
    apps = [_application("zsh", ["rc", "env", "aliases"])]
    selection = SelectionModel()
    selection.toggle_application(0, 3)
    restorer = RecordingRestorer(failing={"zsh/env"})

    executor = BatchExecutor(_items(apps), selection, _resolve)
    result = executor.run_restore(executor.plan_restore(), restorer)

    assert [call[1] for call in restorer.calls] == ["zsh/rc", "zsh/env", "zsh/aliases"]
    assert result.success_count == 2
    assert result.fail_count == 1
    failed = [item for item in result.results if not item.success]
    assert failed[0].name == "zsh/env"
    assert failed[0].message.startswith("Failed: ")
    assert result.results[0].message == "Restored: /home/~/.zsh/rc → /backup/zsh/rc"


def test_run_restore_uses_file_list_restore() -> None:
    entry = EntryConfig(name="rc", backup="zsh", targets={"linux": "~"}, files=(".zshrc",))
    apps = [ApplicationConfig(name="zsh", entries=(entry,))]
    selection = SelectionModel()
    selection.toggle_application(0, 1)
    restorer = RecordingRestorer()

    executor = BatchExecutor(_items(apps), selection, _resolve)
    executor.run_restore(executor.plan_restore(), restorer)

    assert restorer.calls == [("files", "zsh")]


# ----------------------------------------------------------------------
# backup


class RecordingBacker:
    def __init__(self, empty: set[str] | None = None, failing: set[str] | None = None) -> None:
        self.empty = empty or set()
        self.failing = failing or set()
        self.calls: list[tuple[str, str]] = []

    def backup_folder(self, entry: EntryConfig, backup: Path, target: Path) -> bool:
        self.calls.append(("folder", entry.backup))
        if entry.backup in self.failing:
            raise DotkeepError(f"cannot copy {entry.backup}")
        return entry.backup not in self.empty

    def backup_files(self, entry: EntryConfig, backup: Path, target: Path) -> bool:
        self.calls.append(("files", entry.backup))
        return entry.backup not in self.empty


def test_backup_follows_restore_plan_and_reports_each_entry() -> None:
    files_entry = EntryConfig(name="rc", backup="zsh", targets={"linux": "~"}, files=(".zshrc",))
    apps = [
        ApplicationConfig(name="zsh", entries=(files_entry,)),
        _application("nvim", ["config", "spell", "lazy"]),
    ]
    selection = SelectionModel()
    selection.toggle_application(1, 3)
    selection.toggle_sub_entry(0, 0)
    backer = RecordingBacker(empty={"nvim/spell"}, failing={"nvim/lazy"})

    executor = BatchExecutor(_items(apps), selection, _resolve)
    plan = executor.plan_backup()
    result = executor.run_backup(plan, backer)

    assert [item.key for item in plan] == [item.key for item in executor.plan_restore()]
    assert backer.calls == [
        ("folder", "nvim/config"),
        ("folder", "nvim/spell"),
        ("folder", "nvim/lazy"),
        ("files", "zsh"),
    ]
    assert (result.success_count, result.fail_count) == (3, 1)
    messages = {item.name: item.message for item in result.results}
    assert messages["nvim/config"] == "Backed up: /home/~/.nvim/config → /backup/nvim/config"
    assert messages["nvim/spell"].startswith("Nothing to back up")
    assert messages["nvim/lazy"] == "Failed: cannot copy nvim/lazy"



# ----------------------------------------------------------------------
# install


class RecordingInstaller:
    def __init__(self, items: list[ApplicationItem], failing: set[str] | None = None) -> None:
        self.items = items
        self.failing = failing or set()
        self.calls: list[str] = []

    def install(self, spec: PackageSpec, method: str) -> str:
        name = next(iter(spec.managers.values()))
        # every earlier success is already visible when the next install starts
        self.calls.append(name)
        self.seen = [item.pkg_installed for item in self.items]
        if name in self.failing:
            raise RuntimeError("lock held")
        return f"Installed via {method}"


def test_install_runs_sequentially_and_updates_flags() -> None:
    apps = [
        _application("zsh", ["rc"], package=PackageSpec(managers={"pacman": "zsh"})),
        _application("nvim", ["config"], package=PackageSpec(managers={"pacman": "neovim"})),
        _application("git", ["config"], package=PackageSpec(managers={"pacman": "git"})),
        _application("plain", ["config"]),
    ]
    items = _items(apps)
    for item in items[:3]:
        item.pkg_method = "pacman"
        item.pkg_installed = False
    items[2].pkg_installed = True

    selection = SelectionModel()
    for index, item in enumerate(items):
        selection.toggle_application(index, len(item.entries))

    installer = RecordingInstaller(items, failing={"neovim"})
    executor = BatchExecutor(items, selection, _resolve)
    plan = executor.plan_install()
    result = executor.run_install(plan, installer)

    assert [item.name for item in plan] == ["zsh", "nvim"]
    assert plan[0].spec.managers == {"pacman": "zsh"}
    assert installer.calls == ["zsh", "neovim"]
    assert installer.seen[0] is True
    assert items[0].pkg_installed is True
    assert items[1].pkg_installed is False
    assert (result.success_count, result.fail_count) == (1, 1)
    assert result.results[0].message == "Installed via pacman"


def test_install_skips_unresolved_packages() -> None:
    apps = [_application("zsh", ["rc"], package=PackageSpec(managers={"pacman": "zsh"}))]
    items = _items(apps)
    selection = SelectionModel()
    selection.toggle_application(0, 1)

    assert BatchExecutor(items, selection, _resolve).plan_install() == []


# ----------------------------------------------------------------------
# delete


def test_delete_all_entries_collapses_to_application_delete() -> None:
    apps = [_application("first", ["a"]), _application("nvim", ["x", "y", "z"]), _application("last", ["b"])]
    config = _config(apps)
    selection = SelectionModel()
    for sub in range(3):
        selection.toggle_sub_entry(1, sub)

    executor = BatchExecutor(_items(apps), selection, _resolve)
    plan = executor.plan_delete()
    deleter = ConfigDeleter(config)
    result = executor.run_delete(plan, deleter)

    assert [(item.app, item.entry) for item in plan] == [(1, 2), (1, 1), (1, 0)]
    assert deleter.calls == [(1, 2), (1, 1), (1, 0)]
    assert result.fail_count == 0
    assert [app.name for app in deleter.config.applications] == ["first", "last"]


def test_delete_reverse_order_across_applications() -> None:
    apps = [_application("a", ["one", "two"]), _application("b", ["one"]), _application("c", ["one", "two"])]
    selection = SelectionModel()
    selection.toggle_application(0, 2)
    selection.toggle_sub_entry(2, 0)
    selection.toggle_application(1, 1)

    executor = BatchExecutor(_items(apps), selection, _resolve)
    deleter = ConfigDeleter(_config(apps))
    result = executor.run_delete(executor.plan_delete(), deleter)

    assert deleter.calls == [(2, 0), (1, APPLICATION_LEVEL), (0, APPLICATION_LEVEL)]
    assert result.success_count == 3
    remaining = deleter.config.applications
    assert [app.name for app in remaining] == ["c"]
    assert [entry.name for entry in remaining[0].entries] == ["two"]


def test_delete_with_excluded_entry_keeps_application() -> None:
    apps = [_application("nvim", ["x", "y", "z"])]
    selection = SelectionModel()
    selection.toggle_application(0, 3)
    selection.toggle_sub_entry(0, 1)

    executor = BatchExecutor(_items(apps), selection, _resolve)
    plan = executor.plan_delete()
    deleter = ConfigDeleter(_config(apps))
    executor.run_delete(plan, deleter)

    assert [(item.app, item.entry) for item in plan] == [(0, 2), (0, 0)]
    assert [entry.name for entry in deleter.config.applications[0].entries] == ["y"]


def test_delete_entries_after_application_removed() -> None:
    apps = [_application("a", ["one"]), _application("b", ["one"])]
    deleter = ConfigDeleter(_config(apps))
    items = [
        DeleteItem(name="b", app=1, entry=APPLICATION_LEVEL),
        DeleteItem(name="a/one", app=0, entry=0),
        DeleteItem(name="a/ghost", app=0, entry=0),
    ]

    result = BatchExecutor(_items(apps), SelectionModel(), _resolve).run_delete(items, deleter)

    assert deleter.calls == [(1, APPLICATION_LEVEL), (0, 0)]
    assert [item.success for item in result.results] == [True, True, True]
    assert result.results[2].message == "Removed with its application"
    assert deleter.config.applications == ()


def test_delete_failure_is_recorded_and_run_continues() -> None:
    apps = [_application("a", ["one", "two", "three"])]
    selection = SelectionModel()
    for sub in range(3):
        selection.toggle_sub_entry(0, sub)
    deleter = ConfigDeleter(_config(apps), failing={(0, 1)})

    executor = BatchExecutor(_items(apps), selection, _resolve)
    result = executor.run_delete(executor.plan_delete(), deleter)

    assert deleter.calls == [(0, 2), (0, 1), (0, 0)]
    assert (result.success_count, result.fail_count) == (2, 1)
    assert result.results[1].message == "Failed: disk full"
    assert [entry.name for entry in deleter.config.applications[0].entries] == ["two"]
