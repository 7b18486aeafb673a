"""Command-line interface for dotkeep."""

from __future__ import annotations

import io
import logging
import re
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator

import tomli_w
import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from .config import DEFAULT_CONFIG_FILENAME, Config, ConfigError, load_config
from .context import current_os
from .differ import unified_diff
from .manager import DotkeepError
from .models import BatchResult, PathState
from .packages import PackageError
from .session import ReconcileSession, SelectionError
from .store import RenderStore, StoreError

app = typer.Typer(help="Symlink-based dotfile manager with template drift tracking")
console = Console()

STATE_STYLES = {
    PathState.LINKED: "green",
    PathState.READY: "cyan",
    PathState.ADOPT: "yellow",
    PathState.MISSING: "red",
    PathState.OUTDATED: "magenta",
    PathState.MODIFIED: "magenta",
    PathState.LOADING: "dim",
    PathState.FILTERED: "dim",
}


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log each filesystem action"),
    debug: bool = typer.Option(False, "--debug", help="Log everything, including state checks"),
) -> None:
    """Manage dotfiles as symlinks into a backup folder."""

    level = logging.DEBUG if debug else logging.INFO if verbose else logging.WARNING
    handler = RichHandler(console=Console(stderr=True), show_path=False, show_time=debug)
    handler.setFormatter(logging.Formatter("%(message)s"))
    logger = logging.getLogger("dotkeep")
    logger.handlers[:] = [handler]
    logger.setLevel(level)
    logger.propagate = False


def _load_config(config: Path | None) -> Config:
    return load_config(config)


def _open_store(config_obj: Config) -> RenderStore:
    return RenderStore.open(config_obj.settings.state_db)


@contextmanager
def _open_session(config: Path | None, *, ignore_filters: bool = False) -> Iterator[ReconcileSession]:
    config_obj = _load_config(config)
    store = _open_store(config_obj)
    try:
        with ReconcileSession(config_obj, store=store, filter_enabled=not ignore_filters) as session:
            yield session
    finally:
        store.close()


def _handle_error(exc: Exception) -> None:
    if isinstance(exc, typer.Exit):
        raise exc
    if isinstance(exc, PermissionError):
        console.print("[red]Permission denied.[/red] Re-run the command with elevated privileges (e.g. `sudo`).")
        raise typer.Exit(code=1)
    if isinstance(exc, ConfigError):
        message = str(exc)
        console.print(f"[red]{message}[/red]")
        if "does not exist" in message:
            console.print("[yellow]Use 'dotkeep init --config <path>' to create a configuration file.[/yellow]")
        elif "Expected to find" in message:
            console.print(
                "[yellow]Make sure you pointed to the directory containing the config file, or to the file itself.[/yellow]"
            )
        raise typer.Exit(code=1)
    if isinstance(exc, StoreError):
        console.print(f"[red]Render history unavailable: {exc}[/red]")
        console.print("[yellow]Check 'settings.state_db' in your configuration.[/yellow]")
        raise typer.Exit(code=1)
    if isinstance(exc, SelectionError):
        console.print(f"[red]{exc}[/red]")
        console.print("[yellow]Pick items with --app NAME, --entry APP/ENTRY or --all.[/yellow]")
        raise typer.Exit(code=1)
    if isinstance(exc, (DotkeepError, PackageError)):
        console.print(f"[red]{exc}[/red]")
        if "elevated privileges" in str(exc).lower():
            console.print(
                "[yellow]Tip: try rerunning with `sudo` or grant write access to the target directories.[/yellow]"
            )
        raise typer.Exit(code=1)
    raise exc


def _styled(state: PathState) -> str:
    style = STATE_STYLES.get(state, "white")
    return f"[{style}]{state.value}[/{style}]"


def _format_status(session: ReconcileSession) -> None:
    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Application")
    table.add_column("Entry")
    table.add_column("State")
    table.add_column("Target", overflow="fold")
    table.add_column("Package")

    for app_index, item in enumerate(session.applications):
        package = ""
        if item.has_package:
            if item.pkg_installed is None:
                package = "?"
            else:
                package = f"{item.pkg_method} ({'installed' if item.pkg_installed else 'not installed'})"
        table.add_row(item.name, "", _styled(session.application_state(app_index)), "", package)
        if item.is_filtered:
            continue
        for entry in item.entries:
            _backup, target = session.entry_paths(entry)
            table.add_row("", entry.name, _styled(entry.state), str(target), "")

    console.print(table)


def _format_results(result: BatchResult) -> None:
    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Item")
    table.add_column("Result")
    table.add_column("Details", overflow="fold")

    for item in result.results:
        outcome = "[green]ok[/green]" if item.success else "[red]failed[/red]"
        table.add_row(item.name, outcome, item.message)

    console.print(table)
    console.print(f"{result.success_count} succeeded, {result.fail_count} failed")


def _finish_batch(result: BatchResult, *, empty_message: str) -> None:
    if not result.results:
        console.print(f"[yellow]{empty_message}[/yellow]")
        return
    _format_results(result)
    if result.fail_count:
        raise typer.Exit(code=1)


# ----------------------------------------------------------------------
# init


@dataclass
class DiscoveredEntry:
    application: str
    raw_path: str
    is_dir: bool


def _parse_discovery_arg(raw: str) -> tuple[str, str]:
    if "=" in raw:
        name, path = raw.split("=", 1)
        return name.strip(), path.strip()
    return "", raw.strip()


def _sanitize_name(value: str) -> str:
    sanitized = re.sub(r"[^0-9A-Za-z]+", "_", value.strip().lower())
    sanitized = sanitized.strip("_")
    return sanitized or "app"


def _resolve_discovery_path(raw_path: str, config_dir: Path) -> Path:
    candidate = Path(raw_path).expanduser()
    if not candidate.is_absolute():
        candidate = (config_dir / candidate).resolve()
    return candidate


def _build_discovery(config_dir: Path, raw_discover: list[str] | None) -> list[DiscoveredEntry]:
    """Turn ``NAME=PATH`` arguments into adoption candidates.

    A directory argument contributes one application per child; a file
    argument contributes a single application.
    """

    if not raw_discover:
        return []

    discovered: list[DiscoveredEntry] = []
    seen: dict[str, int] = {}

    def claim(name: str) -> str:
        count = seen.get(name, 0)
        seen[name] = count + 1
        return name if count == 0 else f"{name}_{count + 1}"

    for raw in raw_discover:
        name_candidate, path_str = _parse_discovery_arg(raw)
        resolved = _resolve_discovery_path(path_str, config_dir)

        if not resolved.exists():
            console.print(f"[yellow]Discovery path '{path_str}' does not exist; skipping.[/yellow]")
            continue

        if resolved.is_dir() and not name_candidate:
            for child in sorted(resolved.iterdir()):
                discovered.append(
                    DiscoveredEntry(
                        application=claim(_sanitize_name(child.name)),
                        raw_path=f"{path_str.rstrip('/')}/{child.name}",
                        is_dir=child.is_dir(),
                    )
                )
            continue

        base_name = _sanitize_name(name_candidate or resolved.name)
        discovered.append(DiscoveredEntry(application=claim(base_name), raw_path=path_str, is_dir=resolved.is_dir()))

    return discovered


def _render_init_config(*, backup_root: str, discovered: list[DiscoveredEntry]) -> str:
    os_name = current_os()
    if not discovered:
        return f"""# dotkeep configuration

[settings]
backup_root = "{backup_root}"
history_keep = 10

[[applications]]
name = "nvim"
description = "Neovim"
# filters = [{{ include = {{ os = "linux|darwin" }} }}]
# package = {{ managers = {{ pacman = "neovim", brew = "neovim" }} }}

[[applications.entries]]
name = "config"
backup = "nvim"
targets = {{ {os_name} = "~/.config/nvim" }}
# template = true
"""

    applications = []
    for item in discovered:
        if item.is_dir:
            entry = {"name": "config", "backup": item.application, "targets": {os_name: item.raw_path}}
        else:
            parent, _, filename = item.raw_path.rpartition("/")
            entry = {
                "name": "config",
                "backup": item.application,
                "targets": {os_name: parent or "."},
                "files": [filename],
            }
        applications.append({"name": item.application, "entries": [entry]})

    data = {"settings": {"backup_root": backup_root}, "applications": applications}

    buffer = io.StringIO()
    buffer.write("# dotkeep configuration\n\n")
    buffer.write(tomli_w.dumps(data))
    return buffer.getvalue()


def _bootstrap_backup_dirs(config_dir: Path, backup_root: str, discovered: list[DiscoveredEntry]) -> None:
    root = Path(backup_root).expanduser()
    if not root.is_absolute():
        root = (config_dir / root).resolve()

    root.mkdir(parents=True, exist_ok=True)
    console.print(f"[green]Ensured backup root '{root}'.[/green]")

    for item in discovered:
        app_dir = root / item.application
        app_dir.mkdir(parents=True, exist_ok=True)
        console.print(f"[green]Ensured backup directory '{app_dir}'.[/green]")


@app.command()
def init(
    config: Path = typer.Option(
        Path(DEFAULT_CONFIG_FILENAME),
        "--config",
        "-c",
        help="Path to write the configuration file",
        dir_okay=False,
        writable=True,
    ),
    backup_root: str = typer.Option("./backup", "--backup-root", help="Backup folder to write into the config"),
    discover: list[str] = typer.Option(
        None,
        "--discover",
        help="Add adoption candidates from NAME=PATH, or every child of a PATH",
    ),
    bootstrap_backup: bool = typer.Option(
        False,
        "--bootstrap-backup/--no-bootstrap-backup",
        help="Create the backup directories after writing the config",
    ),
    force: bool = typer.Option(False, "--force", help="Overwrite existing config if present"),
) -> None:
    """Create a starter dotkeep configuration file."""

    config_path = config
    if config_path.exists() and not force:
        console.print(f"[red]Configuration '{config_path}' already exists. Use --force to overwrite.[/red]")
        raise typer.Exit(code=1)

    config_path.parent.mkdir(parents=True, exist_ok=True)
    discovered = _build_discovery(config_path.parent, discover)
    config_path.write_text(_render_init_config(backup_root=backup_root, discovered=discovered))
    console.print(f"[green]Created '{config_path}'.[/green]")

    if discovered:
        console.print("[yellow]Run 'dotkeep restore --all' to adopt the discovered entries.[/yellow]")
    if bootstrap_backup:
        _bootstrap_backup_dirs(config_path.parent, backup_root, discovered)


# ----------------------------------------------------------------------
# state and batch commands


@app.command()
def status(
    config: Path | None = typer.Option(None, "--config", "-c", help="Path to dotkeep.toml"),
    show_all: bool = typer.Option(False, "--all", "-a", help="Ignore application filters"),
) -> None:
    """Show every application and entry with its reconciliation state."""

    try:
        with _open_session(config, ignore_filters=show_all) as session:
            session.schedule_checks()
            session.wait_for_checks()
            _format_status(session)
            attention = {PathState.READY, PathState.ADOPT, PathState.OUTDATED, PathState.MODIFIED}
            if any(entry.state in attention for item in session.applications for entry in item.entries):
                console.print(
                    "[yellow]Some entries need attention. Run 'dotkeep restore' to link them or 'dotkeep diff' to review edits.[/yellow]"
                )
    except Exception as exc:  # noqa: BLE001
        _handle_error(exc)


@app.command()
def restore(
    config: Path | None = typer.Option(None, "--config", "-c", help="Path to dotkeep.toml"),
    application: list[str] = typer.Option(None, "--app", help="Restore every entry of an application"),
    entry: list[str] = typer.Option(None, "--entry", help="Restore a single entry given as APP/ENTRY"),
    select_all: bool = typer.Option(False, "--all", help="Restore every visible application"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Log the planned actions without touching disk"),
    force_render: bool = typer.Option(False, "--force-render", help="Re-render templates even when unchanged"),
) -> None:
    """Link targets to their backups, adopting unmanaged targets."""

    try:
        with _open_session(config) as session:
            session.manager.dry_run = dry_run
            session.manager.force_render = force_render
            session.select_by_names(application or (), entry or (), select_all=select_all)
            result = session.restore_selected()
            _finish_batch(result, empty_message="Nothing to restore.")
    except Exception as exc:  # noqa: BLE001
        _handle_error(exc)


@app.command()
def backup(
    config: Path | None = typer.Option(None, "--config", "-c", help="Path to dotkeep.toml"),
    application: list[str] = typer.Option(None, "--app", help="Back up every entry of an application"),
    entry: list[str] = typer.Option(None, "--entry", help="Back up a single entry given as APP/ENTRY"),
    select_all: bool = typer.Option(False, "--all", help="Back up every visible application"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Log the planned copies without touching disk"),
) -> None:
    """Copy live target files and folders into the backup root.

    Targets that are already symlinks are skipped.
    """

    try:
        with _open_session(config) as session:
            session.manager.dry_run = dry_run
            session.select_by_names(application or (), entry or (), select_all=select_all)
            result = session.backup_selected()
            _finish_batch(result, empty_message="Nothing to back up.")
    except Exception as exc:  # noqa: BLE001
        _handle_error(exc)


@app.command()
def install(
    config: Path | None = typer.Option(None, "--config", "-c", help="Path to dotkeep.toml"),
    application: list[str] = typer.Option(None, "--app", help="Install the package of an application"),
    select_all: bool = typer.Option(False, "--all", help="Install every missing package"),
) -> None:
    """Install the packages of the selected applications, one at a time."""

    try:
        with _open_session(config) as session:
            session.schedule_checks()
            session.wait_for_checks()
            session.select_by_names(application or (), select_all=select_all)
            result = session.install_selected()
            _finish_batch(result, empty_message="All selected packages are already installed.")
    except Exception as exc:  # noqa: BLE001
        _handle_error(exc)


@app.command()
def delete(
    config: Path | None = typer.Option(None, "--config", "-c", help="Path to dotkeep.toml"),
    application: list[str] = typer.Option(None, "--app", help="Remove an application from the config"),
    entry: list[str] = typer.Option(None, "--entry", help="Remove a single entry given as APP/ENTRY"),
    select_all: bool = typer.Option(False, "--all", help="Remove every visible application"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation"),
) -> None:
    """Remove applications or entries from the configuration.

    Files on disk are left alone; only the configuration and render history change.
    """

    try:
        with _open_session(config) as session:
            session.select_by_names(application or (), entry or (), select_all=select_all)
            apps, entries = session.selection.counts()
            if not yes and session.selection.active:
                typer.confirm(f"Delete {apps} application(s) and {entries} entry(ies)?", abort=True)
            result = session.delete_selected()
            _finish_batch(result, empty_message="Nothing to delete.")
    except Exception as exc:  # noqa: BLE001
        _handle_error(exc)


# ----------------------------------------------------------------------
# render history


@app.command()
def diff(
    config: Path | None = typer.Option(None, "--config", "-c", help="Path to dotkeep.toml"),
) -> None:
    """Show how hand-edited rendered templates differ from their last render."""

    try:
        with _open_session(config) as session:
            modified = session.modified_templates()
            if not modified:
                console.print("[green]No rendered template has been edited.[/green]")
                return
            for item in modified:
                console.rule(item.key)
                text = unified_diff(
                    item.pure_render,
                    item.current,
                    pure_label=f"{item.key} (last render)",
                    current_label=str(item.rendered_path),
                )
                console.print(text, markup=False, highlight=False, end="")
    except Exception as exc:  # noqa: BLE001
        _handle_error(exc)


@app.command()
def history(
    template: str = typer.Argument(..., help="Template key, relative to the backup root"),
    config: Path | None = typer.Option(None, "--config", "-c", help="Path to dotkeep.toml"),
    limit: int = typer.Option(10, "--limit", "-n", min=1, help="Number of renders to list"),
    show: int | None = typer.Option(None, "--show", help="Print the content of one render by id"),
) -> None:
    """List the stored renders of a template."""

    try:
        config_obj = _load_config(config)
        with _open_store(config_obj) as store:
            if show is not None:
                record = store.get_render_by_id(show)
                if record is None or record.template_path != template:
                    console.print(f"[red]No render {show} for '{template}'.[/red]")
                    raise typer.Exit(code=1)
                console.print(record.pure_render.decode("utf-8", errors="replace"), markup=False, highlight=False, end="")
                return

            records = store.get_render_history(template, limit)
            if not records:
                console.print(f"[yellow]No renders recorded for '{template}'.[/yellow]")
                return

            table = Table(show_header=True, header_style="bold magenta")
            table.add_column("Id")
            table.add_column("Rendered")
            table.add_column("Platform")
            table.add_column("Template hash")
            table.add_column("Size")
            for record in records:
                table.add_row(
                    str(record.id),
                    record.rendered_at.strftime("%Y-%m-%d %H:%M:%S"),
                    f"{record.platform_os}/{record.platform_host}",
                    record.template_hash[:12],
                    str(len(record.pure_render)),
                )
            console.print(table)
    except Exception as exc:  # noqa: BLE001
        _handle_error(exc)


@app.command()
def prune(
    config: Path | None = typer.Option(None, "--config", "-c", help="Path to dotkeep.toml"),
    keep: int | None = typer.Option(None, "--keep", min=0, help="Renders to keep per template (default: history_keep)"),
) -> None:
    """Trim the render history of every template."""

    try:
        config_obj = _load_config(config)
        keep_count = config_obj.settings.history_keep if keep is None else keep
        removed = 0
        with _open_store(config_obj) as store:
            for template_path, _count in store.template_paths():
                removed += store.prune_history(template_path, keep_count)
        console.print(f"[green]Removed {removed} render(s), keeping {keep_count} per template.[/green]")
    except Exception as exc:  # noqa: BLE001
        _handle_error(exc)


def run() -> None:
    """Entry point used for console_script bindings."""

    app()
