"""TOML configuration loading and saving for dotkeep."""

from __future__ import annotations

import os
import re
import tomllib
from pathlib import Path
from typing import Any, Mapping

import tomli_w
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .context import HostContext

DEFAULT_CONFIG_FILENAME = "dotkeep.toml"
DEFAULT_HISTORY_KEEP = 10


class ConfigError(RuntimeError):
    """Raised when a configuration file cannot be parsed or validated."""


def expand_path(raw: str | os.PathLike[str] | Path, *, base_dir: Path) -> Path:
    """Return an absolute ``Path`` by expanding env vars and user segments."""

    text = str(raw)
    expanded = Path(os.path.expandvars(text)).expanduser()
    if expanded.is_absolute():
        return expanded.resolve(strict=False)
    return (base_dir / expanded).resolve(strict=False)


def _matches_pattern(pattern: str, value: str) -> bool:
    try:
        return re.fullmatch(f"(?:{pattern})", value) is not None
    except re.error:
        return pattern == value


class FilterRule(BaseModel):
    """Attribute patterns an application requires (include) or rejects (exclude)."""

    model_config = ConfigDict(frozen=True)

    include: dict[str, str] = Field(default_factory=dict)
    exclude: dict[str, str] = Field(default_factory=dict)

    def matches(self, context: HostContext) -> bool:
        for attr, pattern in self.include.items():
            if not _matches_pattern(pattern, context.attribute(attr)):
                return False
        for attr, pattern in self.exclude.items():
            if _matches_pattern(pattern, context.attribute(attr)):
                return False
        return True


class PackageSpec(BaseModel):
    """How to install the package backing an application."""

    model_config = ConfigDict(frozen=True)

    managers: dict[str, str] = Field(default_factory=dict)
    custom: dict[str, str] = Field(default_factory=dict)


class EntryConfig(BaseModel):
    """A managed file list or folder with a backup source and per-OS targets."""

    model_config = ConfigDict(frozen=True)

    name: str
    backup: str
    targets: dict[str, str] = Field(default_factory=dict)
    files: tuple[str, ...] = ()
    template: bool = False

    @property
    def is_folder(self) -> bool:
        return not self.files

    @property
    def is_template_folder(self) -> bool:
        return self.template and self.is_folder

    def target_for(self, os_name: str) -> str | None:
        return self.targets.get(os_name) or None


class ApplicationConfig(BaseModel):
    """A named group of entries with an optional package."""

    model_config = ConfigDict(frozen=True)

    name: str
    description: str = ""
    filters: tuple[FilterRule, ...] = ()
    package: PackageSpec | None = None
    entries: tuple[EntryConfig, ...] = ()

    def matches(self, context: HostContext) -> bool:
        if not self.filters:
            return True
        return any(rule.matches(context) for rule in self.filters)


class Settings(BaseModel):
    """Global configuration options."""

    model_config = ConfigDict(frozen=True)

    backup_root: Path
    state_db: Path
    history_keep: int = DEFAULT_HISTORY_KEEP

    @classmethod
    def from_raw(cls, raw: Mapping[str, Any], *, base_dir: Path) -> "Settings":
        backup_root = expand_path(raw.get("backup_root", "./backup"), base_dir=base_dir)
        state_raw = raw.get("state_db")
        state_db = (
            expand_path(state_raw, base_dir=base_dir)
            if state_raw is not None
            else backup_root / ".dotkeep" / "state.db"
        )
        history_keep = raw.get("history_keep", DEFAULT_HISTORY_KEEP)
        if not isinstance(history_keep, int) or history_keep < 1:
            raise ConfigError("settings.history_keep must be a positive integer")
        return cls(backup_root=backup_root, state_db=state_db, history_keep=history_keep)


class Config(BaseModel):
    """Fully parsed configuration file."""

    model_config = ConfigDict(frozen=True)

    config_path: Path
    settings: Settings
    applications: tuple[ApplicationConfig, ...] = ()

    def resolve_backup(self, backup: str) -> Path:
        """Resolve an entry backup path against the backup root."""

        return expand_path(backup, base_dir=self.settings.backup_root)

    def without_application(self, index: int) -> "Config":
        if not 0 <= index < len(self.applications):
            raise IndexError(f"application index {index} out of range")
        remaining = self.applications[:index] + self.applications[index + 1 :]
        return self.model_copy(update={"applications": remaining})

    def without_entry(self, app_index: int, entry_index: int) -> "Config":
        """Drop one entry; dropping the last entry drops the application."""

        if not 0 <= app_index < len(self.applications):
            raise IndexError(f"application index {app_index} out of range")
        application = self.applications[app_index]
        if not 0 <= entry_index < len(application.entries):
            raise IndexError(f"entry index {entry_index} out of range for '{application.name}'")
        if len(application.entries) == 1:
            return self.without_application(app_index)

        entries = application.entries[:entry_index] + application.entries[entry_index + 1 :]
        updated = application.model_copy(update={"entries": entries})
        applications = self.applications[:app_index] + (updated,) + self.applications[app_index + 1 :]
        return self.model_copy(update={"applications": applications})


def load_config(path: Path | None = None) -> Config:
    """Load and validate a configuration file.

    Args:
        path: Optional path to the TOML file or its directory. Defaults to
            ``dotkeep.toml`` in the current working directory.
    """

    config_path = _resolve_config_path(path)
    base_dir = config_path.parent

    try:
        with config_path.open("rb") as handle:
            data = tomllib.load(handle)
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Configuration file '{config_path}' is not valid TOML: {exc}") from exc

    settings = Settings.from_raw(data.get("settings", {}), base_dir=base_dir)

    applications: list[ApplicationConfig] = []
    seen: set[str] = set()
    for raw_app in data.get("applications", []):
        application = _parse_application(raw_app)
        if application.name in seen:
            raise ConfigError(f"Duplicate application name '{application.name}'")
        seen.add(application.name)
        applications.append(application)

    return Config(config_path=config_path, settings=settings, applications=tuple(applications))


def save_config(config: Config, path: Path | None = None) -> None:
    """Write ``config`` back to disk as TOML."""

    target = Path(path) if path is not None else config.config_path
    target.parent.mkdir(parents=True, exist_ok=True)
    payload: dict[str, Any] = {
        "settings": {
            "backup_root": str(config.settings.backup_root),
            "state_db": str(config.settings.state_db),
            "history_keep": config.settings.history_keep,
        },
        "applications": [_application_to_dict(app) for app in config.applications],
    }
    with target.open("wb") as handle:
        tomli_w.dump(payload, handle)


def _parse_application(raw: Mapping[str, Any]) -> ApplicationConfig:
    name = raw.get("name")
    if not name:
        raise ConfigError("Every [[applications]] table must define a name")

    seen: set[str] = set()
    for raw_entry in raw.get("entries", []):
        entry_name = raw_entry.get("name")
        if not entry_name:
            raise ConfigError(f"Application '{name}' has an entry without a name")
        if entry_name in seen:
            raise ConfigError(f"Application '{name}' defines entry '{entry_name}' more than once")
        seen.add(entry_name)
        if not raw_entry.get("backup"):
            raise ConfigError(f"Entry '{name}/{entry_name}' must define a 'backup' path")
        for file_name in raw_entry.get("files", []):
            candidate = Path(str(file_name))
            if candidate.is_absolute():
                raise ConfigError(f"Entry '{name}/{entry_name}' file '{candidate}' must be relative")
            if ".." in candidate.parts:
                raise ConfigError(f"Entry '{name}/{entry_name}' file '{candidate}' must not escape its folder")

    try:
        return ApplicationConfig.model_validate(dict(raw))
    except ValidationError as exc:
        raise ConfigError(f"Application '{name}' is invalid: {exc}") from exc


def _application_to_dict(application: ApplicationConfig) -> dict[str, Any]:
    payload: dict[str, Any] = {"name": application.name}
    if application.description:
        payload["description"] = application.description
    if application.filters:
        payload["filters"] = [rule.model_dump(mode="json", exclude_defaults=True) for rule in application.filters]
    if application.package is not None:
        payload["package"] = application.package.model_dump(mode="json", exclude_defaults=True)
    payload["entries"] = [entry.model_dump(mode="json", exclude_defaults=True) for entry in application.entries]
    return payload


def _resolve_config_path(path: Path | None) -> Path:
    if path is None:
        path = Path.cwd() / DEFAULT_CONFIG_FILENAME
    else:
        path = Path(path)

    if not path.exists():
        raise ConfigError(f"Configuration file '{path}' does not exist")
    if path.is_dir():
        candidate = path / DEFAULT_CONFIG_FILENAME
        if not candidate.exists():
            raise ConfigError(f"Expected to find '{DEFAULT_CONFIG_FILENAME}' inside '{path}', but none was located")
        path = candidate

    return path.resolve(strict=False)
