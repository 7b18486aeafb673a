"""Shared models and enums for dotkeep."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .config import ApplicationConfig, EntryConfig


class PathState(str, Enum):
    """Reconciliation state of a managed entry."""

    READY = "ready"
    ADOPT = "adopt"
    MISSING = "missing"
    LINKED = "linked"
    OUTDATED = "outdated"
    MODIFIED = "modified"
    LOADING = "loading"
    FILTERED = "filtered"


@dataclass(frozen=True, slots=True, order=True)
class SubEntryKey:
    """Coordinate of a sub-entry inside the application table."""

    app: int
    sub: int


@dataclass(frozen=True, slots=True)
class RenderRecord:
    """One stored template render."""

    id: int
    template_path: str
    pure_render: bytes
    template_hash: str
    rendered_at: datetime
    platform_os: str
    platform_host: str


@dataclass(frozen=True, slots=True)
class ModifiedTemplate:
    """A rendered template whose on-disk content drifted from its last pure render."""

    template_path: Path
    rendered_path: Path
    key: str
    pure_render: bytes
    current: bytes


@dataclass(frozen=True, slots=True)
class ResultItem:
    """Outcome of a single batch operation item."""

    name: str
    success: bool
    message: str


@dataclass(frozen=True, slots=True)
class BatchResult:
    """Collection of results for a batch run."""

    results: tuple[ResultItem, ...] = ()

    @property
    def success_count(self) -> int:
        return sum(1 for item in self.results if item.success)

    @property
    def fail_count(self) -> int:
        return sum(1 for item in self.results if not item.success)


@dataclass(slots=True)
class EntryItem:
    """Runtime view of a configured entry on the current host."""

    entry: EntryConfig
    target: str
    config_index: int
    state: PathState = PathState.LOADING

    @property
    def name(self) -> str:
        return self.entry.name


@dataclass(slots=True)
class ApplicationItem:
    """Runtime view of an application and its entries."""

    application: ApplicationConfig
    config_index: int
    entries: list[EntryItem] = field(default_factory=list)
    is_filtered: bool = False
    pkg_method: str | None = None
    pkg_installed: bool | None = None

    @property
    def name(self) -> str:
        return self.application.name

    @property
    def has_package(self) -> bool:
        return self.application.package is not None


@dataclass(frozen=True, slots=True)
class EntryStateResult:
    """Message produced by an entry state check."""

    key: SubEntryKey
    state: PathState


@dataclass(frozen=True, slots=True)
class PackageCheckResult:
    """Message produced by an application package check."""

    app: int
    method: str
    installed: bool
