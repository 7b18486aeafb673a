"""Classify entries and applications into reconciliation states."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Iterable, Protocol, Sequence

from .filesystem import is_symlink, path_exists
from .models import ApplicationItem, PathState

logger = logging.getLogger(__name__)

# worst first
AGGREGATE_PRIORITY: tuple[PathState, ...] = (
    PathState.MISSING,
    PathState.ADOPT,
    PathState.READY,
    PathState.LINKED,
)

_BASE_BUCKET = {
    PathState.OUTDATED: PathState.LINKED,
    PathState.MODIFIED: PathState.LINKED,
}


class DriftChecker(Protocol):
    def has_outdated_templates(self, backup_dir: Path) -> bool: ...

    def has_modified_rendered_files(self, backup_dir: Path) -> bool: ...


def detect_config_state(backup: Path, target: Path, is_folder: bool, files: Sequence[str] = ()) -> PathState:
    """Return the base state of an entry from filesystem facts alone."""

    if is_folder:
        if is_symlink(target):
            return PathState.LINKED
        if path_exists(backup):
            return PathState.READY
        if path_exists(target):
            return PathState.ADOPT
        return PathState.MISSING

    all_linked = True
    any_backup = False
    any_target = False
    checked = 0

    for name in files:
        source_file = backup / name
        target_file = target / name
        in_backup = path_exists(source_file)
        on_target = path_exists(target_file)
        any_target = any_target or on_target
        if not in_backup:
            # absent from the backup: says nothing about linkage
            continue
        any_backup = True
        checked += 1
        if not is_symlink(target_file):
            all_linked = False

    if all_linked and checked > 0:
        return PathState.LINKED
    if any_backup:
        return PathState.READY
    if any_target:
        return PathState.ADOPT
    return PathState.MISSING


def detect_entry_state(
    backup: Path,
    target: Path,
    *,
    is_folder: bool,
    files: Sequence[str] = (),
    template: bool = False,
    drift: DriftChecker | None = None,
) -> PathState:
    """Classify one entry, refining ``LINKED`` template folders into drift states.

    Filesystem errors never propagate; an entry that cannot be inspected is
    reported as ``MISSING``.
    """

    try:
        state = detect_config_state(backup, target, is_folder, files)
    except OSError as exc:
        logger.warning("could not inspect %s: %s", target, exc)
        return PathState.MISSING

    if state is PathState.LINKED and is_folder and template and drift is not None:
        if drift.has_outdated_templates(backup):
            return PathState.OUTDATED
        if drift.has_modified_rendered_files(backup):
            return PathState.MODIFIED

    return state


def aggregate_state(states: Iterable[PathState]) -> PathState:
    """Return the worst of ``states`` using ``Missing > Adopt > Ready > Linked``.

    Drift states count as ``LINKED``, the state they refine. ``LOADING`` and
    ``FILTERED`` are ignored. No qualifying state yields ``MISSING``.
    """

    present = {_BASE_BUCKET.get(state, state) for state in states}
    for state in AGGREGATE_PRIORITY:
        if state in present:
            return state
    return PathState.MISSING


def application_state(item: ApplicationItem) -> PathState:
    if item.is_filtered:
        return PathState.FILTERED
    return aggregate_state(entry.state for entry in item.entries)
