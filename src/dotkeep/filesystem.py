"""Filesystem helpers for dotkeep."""

from __future__ import annotations

import os
import shutil
from hashlib import sha256
from pathlib import Path

SET_ASIDE_SUFFIX = ".dotkeep-backup"


def ensure_parent(path: Path) -> None:
    """Ensure the parent directory exists."""

    path.parent.mkdir(parents=True, exist_ok=True)


def path_exists(path: Path) -> bool:
    """Return ``True`` if ``path`` exists, counting dangling symlinks."""

    try:
        path.lstat()
    except OSError:
        return False
    return True


def is_symlink(path: Path) -> bool:
    try:
        return path.is_symlink()
    except OSError:
        return False


def hash_bytes(content: bytes) -> str:
    """Return the hex SHA-256 of ``content``."""

    return sha256(content).hexdigest()


def ensure_symlink(source: Path, target: Path) -> bool:
    """Ensure ``source`` is a symlink to ``target``.

    Returns ``True`` if a change was made.
    """

    if source.exists() or source.is_symlink():
        if source.is_symlink():
            if symlink_points_to(source, target):
                return False
            source.unlink()
        elif source.is_dir():
            shutil.rmtree(source)
        else:
            source.unlink()

    ensure_parent(source)
    try:
        relative_target = os.path.relpath(target, start=source.parent)
        source.symlink_to(relative_target, target_is_directory=target.is_dir())
    except ValueError:
        source.symlink_to(target, target_is_directory=target.is_dir())
    return True


def symlink_points_to(source: Path, target: Path) -> bool:
    """Return ``True`` if ``source`` symlink resolves to ``target``."""

    if not source.is_symlink():
        return False
    current = Path(os.readlink(source))
    current_resolved = (source.parent / current).resolve(strict=False)
    target_resolved = target.resolve(strict=False)
    return current_resolved == target_resolved


def set_aside(path: Path) -> Path:
    """Rename ``path`` to a free ``<name>.dotkeep-backup[N]`` sibling and return it."""

    candidate = path.with_name(f"{path.name}{SET_ASIDE_SUFFIX}")
    counter = 1
    while path_exists(candidate):
        counter += 1
        candidate = path.with_name(f"{path.name}{SET_ASIDE_SUFFIX}{counter}")
    path.rename(candidate)
    return candidate


def move_path(source: Path, destination: Path) -> None:
    """Move ``source`` to ``destination``, creating parents as needed."""

    ensure_parent(destination)
    shutil.move(str(source), str(destination))



def copy_entry(source: Path, destination: Path) -> bool:
    """Copy ``source`` onto ``destination`` preserving metadata.

    A directory is merged into an existing destination directory: files
    already there are overwritten, extra files are kept. Returns ``True``
    when ``source`` was a directory.
    """

    ensure_parent(destination)

    if source.is_dir():
        if is_symlink(destination) or destination.is_file():
            destination.unlink()
        shutil.copytree(
            source,
            destination,
            symlinks=True,
            copy_function=shutil.copy2,
            dirs_exist_ok=True,
        )
        return True

    if is_symlink(destination):
        destination.unlink()
    elif destination.is_dir():
        shutil.rmtree(destination)
    shutil.copy2(source, destination)
    return False
