"""Package manager detection and installation."""

from __future__ import annotations

import logging
import shlex
import shutil
import subprocess
from dataclasses import dataclass

from .config import PackageSpec

logger = logging.getLogger(__name__)

METHOD_CUSTOM = "custom"
METHOD_NONE = "none"

CHECK_TIMEOUT = 60
INSTALL_TIMEOUT = 1800


class PackageError(RuntimeError):
    """Raised when a package cannot be installed."""


@dataclass(frozen=True, slots=True)
class ManagerCommands:
    binary: str
    install: tuple[str, ...]
    check: tuple[str, ...] = ()

    def expand(self, args: tuple[str, ...], package: str) -> list[str]:
        return [package if arg == "{pkg}" else arg for arg in args]


MANAGERS: dict[str, ManagerCommands] = {
    "pacman": ManagerCommands("pacman", ("sudo", "pacman", "-S", "--noconfirm", "{pkg}"), ("pacman", "-Q", "{pkg}")),
    "yay": ManagerCommands("yay", ("yay", "-S", "--noconfirm", "{pkg}"), ("pacman", "-Q", "{pkg}")),
    "paru": ManagerCommands("paru", ("paru", "-S", "--noconfirm", "{pkg}"), ("pacman", "-Q", "{pkg}")),
    "apt": ManagerCommands("apt-get", ("sudo", "apt-get", "install", "-y", "{pkg}"), ("dpkg", "-s", "{pkg}")),
    "dnf": ManagerCommands("dnf", ("sudo", "dnf", "install", "-y", "{pkg}"), ("rpm", "-q", "{pkg}")),
    "brew": ManagerCommands("brew", ("brew", "install", "{pkg}"), ("brew", "list", "{pkg}")),
    "scoop": ManagerCommands("scoop", ("scoop", "install", "{pkg}"), ("scoop", "info", "{pkg}")),
    "choco": ManagerCommands("choco", ("choco", "install", "-y", "{pkg}"), ("choco", "list", "--local-only", "{pkg}")),
    "winget": ManagerCommands(
        "winget",
        ("winget", "install", "--accept-package-agreements", "--accept-source-agreements", "{pkg}"),
        ("winget", "list", "--id", "{pkg}", "--exact"),
    ),
}


def detect_install_method(spec: PackageSpec, os_name: str) -> str:
    """Return the first usable manager named by ``spec``, ``custom`` or ``none``."""

    for manager in spec.managers:
        commands = MANAGERS.get(manager)
        if commands is None:
            logger.debug("ignoring unknown package manager %s", manager)
            continue
        if shutil.which(commands.binary):
            return manager
    if os_name in spec.custom:
        return METHOD_CUSTOM
    return METHOD_NONE


def is_installed(spec: PackageSpec, method: str) -> bool:
    commands = MANAGERS.get(method)
    if commands is None or not commands.check:
        return False
    args = commands.expand(commands.check, spec.managers[method])
    try:
        completed = subprocess.run(args, capture_output=True, timeout=CHECK_TIMEOUT, check=False)
    except (OSError, subprocess.TimeoutExpired) as exc:
        logger.debug("package check %s failed: %s", args, exc)
        return False
    return completed.returncode == 0


def install(spec: PackageSpec, method: str, os_name: str) -> str:
    """Install the package with ``method`` and return a short description."""

    if method == METHOD_CUSTOM:
        command = spec.custom.get(os_name)
        if not command:
            raise PackageError(f"No custom install command for '{os_name}'")
        args = shlex.split(command)
    else:
        commands = MANAGERS.get(method)
        if commands is None or method not in spec.managers:
            raise PackageError(f"No install method available (method '{method}')")
        args = commands.expand(commands.install, spec.managers[method])

    logger.info("installing package: %s", " ".join(args))
    try:
        completed = subprocess.run(args, capture_output=True, text=True, timeout=INSTALL_TIMEOUT, check=False)
    except (OSError, subprocess.TimeoutExpired) as exc:
        raise PackageError(f"Running '{args[0]}' failed: {exc}") from exc
    if completed.returncode != 0:
        detail = (completed.stderr or completed.stdout or "").strip()
        raise PackageError(f"'{' '.join(args)}' exited with {completed.returncode}: {detail}")
    return f"Installed via {method}"


class PackageInstaller:
    """Adapter exposing the package functions for a fixed OS."""

    def __init__(self, os_name: str) -> None:
        self.os_name = os_name

    def detect_install_method(self, spec: PackageSpec) -> str:
        return detect_install_method(spec, self.os_name)

    def is_installed(self, spec: PackageSpec, method: str) -> bool:
        return is_installed(spec, method)

    def install(self, spec: PackageSpec, method: str) -> str:
        return install(spec, method, self.os_name)
