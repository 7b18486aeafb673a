"""Host facts used for filtering, target selection and template rendering."""

from __future__ import annotations

import getpass
import logging
import socket
import sys
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)

OS_RELEASE = Path("/etc/os-release")


def current_os() -> str:
    if sys.platform.startswith("win"):
        return "windows"
    if sys.platform == "darwin":
        return "darwin"
    return "linux"


def read_distro(os_release: Path = OS_RELEASE) -> str:
    """Return the ``ID`` field from ``os-release`` or an empty string."""

    try:
        text = os_release.read_text()
    except OSError:
        return ""
    for line in text.splitlines():
        key, _, value = line.partition("=")
        if key.strip() == "ID":
            return value.strip().strip('"').strip("'")
    return ""


@dataclass(frozen=True, slots=True)
class HostContext:
    """Attributes of the machine dotkeep is running on."""

    os: str
    distro: str = ""
    hostname: str = ""
    user: str = ""

    @classmethod
    def detect(cls) -> "HostContext":
        os_name = current_os()
        try:
            user = getpass.getuser()
        except (KeyError, OSError):
            user = ""
        context = cls(
            os=os_name,
            distro=read_distro() if os_name == "linux" else "",
            hostname=socket.gethostname(),
            user=user,
        )
        logger.debug("detected host context %s", context)
        return context

    def attribute(self, name: str) -> str:
        if name in ("os", "distro", "hostname", "user"):
            return getattr(self, name)
        return ""
