"""Platform detection utilities.

Used to pick the platform installer for Foundry Local and to decide whether
cross-process file locking is available.
"""

import sys
from typing import Final, Literal


PlatformType = Literal["windows", "linux", "macos", "unknown"]


class Platform:
    """Platform detection constants."""

    WINDOWS: Final = "win32"
    LINUX: Final = "linux"
    MACOS: Final = "darwin"

    @staticmethod
    def get_system() -> PlatformType:
        """Get the current operating system name.

        Returns:
            'windows', 'linux', 'macos', or 'unknown'
        """
        platform = sys.platform.lower()

        if platform.startswith("win"):
            return "windows"
        elif platform.startswith(Platform.MACOS):
            return "macos"
        elif platform.startswith(Platform.LINUX):
            return "linux"
        elif platform in {"freebsd", "openbsd", "netbsd"}:
            return "linux"
        else:
            return "unknown"


def has_fcntl() -> bool:
    """Check if the fcntl module is available (Unix-like systems only)."""
    try:
        import fcntl  # noqa: F401

        return True
    except ImportError:
        return False


HAS_FCNTL: Final = has_fcntl()
