"""vnc-setup - TigerVNC, LXDE and noVNC as systemd services, with display-session reset."""

from .config import SetupConfig
from .installer import Installer
from .session import DisplaySession, ResetPermissionError, reset_display
from .types import ResetReport, SessionSnapshot


__version__ = "0.1.0"

__all__ = [
    "DisplaySession",
    "Installer",
    "ResetPermissionError",
    "ResetReport",
    "SessionSnapshot",
    "SetupConfig",
    "reset_display",
]
