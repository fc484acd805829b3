"""Installer configuration."""

import logging
import os
import re
from pathlib import Path

from pydantic import BaseModel, Field, field_validator, model_validator

from .backends.system import user_home
from .session import DEFAULT_SETTLE_SECONDS


logger = logging.getLogger(__name__)

VNC_BASE_PORT = 5900
DEFAULT_DISPLAY = 1
DEFAULT_NOVNC_PORT = 6080
DEFAULT_GEOMETRY = "1366x768"
DEFAULT_DEPTH = 24

_GEOMETRY_RE = re.compile(r"^\d{2,5}x\d{2,5}$")


class SetupConfig(BaseModel):
    """Everything the installer needs to know about the target host.

    The VNC port follows the display number (5900 + N) unless set explicitly.
    """

    user: str
    home: Path | None = None
    display: int = Field(default=DEFAULT_DISPLAY, ge=1, le=65535 - VNC_BASE_PORT)
    vnc_port: int | None = Field(default=None, ge=1, le=65535)
    novnc_port: int = Field(default=DEFAULT_NOVNC_PORT, ge=1, le=65535)
    geometry: str = DEFAULT_GEOMETRY
    depth: int = DEFAULT_DEPTH
    settle_seconds: float = Field(default=DEFAULT_SETTLE_SECONDS, ge=1.0, le=3.0)
    systemd_dir: Path = Path("/etc/systemd/system")
    tmp_dir: Path = Path("/tmp")
    configure_firewall: bool = True

    @field_validator("user")
    @classmethod
    def _user_not_blank(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("user must not be empty")
        return value

    @field_validator("geometry")
    @classmethod
    def _valid_geometry(cls, value: str) -> str:
        if not _GEOMETRY_RE.match(value):
            raise ValueError(f"geometry must look like 1366x768, got {value!r}")
        return value

    @field_validator("depth")
    @classmethod
    def _valid_depth(cls, value: int) -> int:
        if value not in (8, 16, 24, 32):
            raise ValueError(f"depth must be one of 8, 16, 24, 32, got {value}")
        return value

    @model_validator(mode="after")
    def _fill_defaults(self) -> "SetupConfig":
        if self.vnc_port is None:
            self.vnc_port = VNC_BASE_PORT + self.display
        if self.home is None:
            try:
                self.home = user_home(self.user)
            except KeyError:
                # Left unset; the installer reports the missing user.
                logger.debug(f"No passwd entry for {self.user}")
        return self

    @property
    def vnc_dir(self) -> Path:
        if self.home is None:
            raise RuntimeError(f"Home directory for {self.user} is unknown")
        return self.home / ".vnc"

    @property
    def vnc_unit(self) -> str:
        return f"vncserver@{self.display}.service"

    @property
    def novnc_unit(self) -> str:
        return "novnc.service"

    @classmethod
    def from_env(cls, **overrides) -> "SetupConfig":
        """Build config from environment variables.

        Reads VNC_SETUP_USER (falling back to SUDO_USER), VNC_SETUP_DISPLAY,
        VNC_SETUP_NOVNC_PORT, VNC_SETUP_GEOMETRY and VNC_SETUP_DEPTH. Keyword
        overrides that are not None win over the environment.

        Raises:
            pydantic.ValidationError: If a value is invalid or no user is known
        """
        values: dict = {}
        user = os.getenv("VNC_SETUP_USER") or os.getenv("SUDO_USER")
        if user:
            values["user"] = user
        env_map = {
            "display": "VNC_SETUP_DISPLAY",
            "novnc_port": "VNC_SETUP_NOVNC_PORT",
            "geometry": "VNC_SETUP_GEOMETRY",
            "depth": "VNC_SETUP_DEPTH",
        }
        for field, var in env_map.items():
            raw = os.getenv(var)
            if raw:
                values[field] = raw
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)
