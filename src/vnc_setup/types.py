"""Type definitions for vnc-setup."""

from pathlib import Path
from typing import Literal, TypedDict

from pydantic import BaseModel, Field


class StepRecord(TypedDict):
    """Log entry for a single installer step."""

    step_number: int
    name: str
    detail: str  # Human-readable outcome
    success: bool
    timestamp: float


class DeniedAction(BaseModel):
    """A termination or removal the OS refused."""

    target: str  # pid or path
    action: Literal["kill", "unlink"]
    error: str


class ResetReport(BaseModel):
    """Outcome of resetting a display session."""

    display: int = Field(ge=1)
    killed_pids: list[int] = Field(default_factory=list)
    removed_paths: list[Path] = Field(default_factory=list)
    denied: list[DeniedAction] = Field(default_factory=list)
    settle_seconds: float = 0.0

    @property
    def ok(self) -> bool:
        return not self.denied


class SessionSnapshot(BaseModel):
    """What currently exists for a display number."""

    display: int = Field(ge=1)
    pids: list[int] = Field(default_factory=list)
    paths: list[Path] = Field(default_factory=list)

    @property
    def state(self) -> Literal["clean", "dirty"]:
        return "dirty" if self.pids or self.paths else "clean"


class ProbeResult(BaseModel):
    """Result of connecting to the freshly installed VNC server."""

    server: str
    success: bool
    error: str | None = None
    width: int = 0
    height: int = 0
