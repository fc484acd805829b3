"""Display-session lifecycle management.

A VNC display session leaves artifacts behind when its server dies uncleanly:
the X lock file, the X11 socket entry, pid/log files in ``~/.vnc`` and,
sometimes, the server process itself. ``DisplaySession.reset()`` removes all of
them for exactly one display number so the next start begins from a clean
slate. It runs as the ``ExecStartPre`` hook of ``vncserver@.service``.
"""

import logging
import os
import pwd
import time
from collections.abc import Callable
from pathlib import Path

import psutil

from .types import DeniedAction, ResetReport, SessionSnapshot


logger = logging.getLogger(__name__)

# Executables that may own a display. Wrapper scripts (vncserver is perl) show
# up as the second argv entry behind their interpreter.
SERVER_EXECUTABLES = frozenset(
    {
        "Xtigervnc",
        "Xvnc",
        "Xtightvnc",
        "Xvfb",
        "Xorg",
        "X",
        "vncserver",
        "tigervncserver",
    }
)

DEFAULT_SETTLE_SECONDS = 2.0


class ResetPermissionError(PermissionError):
    """Raised when the OS refused a kill or unlink during reset.

    The reset still ran every step; ``report`` holds what was done.
    """

    def __init__(self, report: ResetReport) -> None:
        self.report = report
        targets = ", ".join(d.target for d in report.denied)
        super().__init__(f"Permission denied while resetting display :{report.display}: {targets}")


def display_arg_matches(cmdline: list[str] | None, display: int) -> bool:
    """Check whether a parsed argv belongs to a server for ``display``.

    Matching is structural: one of the first two argv entries must be a known
    display-server executable and one argument must be exactly ``:N``.
    ``:1`` never matches ``:10`` or ``host:1``.

    Args:
        cmdline: Process argv as returned by psutil (may be None or empty)
        display: Display number

    Returns:
        True if the process serves exactly this display
    """
    if not cmdline:
        return False

    names = {os.path.basename(arg) for arg in cmdline[:2]}
    if not names & SERVER_EXECUTABLES:
        return False

    return f":{display}" in cmdline[1:]


class DisplaySession:
    """Artifacts and processes belonging to one numbered X display.

    Everything that used to be ambient (user, home directory, temp root) is
    passed in explicitly.
    """

    def __init__(
        self,
        display: int,
        user: str | None = None,
        home: str | Path | None = None,
        tmp_dir: str | Path = "/tmp",
        settle_seconds: float = DEFAULT_SETTLE_SECONDS,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        """Initialize display session.

        Args:
            display: Positive display number (``1`` for ``:1``)
            user: Owner of the ``~/.vnc`` session files. When set, only files
                owned by this user are removed.
            home: Home directory holding ``.vnc`` (defaults to the user's home)
            tmp_dir: Root holding ``.X{N}-lock`` and ``.X11-unix``
            settle_seconds: Blocking wait after termination
            sleep: Sleep function (injectable for tests)

        Raises:
            ValueError: If display is not a positive integer or user is unknown
        """
        if isinstance(display, bool) or not isinstance(display, int) or display < 1:
            raise ValueError(f"Display number must be a positive integer, got {display!r}")
        if settle_seconds < 0:
            raise ValueError(f"Settle interval must not be negative, got {settle_seconds}")

        self.display = display
        self.user = user
        self.uid: int | None = None
        if user is not None:
            try:
                entry = pwd.getpwnam(user)
            except KeyError as e:
                raise ValueError(f"Unknown user: {user}") from e
            self.uid = entry.pw_uid
            if home is None:
                home = entry.pw_dir

        self.home = Path(home) if home is not None else None
        self.tmp_dir = Path(tmp_dir)
        self.settle_seconds = settle_seconds
        self._sleep = sleep

    def __repr__(self) -> str:
        return f"DisplaySession(display={self.display}, user={self.user!r})"

    @property
    def lock_path(self) -> Path:
        return self.tmp_dir / f".X{self.display}-lock"

    @property
    def socket_path(self) -> Path:
        return self.tmp_dir / ".X11-unix" / f"X{self.display}"

    @property
    def vnc_dir(self) -> Path | None:
        if self.home is None:
            return None
        return self.home / ".vnc"

    def find_processes(self) -> list[psutil.Process]:
        """Find running processes serving this display.

        Returns:
            Matching processes (never the current process)
        """
        own_pid = os.getpid()
        matches = []
        for proc in psutil.process_iter(["pid", "cmdline"]):
            if proc.info["pid"] == own_pid:
                continue
            if display_arg_matches(proc.info["cmdline"], self.display):
                matches.append(proc)
        return matches

    def session_files(self, report: ResetReport | None = None) -> list[Path]:
        """Find per-session pid and log files in ``~/.vnc``.

        TigerVNC names them ``<host>:<N>.pid`` and ``<host>:<N>.log``.

        Args:
            report: When given, an unreadable ``~/.vnc`` is recorded in it as
                a refused unlink instead of raising

        Returns:
            Matching files, filtered by owner when a user is set

        Raises:
            PermissionError: If ``~/.vnc`` cannot be listed and no report is given
        """
        vnc_dir = self.vnc_dir
        if vnc_dir is None:
            return []

        try:
            if not vnc_dir.is_dir():
                return []
            entries = sorted(vnc_dir.iterdir())
        except PermissionError as e:
            if report is None:
                raise
            logger.warning(f"Permission denied listing {vnc_dir}")
            report.denied.append(DeniedAction(target=str(vnc_dir), action="unlink", error=str(e)))
            return []

        suffixes = (f":{self.display}.pid", f":{self.display}.log")
        files = []
        for path in entries:
            if not path.name.endswith(suffixes):
                continue
            try:
                st = path.lstat()
            except FileNotFoundError:
                continue
            if self.uid is not None and st.st_uid != self.uid:
                logger.debug(f"Skipping {path}: not owned by {self.user}")
                continue
            files.append(path)
        return files

    def find_artifacts(self) -> list[Path]:
        """List filesystem artifacts that currently exist for this display."""
        found = [p for p in (self.lock_path, self.socket_path) if os.path.lexists(p)]
        found.extend(self.session_files())
        return found

    def inspect(self) -> SessionSnapshot:
        """Take a read-only snapshot of the session state."""
        return SessionSnapshot(
            display=self.display,
            pids=[proc.pid for proc in self.find_processes()],
            paths=self.find_artifacts(),
        )

    def reset(self) -> ResetReport:
        """Bring the display back to a clean state.

        Always runs the full sequence, whatever the current state:

        1. SIGKILL every process serving this display
        2. Remove the lock file and X11 socket entry
        3. Remove the user's pid and log files for this display
        4. Block for the settle interval

        Missing targets count as success, so this is safe to call before
        every start. A refused kill or unlink is logged and the remaining
        steps still run.

        Note: the settle wait is a heuristic. It gives the kernel time to
        release the killed server's resources but does not prove they are
        gone.

        Returns:
            Report of what was killed and removed

        Raises:
            ResetPermissionError: If any kill or unlink was refused
        """
        logger.info(f"Resetting display :{self.display}")
        report = ResetReport(display=self.display, settle_seconds=self.settle_seconds)

        for proc in self.find_processes():
            self._kill(proc, report)

        self._unlink(self.lock_path, report)
        self._unlink(self.socket_path, report)
        for path in self.session_files(report):
            self._unlink(path, report)

        if self.settle_seconds:
            logger.debug(f"Waiting {self.settle_seconds}s for teardown")
            self._sleep(self.settle_seconds)

        if report.denied:
            for denied in report.denied:
                logger.error(f"Could not {denied.action} {denied.target}: {denied.error}")
            raise ResetPermissionError(report)

        logger.info(
            f"Display :{self.display} is clean "
            f"(killed {len(report.killed_pids)}, removed {len(report.removed_paths)})"
        )
        return report

    def _kill(self, proc: psutil.Process, report: ResetReport) -> None:
        try:
            proc.kill()
        except psutil.NoSuchProcess:
            logger.debug(f"Process {proc.pid} already gone")
            return
        except psutil.AccessDenied as e:
            logger.warning(f"Permission denied killing pid {proc.pid}")
            report.denied.append(DeniedAction(target=str(proc.pid), action="kill", error=str(e)))
            return
        logger.info(f"Killed pid {proc.pid} serving :{self.display}")
        report.killed_pids.append(proc.pid)

    def _unlink(self, path: Path, report: ResetReport) -> None:
        try:
            path.unlink()
        except FileNotFoundError:
            return
        except PermissionError as e:
            logger.warning(f"Permission denied removing {path}")
            report.denied.append(DeniedAction(target=str(path), action="unlink", error=str(e)))
            return
        except OSError as e:
            logger.warning(f"Could not remove {path}: {e}")
            return
        logger.info(f"Removed {path}")
        report.removed_paths.append(path)


def reset_display(
    display: int,
    user: str | None = None,
    home: str | Path | None = None,
    tmp_dir: str | Path = "/tmp",
    settle_seconds: float = DEFAULT_SETTLE_SECONDS,
) -> ResetReport:
    """Reset a display session. See ``DisplaySession.reset``."""
    session = DisplaySession(
        display,
        user=user,
        home=home,
        tmp_dir=tmp_dir,
        settle_seconds=settle_seconds,
    )
    return session.reset()
