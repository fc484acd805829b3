"""Host system backend: commands, packages, users, systemd and firewall."""

import logging
import os
import pwd
import shlex
import shutil
import subprocess
from dataclasses import dataclass, field
from pathlib import Path


logger = logging.getLogger(__name__)


class CommandError(RuntimeError):
    """A host command exited with a non-zero status."""

    def __init__(self, cmd: list[str], returncode: int, stderr: str = "") -> None:
        self.cmd = cmd
        self.returncode = returncode
        self.stderr = stderr
        detail = f": {stderr.strip()}" if stderr and stderr.strip() else ""
        super().__init__(f"Command failed ({returncode}): {shlex.join(cmd)}{detail}")


class PrivilegeError(PermissionError):
    """The installer needs root."""


class UnsupportedPlatformError(RuntimeError):
    """No supported package manager was found."""


class Runner:
    """Runs host commands, or only logs them in dry-run mode."""

    def __init__(self, dry_run: bool = False) -> None:
        self.dry_run = dry_run
        self.history: list[list[str]] = []

    def run(
        self,
        cmd: list[str],
        check: bool = True,
        capture: bool = False,
        ok_codes: tuple[int, ...] = (0,),
    ) -> subprocess.CompletedProcess:
        """Run a command.

        Args:
            cmd: Argument vector
            check: Raise CommandError on a return code outside ok_codes
            capture: Capture stdout/stderr as text instead of inheriting them
            ok_codes: Return codes treated as success

        Returns:
            Completed process (a synthetic success in dry-run mode)

        Raises:
            CommandError: If check is set and the command failed
        """
        self.history.append(cmd)
        if self.dry_run:
            print(f"[dry-run] {shlex.join(cmd)}")
            return subprocess.CompletedProcess(cmd, 0, stdout="", stderr="")

        logger.debug(f"Running: {shlex.join(cmd)}")
        result = subprocess.run(cmd, capture_output=capture, text=True)
        if check and result.returncode not in ok_codes:
            raise CommandError(cmd, result.returncode, result.stderr or "")
        return result

    def write_file(self, path: Path, content: str, mode: int = 0o644) -> None:
        """Write a file (skipped in dry-run mode)."""
        if self.dry_run:
            print(f"[dry-run] write {path} ({len(content)} bytes, mode {mode:o})")
            return
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content)
        os.chmod(path, mode)
        logger.debug(f"Wrote {path}")

    def chown(self, path: Path, user: str) -> None:
        """Give a path to a user and their primary group."""
        if self.dry_run:
            print(f"[dry-run] chown {user}:{user} {path}")
            return
        shutil.chown(path, user=user, group=pwd.getpwnam(user).pw_gid)


def require_root() -> None:
    """Raise PrivilegeError unless running as root."""
    if os.geteuid() != 0:
        raise PrivilegeError("This command must be run as root or with sudo privileges")


def user_exists(user: str) -> bool:
    try:
        pwd.getpwnam(user)
    except KeyError:
        return False
    return True


def user_home(user: str) -> Path:
    """Return a user's home directory.

    Raises:
        KeyError: If the user does not exist
    """
    return Path(pwd.getpwnam(user).pw_dir)


def command_exists(name: str) -> bool:
    return shutil.which(name) is not None


@dataclass
class PackageManager:
    """A distribution package manager and the packages the stack needs."""

    name: str
    update_cmd: list[str]
    install_cmd: list[str]
    packages: list[str] = field(default_factory=list)
    # dnf/yum check-update exits 100 when updates are available
    update_ok_codes: tuple[int, ...] = (0,)

    def update(self, runner: Runner) -> None:
        logger.info(f"Updating package repositories with {self.name}")
        runner.run(self.update_cmd, ok_codes=self.update_ok_codes)

    def install(self, runner: Runner, packages: list[str] | None = None) -> None:
        packages = packages if packages is not None else self.packages
        logger.info(f"Installing {len(packages)} packages with {self.name}")
        runner.run([*self.install_cmd, *packages])


_RPM_PACKAGES = [
    "tigervnc-server",
    "novnc",
    "websockify",
    "git",
    "python3",
    "python3-pip",
    "lxde",
    "lxterminal",
    "curl",
]

PACKAGE_MANAGERS = {
    "apt-get": PackageManager(
        name="apt-get",
        update_cmd=["apt-get", "update"],
        install_cmd=["apt-get", "install", "-y"],
        packages=[
            "tigervnc-standalone-server",
            "tigervnc-common",
            "novnc",
            "websockify",
            "git",
            "python3",
            "python3-pip",
            "net-tools",
            "lxde-core",
            "lxterminal",
            "curl",
        ],
    ),
    "dnf": PackageManager(
        name="dnf",
        update_cmd=["dnf", "check-update"],
        install_cmd=["dnf", "install", "-y"],
        packages=_RPM_PACKAGES,
        update_ok_codes=(0, 100),
    ),
    "yum": PackageManager(
        name="yum",
        update_cmd=["yum", "check-update"],
        install_cmd=["yum", "install", "-y"],
        packages=_RPM_PACKAGES,
        update_ok_codes=(0, 100),
    ),
}


def detect_package_manager() -> PackageManager:
    """Pick the first supported package manager on PATH.

    Raises:
        UnsupportedPlatformError: If none of apt-get, dnf or yum is present
    """
    for name, manager in PACKAGE_MANAGERS.items():
        if command_exists(name):
            logger.debug(f"Detected package manager: {name}")
            return manager
    raise UnsupportedPlatformError(
        "Unsupported package manager. This tool supports apt-get, dnf, and yum."
    )


class Systemd:
    """Thin wrapper over systemctl."""

    def __init__(self, runner: Runner) -> None:
        self.runner = runner

    def daemon_reload(self) -> None:
        self.runner.run(["systemctl", "daemon-reexec"])
        self.runner.run(["systemctl", "daemon-reload"])

    def enable(self, unit: str) -> None:
        self.runner.run(["systemctl", "enable", unit])

    def start(self, unit: str) -> None:
        logger.info(f"Starting {unit}")
        self.runner.run(["systemctl", "start", unit])

    def stop(self, unit: str) -> None:
        # Stopping a unit that is not loaded is not an error here
        logger.info(f"Stopping {unit}")
        self.runner.run(["systemctl", "stop", unit], check=False)

    def is_active(self, unit: str) -> bool:
        result = self.runner.run(["systemctl", "is-active", "--quiet", unit], check=False)
        return result.returncode == 0

    def show_property(self, unit: str, prop: str) -> str:
        """Read one unit property, e.g. ``User``. Empty string if unset."""
        result = self.runner.run(
            ["systemctl", "show", unit, f"--property={prop}", "--value"],
            check=False,
            capture=True,
        )
        if result.returncode != 0:
            return ""
        return (result.stdout or "").strip()


def configure_firewall(runner: Runner, ports: list[int]) -> str | None:
    """Open TCP ports with firewalld or ufw, whichever is present.

    Returns:
        Name of the firewall tool used, or None if neither is installed
    """
    if command_exists("firewall-cmd"):
        logger.info("Configuring firewall with firewalld")
        for port in ports:
            runner.run(["firewall-cmd", "--permanent", f"--add-port={port}/tcp"])
        runner.run(["firewall-cmd", "--reload"])
        return "firewalld"

    if command_exists("ufw"):
        logger.info("Configuring firewall with ufw")
        for port in ports:
            runner.run(["ufw", "allow", f"{port}/tcp"])
        return "ufw"

    logger.info("No firewalld or ufw found; skipping firewall configuration")
    return None
