"""Installer: wires TigerVNC, LXDE and noVNC together as systemd services."""

import ipaddress
import logging
from collections.abc import Callable
from pathlib import Path
from typing import Any

from .backends.system import (
    PackageManager,
    Runner,
    Systemd,
    command_exists,
    configure_firewall,
    detect_package_manager,
    require_root,
    user_exists,
)
from .config import SetupConfig
from .logging_utils import RunLogger
from .network import get_public_ip
from .session import DisplaySession, ResetPermissionError
from .templates import render_novnc_unit, render_vnc_unit, render_xstartup
from .types import ResetReport, SessionSnapshot


logger = logging.getLogger(__name__)

NOVNC_DIRS = (Path("/usr/share/novnc"), Path("/opt/novnc"))
WEBSOCKIFY_PATHS = (Path("/usr/bin/websockify"), Path("/opt/websockify/run"))
NOVNC_REPO = "https://github.com/novnc/noVNC.git"
WEBSOCKIFY_REPO = "https://github.com/novnc/websockify.git"


class InstallError(RuntimeError):
    """A required component is missing after installation."""


def find_novnc(candidates: tuple[Path, ...] = NOVNC_DIRS) -> Path | None:
    """Return the first noVNC web root that exists."""
    for path in candidates:
        if path.is_dir():
            return path
    return None


def find_websockify(candidates: tuple[Path, ...] = WEBSOCKIFY_PATHS) -> Path | None:
    """Return the first websockify launcher that exists."""
    for path in candidates:
        if path.is_file():
            return path
    return None


class Installer:
    """Runs the installation steps in order and records each one.

    Usage:
        config = SetupConfig(user="alice")
        print(Installer(config).run())
    """

    def __init__(
        self,
        config: SetupConfig,
        runner: Runner | None = None,
        run_logger: RunLogger | None = None,
        package_manager: PackageManager | None = None,
        ip_lookup: Callable[[], str] = get_public_ip,
        novnc_dirs: tuple[Path, ...] = NOVNC_DIRS,
        websockify_paths: tuple[Path, ...] = WEBSOCKIFY_PATHS,
    ) -> None:
        """Initialize installer.

        Args:
            config: Validated setup configuration
            runner: Command runner (dry-run aware)
            run_logger: Optional run artifact logger
            package_manager: Override package manager detection
            ip_lookup: Returns the address shown in the instructions
            novnc_dirs: Candidate noVNC web roots, in preference order
            websockify_paths: Candidate websockify launchers, in preference order
        """
        self.config = config
        self.runner = runner or Runner()
        self.run_logger = run_logger
        self.package_manager = package_manager
        self.ip_lookup = ip_lookup
        self.novnc_dirs = novnc_dirs
        self.websockify_paths = websockify_paths
        self.systemd = Systemd(self.runner)

        self.novnc_path: Path | None = None
        self.websockify_path: Path | None = None

    @property
    def dry_run(self) -> bool:
        return self.runner.dry_run

    def _step(self, name: str, func: Callable[[], str | None]) -> None:
        try:
            detail = func() or ""
        except Exception as e:
            if self.run_logger:
                self.run_logger.log_error(name, str(e))
            raise
        if self.run_logger:
            self.run_logger.log_step(name, detail)
        else:
            logger.info(f"{name}: {detail}".rstrip(": "))

    def run(self) -> str:
        """Install everything and start the services.

        Returns:
            Connection instructions for the operator

        Raises:
            PrivilegeError: If not running as root
            CommandError: If a host command fails
            InstallError: If noVNC or websockify cannot be found
        """
        self._step("check prerequisites", self.check_prerequisites)
        self._step("install packages", self.install_packages)
        self._step("install noVNC", self.ensure_novnc)
        self._step("set VNC password", self.ensure_password)
        self._step("write xstartup", self.write_xstartup)
        self._step("reset display", self.reset_display)
        self._step("install services", self.install_services)
        self._step("start services", self.start_services)
        self._step("configure firewall", self.open_firewall)

        address = self.ip_lookup()
        return connection_instructions(self.config, address)

    def check_prerequisites(self) -> str:
        if self.dry_run:
            logger.info("Dry run: skipping root check")
        else:
            require_root()
        if not user_exists(self.config.user):
            raise InstallError(
                f"User {self.config.user} does not exist. Please create this user first."
            )
        return f"user {self.config.user}, home {self.config.home}"

    def install_packages(self) -> str:
        manager = self.package_manager or detect_package_manager()
        manager.update(self.runner)
        if command_exists("vncserver"):
            return "VNC server is already installed"
        manager.install(self.runner)
        return f"installed {len(manager.packages)} packages with {manager.name}"

    def ensure_novnc(self) -> str:
        novnc = find_novnc(self.novnc_dirs)
        websockify = find_websockify(self.websockify_paths)

        if novnc is None:
            logger.info("Installing noVNC from GitHub")
            self.runner.run(["git", "clone", NOVNC_REPO, "/opt/novnc"])
        if websockify is None and not Path("/opt/websockify").is_dir():
            self.runner.run(["git", "clone", WEBSOCKIFY_REPO, "/opt/websockify"])

        if self.dry_run:
            novnc = novnc or Path("/opt/novnc")
            websockify = websockify or Path("/opt/websockify/run")
        else:
            novnc = novnc or find_novnc(self.novnc_dirs)
            websockify = websockify or find_websockify(self.websockify_paths)

        if novnc is None:
            raise InstallError("NoVNC installation not found")
        if websockify is None:
            raise InstallError("Websockify not found")

        self.novnc_path = novnc
        self.websockify_path = websockify
        return f"noVNC at {novnc}, websockify at {websockify}"

    def ensure_password(self) -> str:
        vnc_dir = self.config.vnc_dir
        if not vnc_dir.is_dir() and not self.dry_run:
            vnc_dir.mkdir(parents=True)
            self.runner.chown(vnc_dir, self.config.user)

        if (vnc_dir / "passwd").exists():
            return "password already set"

        print(f"Please enter a VNC password for {self.config.user}")
        self.runner.run(["sudo", "-u", self.config.user, "vncpasswd"])
        return "password set"

    def write_xstartup(self) -> str:
        path = self.config.vnc_dir / "xstartup"
        self.runner.write_file(path, render_xstartup(self.config), mode=0o755)
        self.runner.chown(path, self.config.user)
        return str(path)

    def reset_display(self) -> str:
        if self.dry_run:
            return f"would reset display :{self.config.display}"
        report = reset_session(self.config)
        return f"killed {len(report.killed_pids)}, removed {len(report.removed_paths)}"

    def install_services(self) -> str:
        vnc_unit = self.config.systemd_dir / "vncserver@.service"
        novnc_unit = self.config.systemd_dir / "novnc.service"
        self.runner.write_file(vnc_unit, render_vnc_unit(self.config))
        self.runner.write_file(
            novnc_unit,
            render_novnc_unit(self.config, str(self.websockify_path), str(self.novnc_path)),
        )
        return f"{vnc_unit}, {novnc_unit}"

    def start_services(self) -> str:
        units = [self.config.vnc_unit, self.config.novnc_unit]
        self.systemd.daemon_reload()
        for unit in units:
            self.systemd.enable(unit)
        for unit in units:
            self.systemd.start(unit)
        return ", ".join(units)

    def open_firewall(self) -> str:
        if not self.config.configure_firewall:
            return "skipped"
        tool = configure_firewall(self.runner, [self.config.vnc_port, self.config.novnc_port])
        return tool or "no firewall found"


def make_session(config: SetupConfig) -> DisplaySession:
    return DisplaySession(
        config.display,
        user=config.user,
        home=config.home,
        tmp_dir=config.tmp_dir,
        settle_seconds=config.settle_seconds,
    )


def reset_session(config: SetupConfig) -> ResetReport:
    """Reset the configured display session.

    Raises:
        ResetPermissionError: If any kill or unlink was refused
    """
    return make_session(config).reset()


def fix(config: SetupConfig, runner: Runner | None = None) -> ResetReport:
    """Stop both services, reset the display, then start them again.

    Services are restarted even when part of the reset was refused; the
    permission error is raised afterwards.

    Raises:
        ResetPermissionError: If any kill or unlink was refused
    """
    runner = runner or Runner()
    systemd = Systemd(runner)

    systemd.stop(config.novnc_unit)
    systemd.stop(config.vnc_unit)

    denied: ResetPermissionError | None = None
    if runner.dry_run:
        report = ResetReport(display=config.display)
    else:
        try:
            report = reset_session(config)
        except ResetPermissionError as e:
            denied = e
            report = e.report

    systemd.start(config.vnc_unit)
    systemd.start(config.novnc_unit)

    if denied is not None:
        raise denied
    return report


def status(config: SetupConfig, runner: Runner | None = None) -> dict[str, Any]:
    """Describe the display session and both services."""
    systemd = Systemd(runner or Runner())
    snapshot: SessionSnapshot = make_session(config).inspect()
    return {
        "display": config.display,
        "state": snapshot.state,
        "pids": snapshot.pids,
        "artifacts": [str(p) for p in snapshot.paths],
        "units": {
            config.vnc_unit: systemd.is_active(config.vnc_unit),
            config.novnc_unit: systemd.is_active(config.novnc_unit),
        },
    }


def _url_host(address: str) -> str:
    try:
        parsed = ipaddress.ip_address(address)
    except ValueError:
        return address
    return f"[{address}]" if parsed.version == 6 else address


def connection_instructions(config: SetupConfig, address: str) -> str:
    """Text printed after a successful install."""
    vnc_unit = config.vnc_unit
    lines = [
        f"VNC Server is running on port {config.vnc_port}",
        f"NoVNC is accessible at http://{_url_host(address)}:{config.novnc_port}/vnc.html",
        "Connect to VNC using the password you provided",
        "",
        "To manage the services:",
        f"  - Start VNC: systemctl start {vnc_unit}",
        f"  - Stop VNC: systemctl stop {vnc_unit}",
        "  - Start NoVNC: systemctl start novnc.service",
        "  - Stop NoVNC: systemctl stop novnc.service",
        f"  - Check status: systemctl status {vnc_unit} novnc.service",
        f"  - Repair a stuck session: vnc-setup fix --display {config.display}",
    ]
    return "\n".join(lines)
