"""CLI entrypoint for vnc-setup."""

import argparse
import getpass
import json
import logging
import os
import pwd
import sys
from pathlib import Path

from pydantic import ValidationError

from .backends.system import CommandError, Runner, Systemd
from .config import DEFAULT_DISPLAY, VNC_BASE_PORT, SetupConfig
from .installer import InstallError, Installer, fix, status
from .logging_utils import DEFAULT_RUN_DIR, RunLogger, setup_logging
from .session import DEFAULT_SETTLE_SECONDS, DisplaySession, ResetPermissionError


logger = logging.getLogger(__name__)


def _display(args: argparse.Namespace) -> int:
    """Display from the flag, then VNC_SETUP_DISPLAY, then the default."""
    if args.display is not None:
        return args.display
    return int(os.getenv("VNC_SETUP_DISPLAY") or DEFAULT_DISPLAY)


def _caller() -> str:
    return pwd.getpwuid(os.geteuid()).pw_name


def _resolve_user(args: argparse.Namespace, runner: Runner | None = None) -> str:
    """Pick the target user.

    Order: ``--user``, VNC_SETUP_USER, the VNC unit's ``User=`` (when a runner
    is given), SUDO_USER, then the calling user.
    """
    user = getattr(args, "user", None) or os.getenv("VNC_SETUP_USER")
    if not user and runner is not None:
        user = Systemd(runner).show_property(f"vncserver@{_display(args)}.service", "User")
    return user or os.getenv("SUDO_USER") or _caller()


def _config(args: argparse.Namespace, user: str | None = None) -> SetupConfig:
    return SetupConfig.from_env(
        user=user,
        display=args.display,
        novnc_port=getattr(args, "novnc_port", None),
        geometry=getattr(args, "geometry", None),
        depth=getattr(args, "depth", None),
        configure_firewall=False if getattr(args, "no_firewall", False) else None,
    )


def _run_logger(args: argparse.Namespace, command: str, config: SetupConfig) -> RunLogger | None:
    if args.dry_run and not args.run_dir:
        return None
    return RunLogger(
        command,
        config=config.model_dump(mode="json"),
        base_dir=args.run_dir or DEFAULT_RUN_DIR,
    )


def cmd_install(args: argparse.Namespace) -> int:
    """Install and start the remote desktop stack."""
    config = _config(args, user=args.user)
    run_logger = _run_logger(args, "install", config)
    installer = Installer(config, runner=Runner(dry_run=args.dry_run), run_logger=run_logger)

    success = False
    try:
        instructions = installer.run()
        success = True
    finally:
        if run_logger:
            run_logger.finalize(success)

    print("\n✓ Installation complete!")
    print(instructions)
    return 0


def cmd_reset(args: argparse.Namespace) -> int:
    """Clear processes and lock files for one display (ExecStartPre hook)."""
    user = args.user
    if user is None and args.home is None:
        user = os.getenv("VNC_SETUP_USER") or os.getenv("SUDO_USER") or _caller()
    session = DisplaySession(
        args.display,
        user=user,
        home=args.home,
        tmp_dir=args.tmp_dir,
        settle_seconds=args.settle,
    )
    try:
        report = session.reset()
    except ResetPermissionError as e:
        print(f"✗ {e}", file=sys.stderr)
        return 1

    print(
        f"✓ Display :{report.display} reset "
        f"(killed {len(report.killed_pids)}, removed {len(report.removed_paths)})"
    )
    return 0


def cmd_fix(args: argparse.Namespace) -> int:
    """Stop services, reset the display and start the services again."""
    runner = Runner(dry_run=args.dry_run)
    config = _config(args, user=_resolve_user(args, runner))
    run_logger = _run_logger(args, "fix", config)

    success = False
    try:
        report = fix(config, runner=runner)
        success = True
        if run_logger:
            run_logger.log_step(
                "reset display",
                f"killed {len(report.killed_pids)}, removed {len(report.removed_paths)}",
            )
    except ResetPermissionError as e:
        if run_logger:
            run_logger.log_error("reset display", str(e))
        print(f"✗ {e}", file=sys.stderr)
        return 1
    finally:
        if run_logger:
            run_logger.finalize(success)

    print(f"✓ Services restarted. Check status with: systemctl status {config.vnc_unit}")
    return 0


def cmd_status(args: argparse.Namespace) -> int:
    """Show whether the display is clean and the services are active."""
    runner = Runner()
    config = _config(args, user=_resolve_user(args, runner))
    info = status(config, runner=runner)
    if args.json:
        print(json.dumps(info, indent=2))
        return 0

    print(f"Display :{info['display']}: {info['state']}")
    if info["pids"]:
        print(f"  Processes: {', '.join(str(p) for p in info['pids'])}")
    for path in info["artifacts"]:
        print(f"  Artifact: {path}")
    for unit, active in info["units"].items():
        print(f"  {unit}: {'active' if active else 'inactive'}")
    return 0


def cmd_verify(args: argparse.Namespace) -> int:
    """Connect to the VNC server and capture one frame."""
    # vncdotool pulls in twisted; keep it out of the reset hook path
    from .backends.vnc import VNCProbe

    server = args.server or f"localhost::{VNC_BASE_PORT + _display(args)}"
    password = args.password
    if password is None and not args.no_password:
        password = getpass.getpass(f"VNC password for {server}: ")

    result = VNCProbe().probe(server, password, save_to=args.save)
    if result.success:
        print(f"✓ {server} answered with a {result.width}x{result.height} desktop")
        return 0
    print(f"✗ {server} did not answer: {result.error}", file=sys.stderr)
    return 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="vnc-setup",
        description="Install TigerVNC, LXDE and noVNC as systemd services",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Install for the invoking sudo user on display :1
  sudo vnc-setup install

  # Preview every command without changing the host
  sudo vnc-setup install --user alice --dry-run

  # Clear a stuck display (what the service runs before each start)
  sudo vnc-setup reset 1 --user alice

  # Stop, clean and restart everything
  sudo vnc-setup fix

  # Check that the server answers
  vnc-setup verify --display 1
        """,
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose logging")

    subparsers = parser.add_subparsers(dest="command", help="Command to execute")
    subparsers.required = True

    def add_display(p: argparse.ArgumentParser) -> None:
        p.add_argument(
            "--display",
            type=int,
            help=f"Display number (default: $VNC_SETUP_DISPLAY or {DEFAULT_DISPLAY})",
        )

    def add_run_options(p: argparse.ArgumentParser) -> None:
        p.add_argument("--dry-run", action="store_true", help="Print commands instead of running them")
        p.add_argument("--run-dir", help=f"Directory for run reports (default: {DEFAULT_RUN_DIR})")

    install_parser = subparsers.add_parser("install", help="Install and start the stack")
    install_parser.add_argument("--user", help="Desktop user (default: $SUDO_USER)")
    add_display(install_parser)
    install_parser.add_argument("--novnc-port", type=int, help="noVNC web port (default: 6080)")
    install_parser.add_argument("--geometry", help="Screen size, e.g. 1366x768")
    install_parser.add_argument("--depth", type=int, help="Colour depth (default: 24)")
    install_parser.add_argument("--no-firewall", action="store_true", help="Leave the firewall alone")
    add_run_options(install_parser)
    install_parser.set_defaults(func=cmd_install)

    reset_parser = subparsers.add_parser("reset", help="Clear stale processes and locks for a display")
    reset_parser.add_argument("display", type=int, help="Display number")
    reset_parser.add_argument(
        "--user", help="Owner of the ~/.vnc session files (default: $SUDO_USER or the caller)"
    )
    reset_parser.add_argument("--home", help="Home directory (default: the user's home)")
    reset_parser.add_argument("--tmp-dir", default="/tmp", help="X lock root (default: /tmp)")
    reset_parser.add_argument(
        "--settle",
        type=float,
        default=DEFAULT_SETTLE_SECONDS,
        help=f"Seconds to wait after killing (default: {DEFAULT_SETTLE_SECONDS})",
    )
    reset_parser.set_defaults(func=cmd_reset)

    fix_parser = subparsers.add_parser("fix", help="Stop, reset and restart the services")
    fix_parser.add_argument("--user", help="Desktop user (default: the unit's User=)")
    add_display(fix_parser)
    add_run_options(fix_parser)
    fix_parser.set_defaults(func=cmd_fix)

    status_parser = subparsers.add_parser("status", help="Show display and service state")
    status_parser.add_argument("--user", help="Desktop user")
    add_display(status_parser)
    status_parser.add_argument("--json", action="store_true", help="Print JSON")
    status_parser.set_defaults(func=cmd_status)

    verify_parser = subparsers.add_parser("verify", help="Connect and capture one frame")
    add_display(verify_parser)
    verify_parser.add_argument("--server", help="VNC address (default: localhost::5900+display)")
    verify_parser.add_argument("--password", help="VNC password (prompted if not provided)")
    verify_parser.add_argument("--no-password", action="store_true", help="Server has no password")
    verify_parser.add_argument("--save", type=Path, help="Keep the captured PNG here")
    verify_parser.set_defaults(func=cmd_verify)

    return parser


def main(argv: list[str] | None = None) -> int:
    """Main CLI entrypoint."""
    parser = build_parser()
    args = parser.parse_args(argv)

    setup_logging(args.verbose)

    try:
        return args.func(args)

    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        print("\n⚠ Interrupted by user")
        return 130

    except ValidationError as e:
        print(f"✗ Invalid configuration:\n{e}", file=sys.stderr)
        return 1

    except (CommandError, InstallError, PermissionError, ValueError) as e:
        logger.error(f"{args.command} failed: {e}")
        print(f"\n✗ {e}", file=sys.stderr)
        return 1

    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        print(f"\n✗ Fatal error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
