"""Rendered files: the LXDE xstartup and the two systemd units."""

import shlex
import sys

from .config import SetupConfig


XSTARTUP_TEMPLATE = """\
#!/bin/bash

# Clean up environment variables
unset SESSION_MANAGER
unset DBUS_SESSION_BUS_ADDRESS

export DISPLAY=:{display}

# Start LXDE
if command -v startlxde &> /dev/null; then
    exec startlxde
else
    exec lxsession
fi
"""

VNC_UNIT_TEMPLATE = """\
[Unit]
Description=Remote desktop service (VNC)
After=network.target

[Service]
Type=simple
User={user}
Group={user}
WorkingDirectory={home}
PAMName=login

# Clear stale processes and lock files for display :%i (runs as root)
ExecStartPre=+{reset_cmd}

# Start command - running in foreground
ExecStart=/usr/bin/vncserver :%i -geometry {geometry} -depth {depth} -localhost no -fg

# Give more time for startup
TimeoutStartSec=60

[Install]
WantedBy=multi-user.target
"""

NOVNC_UNIT_TEMPLATE = """\
[Unit]
Description=NoVNC Service
After=network.target {vnc_unit}
Requires={vnc_unit}

[Service]
Type=simple
User=root
ExecStart={websockify} --web={novnc_path} {novnc_port} localhost:{vnc_port}
Restart=on-failure
RestartSec=5s

[Install]
WantedBy=multi-user.target
"""


def reset_command(config: SetupConfig, python: str | None = None) -> str:
    """Command line the VNC unit runs before each start.

    ``%i`` is left for systemd to substitute with the instance display number.
    """
    python = python or sys.executable
    args = [
        python,
        "-m",
        "vnc_setup",
        "reset",
        "--user",
        config.user,
        "--settle",
        str(config.settle_seconds),
    ]
    return f"{shlex.join(args)} %i"


def render_xstartup(config: SetupConfig) -> str:
    return XSTARTUP_TEMPLATE.format(display=config.display)


def render_vnc_unit(config: SetupConfig, python: str | None = None) -> str:
    """Render ``vncserver@.service``."""
    return VNC_UNIT_TEMPLATE.format(
        user=config.user,
        home=config.home,
        reset_cmd=reset_command(config, python),
        geometry=config.geometry,
        depth=config.depth,
    )


def render_novnc_unit(config: SetupConfig, websockify: str, novnc_path: str) -> str:
    """Render ``novnc.service`` bridging the web port to the VNC port."""
    return NOVNC_UNIT_TEMPLATE.format(
        vnc_unit=config.vnc_unit,
        websockify=websockify,
        novnc_path=novnc_path,
        novnc_port=config.novnc_port,
        vnc_port=config.vnc_port,
    )
