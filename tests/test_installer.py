"""Tests for the installer orchestration, fix and status."""

import functools
import os
import pwd
import subprocess

import pytest

from vnc_setup import installer as installer_module
from vnc_setup.backends import system
from vnc_setup.backends.system import PACKAGE_MANAGERS, Runner
from vnc_setup.config import SetupConfig
from vnc_setup.installer import (
    InstallError,
    Installer,
    connection_instructions,
    find_novnc,
    find_websockify,
    fix,
    status,
)
from vnc_setup.logging_utils import RunLogger
from vnc_setup.session import DisplaySession, ResetPermissionError
from vnc_setup.types import DeniedAction, ResetReport


class RecordingRunner(Runner):
    """Records commands instead of running them; writes files for real."""

    def __init__(self, returncode: int = 0) -> None:
        super().__init__()
        self.returncode = returncode
        self.chowned = []

    def run(self, cmd, check=True, capture=False, ok_codes=(0,)):
        self.history.append(cmd)
        return subprocess.CompletedProcess(cmd, self.returncode, stdout="", stderr="")

    def chown(self, path, user):
        self.chowned.append(path)


@pytest.fixture
def user():
    return pwd.getpwuid(os.getuid()).pw_name


@pytest.fixture
def config(tmp_path, user):
    (tmp_path / "tmp" / ".X11-unix").mkdir(parents=True)
    return SetupConfig(
        user=user,
        home=tmp_path / "home",
        display=4242,
        systemd_dir=tmp_path / "systemd",
        tmp_dir=tmp_path / "tmp",
    )


@pytest.fixture
def novnc(tmp_path):
    web = tmp_path / "novnc"
    web.mkdir()
    launcher = tmp_path / "websockify"
    launcher.write_text("#!/bin/sh\n")
    return web, launcher


@pytest.fixture
def sleeps(monkeypatch):
    calls = []
    monkeypatch.setattr(
        installer_module, "DisplaySession", functools.partial(DisplaySession, sleep=calls.append)
    )
    return calls


@pytest.fixture
def host(monkeypatch):
    """Pretend ufw is installed and vncserver is not."""

    def exists(name):
        return name == "ufw"

    monkeypatch.setattr(installer_module, "command_exists", exists)
    monkeypatch.setattr(system, "command_exists", exists)
    monkeypatch.setattr(installer_module, "require_root", lambda: None)


def make_installer(config, runner, novnc, **kwargs):
    web, launcher = novnc
    return Installer(
        config,
        runner=runner,
        package_manager=PACKAGE_MANAGERS["apt-get"],
        ip_lookup=lambda: "203.0.113.5",
        novnc_dirs=(web,),
        websockify_paths=(launcher,),
        **kwargs,
    )


def test_find_helpers(tmp_path, novnc):
    web, launcher = novnc

    assert find_novnc((tmp_path / "missing", web)) == web
    assert find_novnc((tmp_path / "missing",)) is None
    assert find_websockify((tmp_path / "missing", launcher)) == launcher
    # A directory is not a launcher
    assert find_websockify((web,)) is None


def test_dry_run_touches_nothing(config, novnc, host, capsys):
    runner = Runner(dry_run=True)

    instructions = make_installer(config, runner, novnc).run()

    assert "http://203.0.113.5:6080/vnc.html" in instructions
    assert "VNC Server is running on port 10142" in instructions
    assert ["apt-get", "update"] in runner.history
    assert ["sudo", "-u", config.user, "vncpasswd"] in runner.history
    assert ["systemctl", "start", "vncserver@4242.service"] in runner.history
    assert ["ufw", "allow", "6080/tcp"] in runner.history
    assert not config.systemd_dir.exists()
    assert not config.home.exists()
    assert "[dry-run]" in capsys.readouterr().out


def test_install_writes_files_and_resets(config, novnc, host, sleeps, user):
    lock = config.tmp_dir / ".X4242-lock"
    lock.write_text("")
    config.vnc_dir.mkdir(parents=True)
    (config.vnc_dir / "passwd").write_text("secret")
    runner = RecordingRunner()

    make_installer(config, runner, novnc).run()

    xstartup = config.vnc_dir / "xstartup"
    assert xstartup.stat().st_mode & 0o777 == 0o755
    assert "export DISPLAY=:4242" in xstartup.read_text()
    assert xstartup in runner.chowned

    vnc_unit = (config.systemd_dir / "vncserver@.service").read_text()
    assert f"User={user}" in vnc_unit
    novnc_unit = (config.systemd_dir / "novnc.service").read_text()
    web, launcher = novnc
    assert f"ExecStart={launcher} --web={web} 6080 localhost:10142" in novnc_unit

    assert not lock.exists()
    assert sleeps == [2.0]
    # Password already present, so no prompt
    assert not any(cmd[-1] == "vncpasswd" for cmd in runner.history)

    # Units are enabled before either is started
    starts = [i for i, c in enumerate(runner.history) if c[:2] == ["systemctl", "start"]]
    enables = [i for i, c in enumerate(runner.history) if c[:2] == ["systemctl", "enable"]]
    assert max(enables) < min(starts)


def test_install_creates_vnc_dir_and_sets_password(config, novnc, host, sleeps):
    runner = RecordingRunner()

    make_installer(config, runner, novnc).run()

    assert config.vnc_dir.is_dir()
    assert config.vnc_dir in runner.chowned
    assert ["sudo", "-u", config.user, "vncpasswd"] in runner.history


def test_skips_packages_when_vncserver_present(config, novnc, monkeypatch, sleeps):
    monkeypatch.setattr(installer_module, "command_exists", lambda name: name == "vncserver")
    monkeypatch.setattr(system, "command_exists", lambda name: False)
    monkeypatch.setattr(installer_module, "require_root", lambda: None)
    runner = RecordingRunner()

    make_installer(config, runner, novnc).run()

    assert not any(cmd[:2] == ["apt-get", "install"] for cmd in runner.history)


def test_missing_novnc_after_clone(config, tmp_path, host, sleeps):
    runner = RecordingRunner()
    inst = Installer(
        config,
        runner=runner,
        package_manager=PACKAGE_MANAGERS["apt-get"],
        novnc_dirs=(tmp_path / "missing",),
        websockify_paths=(tmp_path / "also-missing",),
    )

    with pytest.raises(InstallError, match="NoVNC"):
        inst.ensure_novnc()

    assert ["git", "clone", installer_module.NOVNC_REPO, "/opt/novnc"] in runner.history


def test_unknown_user_is_rejected(tmp_path, novnc, host):
    config = SetupConfig(user="no-such-user-vnc-setup", systemd_dir=tmp_path / "systemd")

    with pytest.raises(InstallError, match="does not exist"):
        make_installer(config, Runner(dry_run=True), novnc).run()


def test_firewall_can_be_disabled(config, novnc, host, sleeps):
    config.configure_firewall = False
    runner = RecordingRunner()

    make_installer(config, runner, novnc).run()

    assert not any(cmd[0] == "ufw" for cmd in runner.history)


def test_steps_are_recorded(config, novnc, host, sleeps, tmp_path):
    run_logger = RunLogger("install", base_dir=tmp_path / "runs")

    make_installer(config, RecordingRunner(), novnc, run_logger=run_logger).run()

    names = [s["name"] for s in run_logger.steps]
    assert names == [
        "check prerequisites",
        "install packages",
        "install noVNC",
        "set VNC password",
        "write xstartup",
        "reset display",
        "install services",
        "start services",
        "configure firewall",
    ]
    assert all(s["success"] for s in run_logger.steps)


def test_failed_step_is_recorded(config, novnc, host, tmp_path):
    run_logger = RunLogger("install", base_dir=tmp_path / "runs")
    config.user = "no-such-user-vnc-setup"

    with pytest.raises(InstallError):
        make_installer(config, RecordingRunner(), novnc, run_logger=run_logger).run()

    assert run_logger.steps[-1]["success"] is False
    assert run_logger.metadata["errors"][0]["step"] == "check prerequisites"


def test_fix_restarts_services(config, sleeps):
    lock = config.tmp_dir / ".X4242-lock"
    lock.write_text("")
    runner = RecordingRunner()

    report = fix(config, runner=runner)

    assert report.removed_paths == [lock]
    assert runner.history == [
        ["systemctl", "stop", "novnc.service"],
        ["systemctl", "stop", "vncserver@4242.service"],
        ["systemctl", "start", "vncserver@4242.service"],
        ["systemctl", "start", "novnc.service"],
    ]


def test_fix_restarts_services_even_when_reset_denied(config, monkeypatch):
    report = ResetReport(
        display=4242,
        denied=[DeniedAction(target="/tmp/.X4242-lock", action="unlink", error="denied")],
    )

    def denied_reset(_config):
        raise ResetPermissionError(report)

    monkeypatch.setattr(installer_module, "reset_session", denied_reset)
    runner = RecordingRunner()

    with pytest.raises(ResetPermissionError):
        fix(config, runner=runner)

    assert runner.history[-2:] == [
        ["systemctl", "start", "vncserver@4242.service"],
        ["systemctl", "start", "novnc.service"],
    ]


def test_status(config):
    (config.tmp_dir / ".X4242-lock").write_text("")

    info = status(config, runner=RecordingRunner(returncode=3))

    assert info["state"] == "dirty"
    assert info["artifacts"] == [str(config.tmp_dir / ".X4242-lock")]
    assert info["units"] == {"vncserver@4242.service": False, "novnc.service": False}


def test_connection_instructions(config):
    text = connection_instructions(config, "198.51.100.7")

    assert "NoVNC is accessible at http://198.51.100.7:6080/vnc.html" in text
    assert "systemctl status vncserver@4242.service novnc.service" in text


def test_connection_instructions_bracket_ipv6(config):
    text = connection_instructions(config, "2001:db8::7")

    assert "http://[2001:db8::7]:6080/vnc.html" in text


def test_connection_instructions_hostname(config):
    assert "http://localhost:6080/vnc.html" in connection_instructions(config, "localhost")
