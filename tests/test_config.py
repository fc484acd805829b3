"""Tests for installer configuration."""

import os
import pwd
from pathlib import Path

import pytest
from pydantic import ValidationError

from vnc_setup.config import SetupConfig


@pytest.fixture
def current_user():
    return pwd.getpwuid(os.getuid())


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for var in (
        "VNC_SETUP_USER",
        "SUDO_USER",
        "VNC_SETUP_DISPLAY",
        "VNC_SETUP_NOVNC_PORT",
        "VNC_SETUP_GEOMETRY",
        "VNC_SETUP_DEPTH",
    ):
        monkeypatch.delenv(var, raising=False)


def test_defaults(current_user):
    config = SetupConfig(user=current_user.pw_name)

    assert config.display == 1
    assert config.vnc_port == 5901
    assert config.novnc_port == 6080
    assert config.geometry == "1366x768"
    assert config.depth == 24
    assert config.settle_seconds == 2.0
    assert config.home == Path(current_user.pw_dir)
    assert config.vnc_dir == Path(current_user.pw_dir) / ".vnc"
    assert config.vnc_unit == "vncserver@1.service"


def test_vnc_port_follows_display():
    config = SetupConfig(user="alice", home="/home/alice", display=3)

    assert config.vnc_port == 5903
    assert config.vnc_unit == "vncserver@3.service"


def test_explicit_vnc_port_wins():
    config = SetupConfig(user="alice", home="/home/alice", display=3, vnc_port=6000)

    assert config.vnc_port == 6000


def test_unknown_user_leaves_home_unset():
    config = SetupConfig(user="no-such-user-vnc-setup")

    assert config.home is None
    with pytest.raises(RuntimeError):
        config.vnc_dir


@pytest.mark.parametrize(
    "overrides",
    [
        {"display": 0},
        {"geometry": "wide"},
        {"geometry": "1366*768"},
        {"depth": 12},
        {"novnc_port": 70000},
        {"settle_seconds": 5},
        {"user": "   "},
    ],
)
def test_invalid_values(overrides):
    values = {"user": "alice", "home": "/home/alice", **overrides}
    with pytest.raises(ValidationError):
        SetupConfig(**values)


def test_from_env(monkeypatch):
    monkeypatch.setenv("SUDO_USER", "alice")
    monkeypatch.setenv("VNC_SETUP_DISPLAY", "2")
    monkeypatch.setenv("VNC_SETUP_GEOMETRY", "1920x1080")

    config = SetupConfig.from_env(home="/home/alice")

    assert config.user == "alice"
    assert config.display == 2
    assert config.vnc_port == 5902
    assert config.geometry == "1920x1080"


def test_from_env_overrides_beat_environment(monkeypatch):
    monkeypatch.setenv("VNC_SETUP_USER", "alice")
    monkeypatch.setenv("SUDO_USER", "bob")
    monkeypatch.setenv("VNC_SETUP_DEPTH", "16")

    config = SetupConfig.from_env(home="/home/x", depth=32, geometry=None)

    assert config.user == "alice"
    assert config.depth == 32
    assert config.geometry == "1366x768"


def test_from_env_requires_user():
    with pytest.raises(ValidationError):
        SetupConfig.from_env()
