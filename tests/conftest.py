"""Shared pytest configuration and fixtures for all tests."""

import json
import shlex
import sys
from pathlib import Path
from types import SimpleNamespace

import psutil
import pytest

from devward.local.config import effective_settings as config
from devward.local.supervisor.definition import LaunchCheck, ServiceDefinition


def pytest_collection_modifyitems(config, items):
    """Automatically apply markers based on test file location."""
    for item in items:
        if "/integration/" in str(item.fspath):
            item.add_marker(pytest.mark.integration)


# =============================================================================
# Home Directory
# =============================================================================


@pytest.fixture(autouse=True)
def devward_home(tmp_path, monkeypatch):
    """Points every devward path at a throwaway home directory."""
    home = tmp_path / "devward-home"
    monkeypatch.setattr(config, "DEVWARD_HOME", home)
    monkeypatch.setattr(config, "PID_DIR", home / "pidFiles")
    monkeypatch.setattr(config, "LOG_DIR", home / "logs")
    monkeypatch.setattr(config, "TOOL_LOG_PATH", home / "devward.log")
    monkeypatch.setattr(config, "OVERRIDES_JSON_PATH", home / "overrides.json")
    monkeypatch.setattr(config, "CONFIG_FILE_ENV", "")
    monkeypatch.setattr(config, "VERBOSE_LOGGING", False)
    for key in config.MODIFIABLE_SETTINGS:
        monkeypatch.setattr(config, key, getattr(config, key))
    return home


# =============================================================================
# Builders
# =============================================================================


def make_service(name="api", tmp_path=None, **kwargs) -> ServiceDefinition:
    """Build a ServiceDefinition with sensible test defaults."""
    kwargs.setdefault("path", tmp_path)
    return ServiceDefinition(name=name, **kwargs)


def port_check(*ports) -> LaunchCheck:
    return LaunchCheck(ports=tuple(ports))


def write_run_log(service: ServiceDefinition, *records) -> Path:
    """Append (stream, message) records to a service's run log."""
    log_path = service.get_run_log()
    log_path.parent.mkdir(parents=True, exist_ok=True)
    with log_path.open("a", encoding="utf-8") as f:
        for stream, message in records:
            f.write(json.dumps({"name": service.name, "stream": stream, "message": message, "time": 0}) + "\n")
    return log_path


def python_command(code: str) -> str:
    """A launch command that runs a Python snippet with the current interpreter."""
    return shlex.join([sys.executable, "-c", code])


# =============================================================================
# Fakes
# =============================================================================


class FakeClock:
    """A monotonic clock that only advances when slept on."""

    def __init__(self):
        self.now = 0.0
        self.sleeps = []

    def time(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class FakeProcess:
    """Stands in for psutil.Process in process-tree and signalling tests."""

    def __init__(self, pid, cmdline=(), children=(), create_time=1_700_000_000.0,
                 listening=(), children_error=None):
        self.pid = pid
        self._cmdline = list(cmdline)
        self._children = list(children)
        self._create_time = create_time
        self._listening = list(listening)
        self._children_error = children_error
        self.signals = []

    def cmdline(self):
        return self._cmdline

    def create_time(self):
        return self._create_time

    def children(self):
        if self._children_error is not None:
            raise self._children_error
        return self._children

    def status(self):
        return psutil.STATUS_RUNNING

    def send_signal(self, sig):
        self.signals.append(sig)

    def net_connections(self, kind="inet"):
        return [listen_conn(self.pid, port) for port in self._listening]


class FakePopen:
    """Stands in for the runner's Popen handle."""

    def __init__(self, pid=4242, returncode=None):
        self.pid = pid
        self.returncode = returncode
        self.terminated = False

    def poll(self):
        return self.returncode

    def terminate(self):
        self.terminated = True


def listen_conn(pid, port, status=psutil.CONN_LISTEN):
    return SimpleNamespace(pid=pid, status=status, laddr=SimpleNamespace(ip="127.0.0.1", port=port))


@pytest.fixture
def clock():
    return FakeClock()
