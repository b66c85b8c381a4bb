"""Tests for process introspection, port discovery and command execution."""

import sys

import psutil
import pytest

from devward.local.supervisor import process_utils
from devward.local.supervisor.errors import CommandFailedError
from devward.local.supervisor.process_utils import ConnectionSnapshot, discover_ports

from conftest import FakeProcess, listen_conn, make_service


class StubSnapshot:
    def __init__(self, ports_by_pid):
        self.ports_by_pid = ports_by_pid

    def listening_ports(self, pid):
        return set(self.ports_by_pid.get(pid, ()))


def _tree():
    grandchild = FakeProcess(12, children_error=psutil.NoSuchProcess(12))
    child = FakeProcess(11)
    root = FakeProcess(10, children=[child, grandchild])
    return root


def test_discover_ports_walks_descendants():
    """Test that ports of the whole tree are collected once each, in discovery order."""
    snapshot = StubSnapshot({10: [8080], 11: [8080, 5000], 12: [6000]})
    assert discover_ports(_tree(), snapshot) == ["8080", "5000", "6000"]


def test_discover_ports_excludes_known_ports():
    """Test that declared ports are not reported twice."""
    snapshot = StubSnapshot({10: [8080], 11: [5000], 12: [6000]})
    assert discover_ports(_tree(), snapshot, known_ports=["5000"]) == ["8080", "6000"]


def test_discover_ports_survives_vanished_children():
    """Test that a node whose children cannot be listed still reports its own ports."""
    root = FakeProcess(10, children_error=psutil.NoSuchProcess(10))
    assert discover_ports(root, StubSnapshot({10: [7000]})) == ["7000"]


def test_snapshot_loads_connection_table_once(monkeypatch):
    """Test that one snapshot reads the system table a single time."""
    calls = []

    def fake_net_connections(kind="inet"):
        calls.append(kind)
        return [
            listen_conn(10, 8080),
            listen_conn(10, 8081),
            listen_conn(11, 9000, status=psutil.CONN_ESTABLISHED),
            listen_conn(None, 22),
        ]

    monkeypatch.setattr(process_utils.psutil, "net_connections", fake_net_connections)
    snapshot = ConnectionSnapshot()

    assert snapshot.listening_ports(10) == {8080, 8081}
    assert snapshot.listening_ports(11) == set()
    assert calls == ["inet"]


def test_snapshot_falls_back_to_per_process(monkeypatch):
    """Test that an unreadable system table falls back to per-process lookups."""
    def denied(kind="inet"):
        raise psutil.AccessDenied()

    monkeypatch.setattr(process_utils.psutil, "net_connections", denied)
    monkeypatch.setattr(process_utils, "get_process_from_pid", lambda pid: FakeProcess(pid, listening=[3000]))

    assert ConnectionSnapshot().listening_ports(10) == {3000}


def test_is_alive_treats_zombies_as_dead(monkeypatch):
    """Test that an exited-but-unreaped process is not alive."""
    class Zombie(FakeProcess):
        def status(self):
            return psutil.STATUS_ZOMBIE

    monkeypatch.setattr(process_utils, "pid_exists", lambda pid: True)
    monkeypatch.setattr(process_utils, "get_process_from_pid", lambda pid: Zombie(pid))
    assert process_utils.is_alive(10) is False


def test_is_alive_missing_pid(monkeypatch):
    monkeypatch.setattr(process_utils, "pid_exists", lambda pid: False)
    assert process_utils.is_alive(10) is False


def test_run_command_sync_returns_output(tmp_path):
    """Test that a successful shell command returns its output."""
    service = make_service(tmp_path=tmp_path, env={"GREETING": "hello"})
    output = process_utils.run_command_sync(service, f'"{sys.executable}" -c "import os; print(os.environ[\'GREETING\'])"')
    assert output.strip() == "hello"


def test_run_command_sync_raises_on_failure(tmp_path):
    """Test that a failing command raises CommandFailedError with its output."""
    service = make_service(tmp_path=tmp_path)
    with pytest.raises(CommandFailedError) as exc_info:
        process_utils.run_command_sync(service, f'"{sys.executable}" -c "print(\'broken\'); raise SystemExit(3)"')
    assert exc_info.value.returncode == 3
    assert "broken" in exc_info.value.output


def test_runner_args_carry_service_name(tmp_path):
    """Test that the runner command line holds the identity token."""
    service = make_service(name="worker", tmp_path=tmp_path, launch="serve --port 1")
    args = process_utils.get_runner_args(service, tmp_path / "worker.log")
    assert args[1:] == ["-m", process_utils.RUNNER_MODULE, "worker", str(tmp_path / "worker.log"), "serve --port 1"]
