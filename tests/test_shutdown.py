"""Tests for the interrupt, wait and force-kill stop sequence."""

import signal

import psutil
import pytest

from devward.local.supervisor import process_utils
from devward.local.supervisor.errors import CommandFailedError, ProcessControlError, UnsafeTerminationError
from devward.local.supervisor.shutdown import FORCE_KILL_SIGNAL, StopOutcome, TerminationController

from conftest import FakeProcess, make_service

PID = 4242


class FakeOS:
    """Simulated process table for one service process."""

    def __init__(self, monkeypatch, exits_on_sigint=True, dies_on_kill=True, pgid=PID):
        self.alive = True
        self.exits_on_sigint = exits_on_sigint
        self.dies_on_kill = dies_on_kill
        self.pgid = pgid
        self.sigints = 0
        self.killed_groups = []
        self.commands = []

        os_ = self

        class Proc(FakeProcess):
            def send_signal(self, sig):
                assert sig == signal.SIGINT
                os_.sigints += 1
                if os_.exits_on_sigint:
                    os_.alive = False

        monkeypatch.setattr(process_utils, "is_alive", lambda pid: self.alive)
        monkeypatch.setattr(process_utils, "get_process_from_pid", lambda pid: Proc(pid))
        monkeypatch.setattr(process_utils, "get_process_group", self._getpgid)
        monkeypatch.setattr(process_utils, "kill_process_group", self._killpg)
        monkeypatch.setattr(process_utils, "run_command_sync", self._run)

    def _getpgid(self, pid):
        if isinstance(self.pgid, Exception):
            raise self.pgid
        return self.pgid

    def _killpg(self, pgid, sig):
        self.killed_groups.append((pgid, sig))
        if self.dies_on_kill:
            self.alive = False

    def _run(self, service, command):
        self.commands.append(command)
        return ""


@pytest.fixture
def terminator(clock):
    return TerminationController(grace_period=5, poll_interval=0.1, kill_confirm_timeout=1,
                                 sleep=clock.sleep, clock=clock.time)


def test_not_running_without_pid(tmp_path, terminator, monkeypatch):
    """Test that a service with no identity reports not running and signals nothing."""
    fake = FakeOS(monkeypatch)
    assert terminator.stop(make_service(tmp_path=tmp_path), None) == StopOutcome.NOT_RUNNING
    assert fake.sigints == 0
    assert fake.killed_groups == []


def test_clean_stop_on_sigint(tmp_path, terminator, monkeypatch, clock):
    """Test that a process exiting on SIGINT is stopped without a group kill."""
    fake = FakeOS(monkeypatch)
    assert terminator.stop(make_service(tmp_path=tmp_path), PID) == StopOutcome.STOPPED
    assert fake.sigints == 1
    assert fake.killed_groups == []
    assert clock.sleeps == []


def test_ignored_sigint_escalates_to_group_kill(tmp_path, terminator, monkeypatch, clock):
    """Test that a process ignoring SIGINT gets one interrupt, a grace period, then one group kill."""
    fake = FakeOS(monkeypatch, exits_on_sigint=False)

    assert terminator.stop(make_service(tmp_path=tmp_path), PID) == StopOutcome.KILLED
    assert fake.sigints == 1
    assert fake.killed_groups == [(PID, FORCE_KILL_SIGNAL)]
    assert 5.0 <= clock.now < 5.2


@pytest.mark.parametrize("pgid", [0, 1])
def test_suspect_process_group_never_killed(tmp_path, terminator, monkeypatch, pgid):
    """Test that a process group of 0 or 1 aborts the kill."""
    fake = FakeOS(monkeypatch, exits_on_sigint=False, pgid=pgid)

    with pytest.raises(UnsafeTerminationError) as exc_info:
        terminator.stop(make_service(tmp_path=tmp_path), PID)
    assert exc_info.value.pgid == pgid
    assert fake.killed_groups == []


def test_survivor_after_kill_is_an_error(tmp_path, terminator, monkeypatch):
    """Test that a process still alive after the kill confirmation raises."""
    fake = FakeOS(monkeypatch, exits_on_sigint=False, dies_on_kill=False)

    with pytest.raises(ProcessControlError, match="not killed"):
        terminator.stop(make_service(tmp_path=tmp_path), PID)
    assert len(fake.killed_groups) == 1


def test_process_gone_before_group_lookup(tmp_path, terminator, monkeypatch):
    """Test that a process vanishing before the kill counts as stopped."""
    fake = FakeOS(monkeypatch, exits_on_sigint=False, pgid=ProcessLookupError())
    assert terminator.stop(make_service(tmp_path=tmp_path), PID) == StopOutcome.STOPPED
    assert fake.killed_groups == []


def test_interrupt_failure_aborts(tmp_path, terminator, monkeypatch):
    """Test that a refused SIGINT raises and skips the remaining steps."""
    fake = FakeOS(monkeypatch)

    class Denied(FakeProcess):
        def send_signal(self, sig):
            raise psutil.AccessDenied(PID)

    monkeypatch.setattr(process_utils, "get_process_from_pid", lambda pid: Denied(pid))
    with pytest.raises(ProcessControlError) as exc_info:
        terminator.stop(make_service(tmp_path=tmp_path), PID)
    assert exc_info.value.step == "interrupt"
    assert fake.killed_groups == []


def test_stop_command_runs_first(tmp_path, terminator, monkeypatch):
    """Test that a custom stop command that works avoids signals entirely."""
    fake = FakeOS(monkeypatch)
    original_run = fake._run

    def run_and_exit(service, command):
        fake.alive = False
        return original_run(service, command)

    monkeypatch.setattr(process_utils, "run_command_sync", run_and_exit)
    service = make_service(tmp_path=tmp_path, stop="./shutdown.sh")

    assert terminator.stop(service, PID) == StopOutcome.STOPPED
    assert fake.commands == ["./shutdown.sh"]
    assert fake.sigints == 0


def test_failing_stop_command_falls_back_to_signals(tmp_path, terminator, monkeypatch):
    """Test that a failing stop command still leads to the interrupt."""
    fake = FakeOS(monkeypatch)

    def failing(service, command):
        raise CommandFailedError(service.name, command, 1)

    monkeypatch.setattr(process_utils, "run_command_sync", failing)
    service = make_service(tmp_path=tmp_path, stop="./shutdown.sh")

    assert terminator.stop(service, PID) == StopOutcome.STOPPED
    assert fake.sigints == 1
