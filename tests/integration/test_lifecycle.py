"""End-to-end launch, status and stop against real processes (POSIX only)."""

import os
import socket
import sys
import uuid

import pytest

from devward.local.config import effective_settings as config
from devward.local.supervisor import persistence, process_utils
from devward.local.supervisor.definition import LaunchCheck, OperationConfig, ServiceDefinition
from devward.local.supervisor.errors import CommandFailedError
from devward.local.supervisor.shutdown import StopOutcome
from devward.local.supervisor.supervisor import LaunchOutcome, ServiceController

from conftest import python_command

pytestmark = pytest.mark.skipif(sys.platform == "win32", reason="process groups and signals are POSIX-only")

CFG = OperationConfig(launch_timeout=20)


@pytest.fixture(autouse=True)
def short_grace_period(monkeypatch):
    monkeypatch.setattr(config, "STOP_GRACE_PERIOD", 1.0)


@pytest.fixture
def service_name():
    return f"itest-{uuid.uuid4().hex[:8]}"


@pytest.fixture
def cleanup():
    """Stops every controller a test registers, whatever the test outcome."""
    controllers = []
    yield controllers.append
    for controller in controllers:
        controller.stop(OperationConfig())


def _free_port():
    with socket.socket() as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


def test_log_text_launch_status_and_stop(tmp_path, service_name, cleanup):
    """Test that a service is reported running after its log line and stops on SIGINT."""
    service = ServiceDefinition(
        name=service_name,
        path=tmp_path,
        launch=python_command("import time; print('service ready', flush=True); time.sleep(60)"),
        launch_check=LaunchCheck(log_text="service ready"),
    )
    controller = ServiceController(service)
    cleanup(controller)

    assert controller.launch(CFG) == LaunchOutcome.LAUNCHED
    status = controller.status()
    assert status.is_running
    assert status.pid == persistence.read_pid(service_name)
    assert status.stdout_count >= 1

    assert controller.launch(CFG) == LaunchOutcome.ALREADY_RUNNING
    assert controller.stop(CFG) == StopOutcome.STOPPED
    assert not process_utils.is_alive(status.pid)
    assert persistence.read_pid(service_name) is None


def test_sigint_ignoring_service_is_killed(tmp_path, service_name, cleanup):
    """Test that a process ignoring SIGINT is force-killed with its whole group."""
    service = ServiceDefinition(
        name=service_name,
        path=tmp_path,
        launch=python_command(
            "import signal, time; signal.signal(signal.SIGINT, signal.SIG_IGN); "
            "print('ready', flush=True); time.sleep(60)"
        ),
        launch_check=LaunchCheck(log_text="ready"),
    )
    controller = ServiceController(service)
    cleanup(controller)

    controller.launch(CFG)
    runner_pid = persistence.read_pid(service_name)
    child_pids = [p.pid for p in process_utils.get_process_from_pid(runner_pid).children(recursive=True)]

    assert controller.stop(CFG) == StopOutcome.KILLED
    assert not process_utils.is_alive(runner_pid)
    assert not any(process_utils.is_alive(pid) for pid in child_pids)
    assert not controller.status().is_running
    assert persistence.read_pid(service_name) is None


def test_port_check_and_discovered_ports(tmp_path, service_name, cleanup):
    """Test that a port launch check passes once the service's child listens."""
    port = _free_port()
    service = ServiceDefinition(
        name=service_name,
        path=tmp_path,
        launch=python_command(
            "import socket, time; s = socket.socket(); "
            "s.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1); "
            f"s.bind(('127.0.0.1', {port})); s.listen(); time.sleep(60)"
        ),
        launch_check=LaunchCheck(ports=(port,)),
    )
    controller = ServiceController(service)
    cleanup(controller)

    assert controller.launch(CFG) == LaunchOutcome.LAUNCHED
    assert controller.status().ports == [str(port)]


def test_early_exit_fails_launch(tmp_path, service_name):
    """Test that a service exiting before it is ready fails with its output."""
    service = ServiceDefinition(
        name=service_name,
        path=tmp_path,
        launch=python_command("import sys; print('config missing', file=sys.stderr, flush=True); sys.exit(3)"),
        launch_check=LaunchCheck(log_text="never printed"),
    )

    with pytest.raises(CommandFailedError) as exc_info:
        ServiceController(service).launch(CFG)
    assert exc_info.value.returncode == 3
    assert "config missing" in exc_info.value.output
    assert persistence.read_pid(service_name) is None


def test_stale_pid_of_unrelated_process_is_not_signalled(tmp_path, service_name):
    """Test that a recycled pid belonging to another program is left alone."""
    persistence.write_pid(service_name, os.getpid())
    controller = ServiceController(ServiceDefinition(name=service_name, path=tmp_path))

    assert controller.stop(CFG) == StopOutcome.NOT_RUNNING
    assert controller.stop(CFG) == StopOutcome.NOT_RUNNING
    assert persistence.read_pid(service_name) is None
