import time
import signal
import psutil
import logging
from enum import Enum
from typing import Callable, Optional

from . import process_utils
from .definition import ServiceDefinition
from .errors import CommandFailedError, ProcessControlError, UnsafeTerminationError

log = logging.getLogger(__name__)

SUSPECT_PGIDS = (0, 1)
FORCE_KILL_SIGNAL = getattr(signal, "SIGKILL", signal.SIGTERM)


class StopOutcome(Enum):
    """How a stop request ended. Only STOPPED is a clean stop."""
    STOPPED = "stopped"
    KILLED = "killed"
    NOT_RUNNING = "not running"


class TerminationController:
    """
    Stops a service process: interrupt, wait, then force-kill its process group.

    Every OS-level failure raises ProcessControlError and aborts the remaining
    steps. A process group id of 0 or 1 is never signalled.
    """

    def __init__(self, grace_period: float, poll_interval: float, kill_confirm_timeout: float,
                 sleep: Callable[[float], None] = time.sleep,
                 clock: Callable[[], float] = time.monotonic):
        self.grace_period = grace_period
        self.poll_interval = poll_interval
        self.kill_confirm_timeout = kill_confirm_timeout
        self._sleep = sleep
        self._clock = clock

    def stop(self, service: ServiceDefinition, pid: Optional[int]) -> StopOutcome:
        """
        Runs the stop sequence for the process recorded for a service.

        :param service: The service being stopped.
        :param pid: The validated pid, or None when the service has no identity.
        :return: The outcome; NOT_RUNNING and KILLED are soft failures.
        :raises ProcessControlError: If a step fails or the process survives the kill.
        """
        if not pid:
            return StopOutcome.NOT_RUNNING

        if service.stop:
            self._run_stop_command(service)
            if self.wait_for_exit(service, pid, self.grace_period):
                return StopOutcome.STOPPED

        if self.interrupt(service, pid):
            return StopOutcome.STOPPED

        log.info(f"SIGINT failed to stop {service.name}, waiting for {self.grace_period:g}s before sending SIGKILL")
        if self.wait_for_exit(service, pid, self.grace_period):
            return StopOutcome.STOPPED

        if not self.kill_group(service, pid):
            return StopOutcome.STOPPED
        if self.wait_for_exit(service, pid, self.kill_confirm_timeout):
            return StopOutcome.KILLED
        raise ProcessControlError(service.name, "force-kill", RuntimeError("Process was not killed"))

    def _run_stop_command(self, service: ServiceDefinition) -> None:
        log.debug(f"Running stop command for {service.name}")
        try:
            process_utils.run_command_sync(service, service.stop)
        except CommandFailedError as e:
            log.warning(f"Stop command for {service.name} failed, falling back to signals: {e}")

    def _check_alive(self, service: ServiceDefinition, pid: int) -> bool:
        try:
            return process_utils.is_alive(pid)
        except psutil.Error as e:
            raise ProcessControlError(service.name, "liveness check", e) from e

    def interrupt(self, service: ServiceDefinition, pid: int) -> bool:
        """
        Sends SIGINT to the recorded pid.

        :return: True if the process is already gone afterwards.
        """
        try:
            process_utils.get_process_from_pid(pid).send_signal(signal.SIGINT)
        except psutil.NoSuchProcess:
            return True
        except (psutil.Error, OSError, ValueError) as e:
            raise ProcessControlError(service.name, "interrupt", e) from e
        log.debug(f"Sent SIGINT to {service.name} (PID {pid})")
        return not self._check_alive(service, pid)

    def wait_for_exit(self, service: ServiceDefinition, pid: int, timeout: float) -> bool:
        """
        Polls liveness every `poll_interval` seconds for up to `timeout` seconds.

        :return: True if the process exited within the timeout.
        """
        deadline = self._clock() + timeout
        while True:
            if not self._check_alive(service, pid):
                return True
            if self._clock() >= deadline:
                return False
            self._sleep(self.poll_interval)

    def kill_group(self, service: ServiceDefinition, pid: int) -> bool:
        """
        Force-kills the whole process group of the recorded pid.

        :return: False if the process vanished before its group could be resolved.
        :raises UnsafeTerminationError: If the group id is 0 or 1.
        """
        try:
            pgid = process_utils.get_process_group(pid)
        except ProcessLookupError:
            return False
        except OSError as e:
            raise ProcessControlError(service.name, "process group lookup", e) from e

        if pgid in SUSPECT_PGIDS:
            raise UnsafeTerminationError(service.name, pgid)

        log.warning(f"Killing process group {pgid} of {service.name} (PID {pid}).")
        try:
            process_utils.kill_process_group(pgid, FORCE_KILL_SIGNAL)
        except ProcessLookupError:
            return False
        except OSError as e:
            raise ProcessControlError(service.name, "force-kill", e) from e
        return True
