import json
import psutil
import logging
from enum import Enum
from datetime import datetime
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from devward.local.config import effective_settings as config
from devward.log.handler import STDOUT, STDERR
from . import background_tasks, persistence, process_utils
from .definition import OperationConfig, ServiceDefinition
from .errors import CommandFailedError, ProcessControlError
from .persistence import ProcessIdentity
from .shutdown import StopOutcome, TerminationController
from .startup import LaunchVerifier

log = logging.getLogger(__name__)


class ServiceState(Enum):
    STOPPED = "STOPPED"
    RUNNING = "RUNNING"
    UNKNOWN = "UNKNOWN"


class LaunchOutcome(Enum):
    LAUNCHED = "launched"
    ALREADY_RUNNING = "already running"
    EXCLUDED = "excluded"
    NO_COMMAND = "no launch command"


@dataclass
class ServiceStatus:
    """A point-in-time view of one service. Never persisted."""
    service: str
    status: ServiceState = ServiceState.STOPPED
    pid: int = 0
    start_time: Optional[datetime] = None
    ports: List[str] = field(default_factory=list)
    stdout_count: int = 0
    stderr_count: int = 0
    error: Optional[str] = None

    @property
    def is_running(self) -> bool:
        return self.status == ServiceState.RUNNING


class ServiceController:
    """
    Drives one service through build, launch, verification, stop and status.

    The controller owns the service's pid record: it writes it on launch,
    re-validates it against the OS on every call, and clears it when the process
    is gone or turns out to be some other program that reused the pid.
    """

    def __init__(self, service: ServiceDefinition,
                 verifier: Optional[LaunchVerifier] = None,
                 terminator: Optional[TerminationController] = None) -> None:
        self.service = service
        self._verifier = verifier
        self._terminator = terminator

    @property
    def name(self) -> str:
        return self.service.name

    def get_name(self) -> str:
        return self.service.name

    def _get_verifier(self, cfg: OperationConfig) -> LaunchVerifier:
        if self._verifier is not None:
            return self._verifier
        timeout = cfg.launch_timeout if cfg.launch_timeout is not None else config.LAUNCH_TIMEOUT
        return LaunchVerifier(timeout=timeout, poll_interval=config.LAUNCH_POLL_INTERVAL)

    def _get_terminator(self) -> TerminationController:
        if self._terminator is not None:
            return self._terminator
        return TerminationController(
            grace_period=config.STOP_GRACE_PERIOD,
            poll_interval=config.STOP_POLL_INTERVAL,
            kill_confirm_timeout=config.KILL_CONFIRM_TIMEOUT,
        )

    #* --- Identity ---
    def resolve_identity(self) -> Optional[ProcessIdentity]:
        """
        Loads the persisted pid and checks it still belongs to this service.

        A pid with no live process, or whose command line lacks the service
        name, is a stale record: it is cleared and None is returned. The process
        found at a reused pid is never touched.

        :raises ProcessControlError: If the OS refuses to describe the process.
        """
        pid = persistence.read_pid(self.name)
        if pid is None:
            return None
        try:
            if not process_utils.is_alive(pid):
                log.debug(f"Process for {self.name} was not found, resetting.")
                persistence.clear_pid(self.name)
                return None
            proc = process_utils.get_process_from_pid(pid)
            cmdline = process_utils.get_cmdline(proc)
            create_time = process_utils.get_create_time(proc)
        except psutil.NoSuchProcess:
            log.debug(f"Process for {self.name} exited during lookup, resetting.")
            persistence.clear_pid(self.name)
            return None
        except psutil.Error as e:
            raise ProcessControlError(self.name, f"identity lookup for PID {pid}", e) from e

        if self.name not in cmdline:
            log.debug(f"Process for {self.name} was not as expected (found {cmdline}), resetting.")
            persistence.clear_pid(self.name)
            return None
        return ProcessIdentity(pid=pid, create_time=create_time, token=self.name)

    #* --- Lifecycle ---
    def build(self, cfg: OperationConfig) -> bool:
        """
        Runs the build command synchronously.

        :return: True if a build ran, False if there was nothing to do.
        :raises CommandFailedError: If the build command fails.
        """
        if cfg.is_excluded(self.service) or not self.service.build:
            return False
        log.info(f"Building {self.name}...")
        process_utils.run_command_sync(self.service, self.service.build)
        log.info(f"Built {self.name}.")
        return True

    def launch(self, cfg: OperationConfig) -> LaunchOutcome:
        """
        Spawns the service under the runner, records its pid and waits until
        the launch check passes.

        :raises CommandFailedError: If the process cannot be spawned or exits early.
        :raises ProcessControlError: If the run log or pid record cannot be written.
        :raises LaunchTimeoutError: If the launch check times out; the process keeps running.
        """
        if cfg.is_excluded(self.service):
            return LaunchOutcome.EXCLUDED
        if self.resolve_identity() is not None:
            log.info(f"{self.name} is already running.")
            return LaunchOutcome.ALREADY_RUNNING
        if not self.service.launch:
            log.debug(f"{self.name} has no launch command.")
            return LaunchOutcome.NO_COMMAND

        log_path = self.service.get_run_log()
        try:
            log_path.parent.mkdir(parents=True, exist_ok=True)
            log_path.write_text("")
        except OSError as e:
            raise ProcessControlError(self.name, f"resetting run log {log_path}", e) from e

        process = process_utils.launch_process(self.service, log_path)
        try:
            persistence.write_pid(self.name, process.pid)
        except OSError as e:
            # No service process runs without a pid record.
            process.terminate()
            raise ProcessControlError(self.name, f"recording PID {process.pid}", e) from e

        try:
            self._get_verifier(cfg).wait_until_ready(self.service, process)
        except CommandFailedError:
            persistence.clear_pid(self.name)
            raise

        if self.service.warmup is not None:
            background_tasks.start_warmup(self.service)
        return LaunchOutcome.LAUNCHED

    def start(self, cfg: OperationConfig) -> LaunchOutcome:
        """Builds, then launches. A failed build prevents the launch."""
        if cfg.is_excluded(self.service):
            return LaunchOutcome.EXCLUDED
        if not cfg.skip_build:
            self.build(cfg)
        return self.launch(cfg)

    def stop(self, cfg: OperationConfig) -> Optional[StopOutcome]:
        """
        Stops the service and clears its pid record.

        :return: The stop outcome, or None if the service is excluded.
        :raises ProcessControlError: If stopping failed and the process may still be running.
        """
        if cfg.is_excluded(self.service):
            return None
        identity = self.resolve_identity()
        pid = identity.pid if identity else None
        try:
            outcome = self._get_terminator().stop(self.service, pid)
        except ProcessControlError:
            if pid and not self._is_alive_quietly(pid):
                persistence.clear_pid(self.name)
            raise
        persistence.clear_pid(self.name)
        return outcome

    @staticmethod
    def _is_alive_quietly(pid: int) -> bool:
        try:
            return process_utils.is_alive(pid)
        except psutil.Error:
            return True

    #* --- Status ---
    def status(self, snapshot: Optional[process_utils.ConnectionSnapshot] = None) -> ServiceStatus:
        """
        Reports whether the service runs and, if so, its pid, start time, ports
        and log line counts.

        :param snapshot: The connection table shared by the current sweep. A
                         fresh one is taken when omitted.
        :raises ProcessControlError: If the OS refuses to describe the process.
        """
        identity = self.resolve_identity()
        if identity is None:
            return ServiceStatus(service=self.name)

        snapshot = snapshot if snapshot is not None else process_utils.ConnectionSnapshot()
        declared = list(self.service.declared_ports())
        try:
            proc = process_utils.get_process_from_pid(identity.pid)
            ports = process_utils.discover_ports(proc, snapshot, declared)
        except psutil.NoSuchProcess:
            persistence.clear_pid(self.name)
            return ServiceStatus(service=self.name)
        except psutil.Error as e:
            raise ProcessControlError(self.name, f"port lookup for PID {identity.pid}", e) from e
        ports.extend(declared)

        stdout_count, stderr_count = self.get_log_counts()
        return ServiceStatus(
            service=self.name,
            status=ServiceState.RUNNING,
            pid=identity.pid,
            start_time=identity.create_time,
            ports=ports,
            stdout_count=stdout_count,
            stderr_count=stderr_count,
        )

    def get_log_counts(self) -> Tuple[int, int]:
        """Counts the stdout and stderr records in the run log."""
        stdout_count = stderr_count = 0
        try:
            with self.service.get_run_log().open("r", encoding="utf-8", errors="replace") as f:
                for line in f:
                    try:
                        stream = json.loads(line).get("stream")
                    except (json.JSONDecodeError, AttributeError):
                        continue
                    if stream == STDOUT:
                        stdout_count += 1
                    elif stream == STDERR:
                        stderr_count += 1
        except OSError:
            return 0, 0
        return stdout_count, stderr_count
