import json
import time
import logging
import subprocess
from collections import deque
from pathlib import Path
from typing import Callable, Deque, List

import psutil

from . import process_utils
from .definition import LaunchCheck, ServiceDefinition
from .errors import CommandFailedError, LaunchTimeoutError

log = logging.getLogger(__name__)

LOG_TAIL_LINES = 10


class RunLogReader:
    """Incrementally reads new records from a service's JSON-lines run log."""

    def __init__(self, log_path: Path):
        self.log_path = Path(log_path)
        self.offset = 0
        self._partial = b""

    def read_new(self) -> List[dict]:
        """Returns the complete records appended since the previous call."""
        if not self.log_path.exists():
            return []
        with self.log_path.open("rb") as f:
            f.seek(self.offset)
            data = f.read()
            self.offset = f.tell()

        lines = (self._partial + data).split(b"\n")
        # The last element is either empty or a line still being written.
        self._partial = lines.pop()
        records = []
        for line in lines:
            if not line.strip():
                continue
            try:
                record = json.loads(line.decode("utf-8", errors="replace"))
            except json.JSONDecodeError:
                continue
            if isinstance(record, dict):
                records.append(record)
        return records


class LaunchVerifier:
    """
    Waits for a freshly launched service to become ready.

    With no launch check the service is ready as soon as it has been spawned.
    Otherwise the run log (log-text check) or the process tree (port check) is
    polled every `poll_interval` seconds until the check passes, the launched
    process exits, or `timeout` elapses. A timed-out process is left running.
    """

    def __init__(self, timeout: float, poll_interval: float,
                 sleep: Callable[[float], None] = time.sleep,
                 clock: Callable[[], float] = time.monotonic):
        self.timeout = timeout
        self.poll_interval = poll_interval
        self._sleep = sleep
        self._clock = clock

    def wait_until_ready(self, service: ServiceDefinition, process: subprocess.Popen) -> None:
        """
        Blocks until the service is ready.

        :param service: The launched service.
        :param process: The Popen handle of the launched process.
        :raises LaunchTimeoutError: If the check is not satisfied in time.
        :raises CommandFailedError: If the process exits before becoming ready.
        """
        check = service.launch_check
        if check is None or (not check.log_text and not check.ports):
            log.debug(f"{service.name} has no launch check, ready on spawn.")
            return

        if check.log_text:
            reader = RunLogReader(service.get_run_log())
            is_ready = lambda: self._log_text_seen(reader, check)
            description = f"log text '{check.log_text}'"
        else:
            is_ready = lambda: self._ports_bound(process.pid, check)
            description = f"ports {', '.join(check.port_strings)}"

        log.info(f"Waiting for {service.name} to start ({description})...")
        deadline = self._clock() + self.timeout
        while True:
            if is_ready():
                log.info(f"{service.name} started.")
                return
            returncode = process.poll()
            if returncode is not None:
                raise CommandFailedError(service.name, service.launch, returncode,
                                         "\n".join(tail_log(service.get_run_log())))
            if self._clock() >= deadline:
                raise LaunchTimeoutError(service.name, self.timeout, f"waiting for {description}")
            self._sleep(self.poll_interval)

    @staticmethod
    def _log_text_seen(reader: RunLogReader, check: LaunchCheck) -> bool:
        return any(check.log_text in str(record.get("message", "")) for record in reader.read_new())

    @staticmethod
    def _ports_bound(pid: int, check: LaunchCheck) -> bool:
        try:
            proc = process_utils.get_process_from_pid(pid)
        except psutil.NoSuchProcess:
            return False
        observed = set(process_utils.discover_ports(proc, process_utils.ConnectionSnapshot()))
        return set(check.port_strings) <= observed


def tail_log(log_path: Path, count: int = LOG_TAIL_LINES) -> List[str]:
    """Returns the message text of the last `count` records of a run log."""
    if not Path(log_path).exists():
        return []
    tail: Deque[str] = deque(maxlen=count)
    for record in RunLogReader(log_path).read_new():
        tail.append(str(record.get("message", "")))
    return list(tail)
