import os
import sys
import psutil
import logging
import threading
import subprocess
from pathlib import Path
from datetime import datetime
from typing import TYPE_CHECKING, Any, Dict, Iterable, List, Optional, Set

from .errors import CommandFailedError

if TYPE_CHECKING:
    from .definition import ServiceDefinition

log = logging.getLogger(__name__)

LISTEN = psutil.CONN_LISTEN
RUNNER_MODULE = "devward.local.script_entry.runner"


#* --- Process Status & Introspection ---
def pid_exists(pid: int) -> bool:
    """A wrapper for psutil.pid_exists for easy testing/mocking if needed."""
    return psutil.pid_exists(pid)

def get_process_from_pid(pid: int) -> psutil.Process:
    """A wrapper for psutil.Process for easy testing/mocking if needed."""
    return psutil.Process(pid)

def is_alive(pid: int) -> bool:
    """
    True if a non-zombie process exists at pid.

    Zombies are reported as gone: they have exited and only wait to be reaped
    by their parent.
    """
    if not pid_exists(pid):
        return False
    try:
        return get_process_from_pid(pid).status() != psutil.STATUS_ZOMBIE
    except psutil.NoSuchProcess:
        return False

def get_cmdline(proc: psutil.Process) -> str:
    """Returns the full command line of a process as a single string."""
    return " ".join(proc.cmdline())

def get_create_time(proc: psutil.Process) -> datetime:
    """Returns the OS-reported creation time of a process."""
    return datetime.fromtimestamp(proc.create_time())


class ConnectionSnapshot:
    """
    The system-wide socket table, fetched at most once and valid for one sweep.

    A status sweep over many services shares one snapshot so the expensive
    table is read once. Create a new snapshot for every sweep; a snapshot is
    never refreshed. Where the system-wide table is not readable (macOS without
    root), listening sockets are read per process instead.
    """

    def __init__(self) -> None:
        self._listening: Optional[Dict[int, Set[int]]] = None
        self._per_process = False
        self._load_lock = threading.Lock()

    def _load(self) -> None:
        listening: Dict[int, Set[int]] = {}
        try:
            connections = psutil.net_connections(kind="inet")
        except psutil.AccessDenied:
            log.debug("System-wide connection table not readable, falling back to per-process lookups.")
            self._per_process = True
            self._listening = listening
            return
        for connection in connections:
            if connection.status == LISTEN and connection.pid and connection.laddr:
                listening.setdefault(connection.pid, set()).add(connection.laddr.port)
        self._listening = listening

    def _ports_for_process(self, pid: int) -> Set[int]:
        try:
            connections = get_process_from_pid(pid).net_connections(kind="inet")
        except psutil.Error:
            return set()
        return {c.laddr.port for c in connections if c.status == LISTEN and c.laddr}

    def listening_ports(self, pid: int) -> Set[int]:
        """Returns the ports the given pid has in LISTEN state."""
        with self._load_lock:
            if self._listening is None:
                self._load()
        if self._per_process:
            return self._ports_for_process(pid)
        return set(self._listening.get(pid, ()))


def discover_ports(
    proc: psutil.Process,
    snapshot: ConnectionSnapshot,
    known_ports: Iterable[str] = (),
) -> List[str]:
    """
    Collects the listening ports of a process and all of its descendants.

    Depth-first over freshly queried children. A node whose children cannot be
    enumerated (it exited mid-walk) contributes only its own ports.

    :param proc: The root of the process tree to inspect.
    :param snapshot: The connection table for the current sweep.
    :param known_ports: Ports already reported elsewhere (declared launch-check
                        ports); these are left out of the result.
    :return: Port numbers as strings, deduplicated, in discovery order.
    """
    seen = set(str(port) for port in known_ports)
    ports: List[str] = []
    stack = [proc]
    while stack:
        node = stack.pop()
        for port in sorted(snapshot.listening_ports(node.pid)):
            port_str = str(port)
            if port_str not in seen:
                seen.add(port_str)
                ports.append(port_str)
        try:
            children = node.children()
        except psutil.Error:
            continue
        stack.extend(reversed(children))
    return ports


#* --- Command Execution ---
def build_env(overrides: Dict[str, str]) -> Dict[str, str]:
    """The current environment with a service's overrides applied."""
    env = dict(os.environ)
    env.update(overrides)
    return env

def _get_popen_creation_flags() -> Dict[str, Any]:
    """Returns platform-specific flags that detach the runner into its own process group."""
    if sys.platform == "win32":
        return {"creationflags": subprocess.DETACHED_PROCESS | subprocess.CREATE_NEW_PROCESS_GROUP}
    return {"start_new_session": True}

def run_command_sync(service: "ServiceDefinition", command: str) -> str:
    """
    Runs a build or stop command through the shell and waits for it.

    :param service: The service the command belongs to.
    :param command: The shell command line.
    :return: The combined stdout/stderr output.
    :raises CommandFailedError: If the command exits non-zero or cannot be run.
    """
    cwd = service.get_working_dir()
    log.debug(f"Running '{command}' for {service.name} in '{cwd}'")
    try:
        result = subprocess.run(
            command,
            shell=True,
            cwd=str(cwd),
            env=build_env(service.env),
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
        )
    except OSError as e:
        raise CommandFailedError(service.name, command, None, str(e)) from e

    output = result.stdout.decode("utf-8", errors="replace") if result.stdout else ""
    for line in output.splitlines():
        log.debug(f"[{service.name}] {line}")
    if result.returncode != 0:
        raise CommandFailedError(service.name, command, result.returncode, output.strip())
    return output

def get_runner_args(service: "ServiceDefinition", log_path: Path) -> List[str]:
    """Returns the command line that runs a service's launch command under the runner."""
    return [sys.executable, "-m", RUNNER_MODULE, service.name, str(log_path), service.launch]

def launch_process(service: "ServiceDefinition", log_path: Path) -> subprocess.Popen:
    """
    Spawns the runner for a service as a detached process group leader.

    :param service: The service to launch.
    :param log_path: The run log the runner appends service output to.
    :return: The Popen handle of the runner.
    :raises CommandFailedError: If the runner cannot be spawned.
    """
    args = get_runner_args(service, log_path)
    cwd = service.get_working_dir()
    log.info(f"Starting process: {service.name}...")
    try:
        p = subprocess.Popen(
            args,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            cwd=str(cwd),
            env=build_env(service.env),
            **_get_popen_creation_flags(),
        )
    except OSError as e:
        raise CommandFailedError(service.name, service.launch, None, str(e)) from e
    log.debug(f"{service.name} runner started with PID: {p.pid}")
    return p


#* --- Signalling ---
def get_process_group(pid: int) -> int:
    """A wrapper for os.getpgid for easy testing/mocking if needed."""
    return os.getpgid(pid)

def kill_process_group(pgid: int, sig: int) -> None:
    """A wrapper for os.killpg for easy testing/mocking if needed."""
    os.killpg(pgid, sig)
