import logging
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Optional

from devward.local.config import effective_settings as config

log = logging.getLogger(__name__)

# Largest value a pid_t can hold; anything above cannot be a real process id.
MAX_PID = 2 ** 31 - 1


@dataclass(frozen=True)
class ProcessIdentity:
    """
    The validated binding between a service and a live OS process.

    `create_time` comes from the OS, not from the clock at launch time, and
    `token` is the service name that must appear in the process command line.
    """
    pid: int
    create_time: datetime
    token: str


def get_pid_path(service_name: str) -> Path:
    """Returns the pid record path for a service."""
    return Path(config.PID_DIR) / f"{service_name}.pid"


def read_pid(service_name: str) -> Optional[int]:
    """
    Reads the persisted pid for a service.

    :param service_name: The service name.
    :return: The pid, or None when there is no record. Unparsable records are
             deleted and reported as absent.
    """
    pid_path = get_pid_path(service_name)
    if not pid_path.exists():
        log.debug(f"No pidfile for {service_name}")
        return None
    try:
        pid = int(pid_path.read_text().strip())
    except ValueError:
        log.warning(f"Pidfile for {service_name} at '{pid_path}' is corrupt, removing it.")
        pid_path.unlink(missing_ok=True)
        return None
    if not 0 < pid <= MAX_PID:
        log.warning(f"Pidfile for {service_name} holds an impossible PID {pid}, removing it.")
        pid_path.unlink(missing_ok=True)
        return None
    return pid


def write_pid(service_name: str, pid: int) -> None:
    """
    Atomically writes the pid record for a service as decimal text.

    :param service_name: The service name.
    :param pid: The OS process id of the launched process.
    """
    pid_path = get_pid_path(service_name)
    pid_path.parent.mkdir(parents=True, exist_ok=True)
    temp_pid_path = pid_path.with_suffix(".tmp")
    try:
        temp_pid_path.write_text(str(pid))
        temp_pid_path.replace(pid_path)
    finally:
        temp_pid_path.unlink(missing_ok=True)
    log.debug(f"Wrote pidfile for {service_name}: {pid}")


def clear_pid(service_name: str) -> None:
    """Removes the pid record for a service, if any."""
    pid_path = get_pid_path(service_name)
    if pid_path.exists():
        pid_path.unlink(missing_ok=True)
        log.debug(f"Cleared pidfile for {service_name}")
