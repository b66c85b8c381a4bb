import time
import logging
import threading
from pathlib import Path
from typing import TYPE_CHECKING, Dict, List, Optional

import requests
from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

from devward.local.config import effective_settings as config
from .definition import OperationConfig, ServiceDefinition
from .errors import DevwardError

if TYPE_CHECKING:
    from .supervisor import ServiceController

log = logging.getLogger(__name__)

_warmup_threads: List[threading.Thread] = []


#* --- Warmup ---
def _run_warmup(service: ServiceDefinition) -> None:
    """Requests the service's warmup URL once. Failures are only logged."""
    url = service.warmup.url
    log.info(f"Warming up {service.name} at {url}")
    try:
        response = requests.get(url, timeout=config.WARMUP_TIMEOUT)
        log.info(f"Warmup request for {service.name} returned HTTP {response.status_code}.")
    except requests.RequestException as e:
        log.warning(f"Warmup request for {service.name} failed: {e}")


def start_warmup(service: ServiceDefinition) -> threading.Thread:
    """
    Starts the warmup request for a service in a background thread.

    :param service: A service that has just been confirmed running.
    :return: The started thread.
    """
    thread = threading.Thread(target=_run_warmup, args=(service,), daemon=True, name=f"Warmup-{service.name}")
    thread.start()
    _warmup_threads.append(thread)
    return thread


def wait_for_warmups(timeout: Optional[float] = None) -> None:
    """Waits for outstanding warmup requests, so the console doesn't exit under them."""
    timeout = config.WARMUP_TIMEOUT if timeout is None else timeout
    while _warmup_threads:
        _warmup_threads.pop().join(timeout=timeout)


#* --- Watch ---
def rebuild_and_restart(controller: "ServiceController", cfg: OperationConfig) -> bool:
    """
    Builds a service and, if the build succeeds, stops and relaunches it.
    A failing build leaves the running instance alone.

    :return: True if the service was relaunched.
    """
    name = controller.get_name()
    log.info(f"Change detected for {name}, rebuilding...")
    try:
        controller.build(cfg)
    except DevwardError as e:
        log.error(f"Rebuild of {name} failed, keeping the running instance: {e}")
        return False
    try:
        controller.stop(cfg)
        controller.launch(cfg)
    except DevwardError as e:
        log.error(f"Restart of {name} failed: {e}")
        return False
    log.info(f"{name} restarted.")
    return True


class ServiceChangeHandler(FileSystemEventHandler):
    """A watchdog event handler that restarts one service when its sources change."""

    def __init__(self, controller: "ServiceController", cfg: OperationConfig):
        super().__init__()
        self.controller = controller
        self.cfg = cfg
        watch = controller.service.watch
        self.excluded = [Path(p).resolve() for p in watch.exclude] if watch else []
        self.debounce_interval = config.WATCH_DEBOUNCE_SECONDS
        self.last_event = 0.0
        self.restart_lock = threading.Lock()

    def is_excluded(self, path_str: str) -> bool:
        path = Path(path_str).resolve()
        return any(path == excluded or excluded in path.parents for excluded in self.excluded)

    def _should_process_event(self) -> bool:
        """Check if the event should be processed or skipped due to debouncing."""
        now = time.time()
        if self.last_event > now - self.debounce_interval:
            return False
        self.last_event = now
        return True

    def on_any_event(self, event) -> None:
        """Called by watchdog on any file change under a watched path."""
        if event.event_type in ("opened", "closed", "closed_no_write"):
            return
        if self.is_excluded(event.src_path) or not self._should_process_event():
            return
        log.debug(f"Watchdog event: {event.event_type} on {event.src_path}")
        threading.Thread(target=self._restart, daemon=True, name=f"Restart-{self.controller.get_name()}").start()

    def _restart(self) -> None:
        if not self.restart_lock.acquire(blocking=False):
            log.debug(f"Restart of {self.controller.get_name()} already in progress.")
            return
        try:
            rebuild_and_restart(self.controller, self.cfg)
        finally:
            self.restart_lock.release()


def start_watching(controllers: List["ServiceController"], cfg: OperationConfig) -> Optional[Observer]:
    """
    Schedules a watchdog observer on every included path of the given services.

    :return: The started observer, or None if no service defines a watch.
    """
    observer = Observer()
    scheduled: Dict[str, int] = {}
    for controller in controllers:
        watch = controller.service.watch
        if watch is None or cfg.is_excluded(controller.service):
            continue
        handler = ServiceChangeHandler(controller, cfg)
        for include in watch.include:
            path = Path(include)
            if not path.exists():
                log.warning(f"Watch path '{path}' for {controller.get_name()} does not exist. Skipping.")
                continue
            observer.schedule(handler, str(path), recursive=path.is_dir())
            scheduled[controller.get_name()] = scheduled.get(controller.get_name(), 0) + 1

    if not scheduled:
        return None
    for name, count in scheduled.items():
        log.info(f"Watching {count} path(s) for {name}.")
    observer.start()
    return observer
