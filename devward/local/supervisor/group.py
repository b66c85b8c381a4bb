"""
Uniform start/stop/status over services and ordered groups of services.

A target is either a `ServiceLeaf`, wrapping the controller of one service,
or a `ServiceGroup`, an ordered list of targets. Both expose `get_name`,
`start`, `stop`, `status` and `controllers`. Leaf operations never raise for
service failures: each service's outcome is returned as an `OperationResult`,
and a status that cannot be read comes back as an UNKNOWN `ServiceStatus`
carrying the error, so one broken service doesn't abort the others.
"""
import logging
from enum import Enum
from dataclasses import dataclass
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, List, Optional, Sequence, Union

from .definition import OperationConfig
from .errors import DevwardError, ProcessControlError
from .process_utils import ConnectionSnapshot
from .shutdown import StopOutcome
from .supervisor import LaunchOutcome, ServiceController, ServiceState, ServiceStatus

log = logging.getLogger(__name__)


class Outcome(Enum):
    SUCCESS = "success"
    SOFT_FAIL = "soft failure"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass
class OperationResult:
    """The outcome of one operation on one service."""
    service: str
    operation: str
    outcome: Outcome
    message: str = ""
    error: Optional[DevwardError] = None

    @property
    def ok(self) -> bool:
        return self.outcome != Outcome.FAILED


_LAUNCH_OUTCOMES = {
    LaunchOutcome.LAUNCHED: (Outcome.SUCCESS, "started"),
    LaunchOutcome.ALREADY_RUNNING: (Outcome.SOFT_FAIL, "already running"),
    LaunchOutcome.EXCLUDED: (Outcome.SKIPPED, "excluded"),
    LaunchOutcome.NO_COMMAND: (Outcome.SKIPPED, "no launch command"),
}

_STOP_OUTCOMES = {
    StopOutcome.STOPPED: (Outcome.SUCCESS, "stopped"),
    StopOutcome.KILLED: (Outcome.SOFT_FAIL, "killed"),
    StopOutcome.NOT_RUNNING: (Outcome.SOFT_FAIL, "not running"),
    None: (Outcome.SKIPPED, "excluded"),
}


class ServiceLeaf:
    """A single service as a target."""

    def __init__(self, controller: ServiceController):
        self.controller = controller

    def get_name(self) -> str:
        return self.controller.get_name()

    def controllers(self) -> List[ServiceController]:
        return [self.controller]

    def _run(self, operation: str, action: Callable[[], object], outcomes: dict) -> List[OperationResult]:
        name = self.get_name()
        try:
            outcome, message = outcomes[action()]
        except (DevwardError, OSError) as e:
            error = e if isinstance(e, DevwardError) else ProcessControlError(name, operation, e)
            log.error(f"{operation.capitalize()} {name} failed: {error}")
            return [OperationResult(name, operation, Outcome.FAILED, str(error), error)]
        if outcome == Outcome.SOFT_FAIL:
            log.warning(f"{operation.capitalize()} {name}: {message}")
        return [OperationResult(name, operation, outcome, message)]

    def build(self, cfg: OperationConfig) -> List[OperationResult]:
        return self._run("build", lambda: self.controller.build(cfg),
                         {True: (Outcome.SUCCESS, "built"), False: (Outcome.SKIPPED, "nothing to build")})

    def start(self, cfg: OperationConfig) -> List[OperationResult]:
        return self._run("start", lambda: self.controller.start(cfg), _LAUNCH_OUTCOMES)

    def launch(self, cfg: OperationConfig) -> List[OperationResult]:
        return self._run("launch", lambda: self.controller.launch(cfg), _LAUNCH_OUTCOMES)

    def stop(self, cfg: OperationConfig) -> List[OperationResult]:
        return self._run("stop", lambda: self.controller.stop(cfg), _STOP_OUTCOMES)

    def status(self, snapshot: Optional[ConnectionSnapshot] = None) -> List[ServiceStatus]:
        """The service's status, or an UNKNOWN status carrying the error when the lookup fails."""
        name = self.get_name()
        try:
            return [self.controller.status(snapshot)]
        except (DevwardError, OSError) as e:
            log.error(f"Status {name} failed: {e}")
            return [ServiceStatus(service=name, status=ServiceState.UNKNOWN, error=str(e))]


class ServiceGroup:
    """
    A named, ordered collection of services and groups.

    Children are started in declared order and stopped in reverse. The group
    keeps no process state of its own.
    """

    def __init__(self, name: str, children: Sequence["ServiceOrGroup"]):
        self.name = name
        self.children = list(children)

    def get_name(self) -> str:
        return self.name

    def controllers(self) -> List[ServiceController]:
        """Every service in the group, depth-first in declared order, without repeats."""
        seen = set()
        result = []
        for child in self.children:
            for controller in child.controllers():
                if controller.get_name() not in seen:
                    seen.add(controller.get_name())
                    result.append(controller)
        return result

    def build(self, cfg: OperationConfig) -> List[OperationResult]:
        return [r for child in self.children for r in child.build(cfg)]

    def start(self, cfg: OperationConfig) -> List[OperationResult]:
        return [r for child in self.children for r in child.start(cfg)]

    def launch(self, cfg: OperationConfig) -> List[OperationResult]:
        return [r for child in self.children for r in child.launch(cfg)]

    def stop(self, cfg: OperationConfig) -> List[OperationResult]:
        return [r for child in reversed(self.children) for r in child.stop(cfg)]

    def status(self, snapshot: Optional[ConnectionSnapshot] = None) -> List[ServiceStatus]:
        snapshot = snapshot if snapshot is not None else ConnectionSnapshot()
        return [s for child in self.children for s in child.status(snapshot)]


ServiceOrGroup = Union[ServiceLeaf, ServiceGroup]


def run_for_targets(targets: Sequence[ServiceOrGroup],
                    operation: Callable[[ServiceOrGroup], list],
                    max_workers: int = 1) -> list:
    """
    Applies an operation to independent targets, concurrently when allowed.

    Results are flattened in the order the targets were requested, whatever
    order they complete in.

    :param targets: The requested services and groups.
    :param operation: Called once per target, e.g. `lambda t: t.start(cfg)`.
    :param max_workers: Upper bound on concurrently running targets.
    """
    if max_workers <= 1 or len(targets) <= 1:
        return [item for target in targets for item in operation(target)]
    with ThreadPoolExecutor(max_workers=min(max_workers, len(targets)), thread_name_prefix="devward-op") as pool:
        per_target = list(pool.map(operation, targets))
    return [item for items in per_target for item in items]
