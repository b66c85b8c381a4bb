"""
Immutable descriptions of services, as produced by the configuration loader.
"""
import platform
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, FrozenSet, Optional, Tuple

from devward.local.config import effective_settings as config
from .errors import ConfigurationError


def current_platform() -> str:
    """OS identifier matching `platform.system().lower()`, e.g. 'linux' or 'darwin'."""
    return platform.system().lower()


@dataclass(frozen=True)
class LaunchCheck:
    """
    How to tell a launched service has finished starting up.
    Exactly one of `log_text` or `ports` may be set.
    """
    log_text: str = ""
    ports: Tuple[int, ...] = ()

    def __post_init__(self):
        if self.log_text and self.ports:
            raise ConfigurationError("cannot specify both a log and port launch check")

    @property
    def port_strings(self) -> Tuple[str, ...]:
        return tuple(str(port) for port in self.ports)


@dataclass(frozen=True)
class ServiceWatch:
    """Paths to watch for source changes, relative to the config file."""
    include: Tuple[Path, ...] = ()
    exclude: Tuple[Path, ...] = ()


@dataclass(frozen=True)
class Warmup:
    """A URL requested once the service is confirmed running."""
    url: str


@dataclass(frozen=True)
class ServiceDefinition:
    """
    A single service managed by devward.

    The name is the unique key: it names the pid record and the run log, and it
    is the identity token expected in the running process's command line.
    """
    name: str
    path: Optional[Path] = None
    platform: str = ""
    requires_sudo: bool = False
    build: str = ""
    launch: str = ""
    stop: str = ""
    env: Dict[str, str] = field(default_factory=dict)
    launch_check: Optional[LaunchCheck] = None
    warmup: Optional[Warmup] = None
    watch: Optional[ServiceWatch] = None

    def get_name(self) -> str:
        return self.name

    def matches_platform(self) -> bool:
        """Whether this service can run on the current OS."""
        return not self.platform or self.platform.lower() == current_platform()

    def declared_ports(self) -> Tuple[str, ...]:
        return self.launch_check.port_strings if self.launch_check else ()

    def get_run_log(self) -> Path:
        """Returns the path to the JSON-lines run log for this service."""
        return Path(config.LOG_DIR) / f"{self.name}.log"

    def get_working_dir(self) -> Path:
        return Path(self.path) if self.path else Path.cwd()

    def is_sudo(self, cfg: "OperationConfig") -> bool:
        """True if this service requires sudo. Always False when excluded by cfg."""
        if cfg.is_excluded(self):
            return False
        return self.requires_sudo


@dataclass(frozen=True)
class OperationConfig:
    """Options for a single start/stop/build request."""
    exclusions: FrozenSet[str] = frozenset()
    skip_build: bool = False
    launch_timeout: Optional[float] = None
    no_watch: bool = False

    def is_excluded(self, service: ServiceDefinition) -> bool:
        """A service is excluded when named explicitly or when its platform doesn't match."""
        return service.name in self.exclusions or not service.matches_platform()
