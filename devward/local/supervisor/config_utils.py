import os
import shlex
import shutil
import logging
from pathlib import Path
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence

import yaml

from devward.local.config import effective_settings as config
from .definition import LaunchCheck, ServiceDefinition, ServiceWatch, Warmup
from .errors import ConfigurationError
from .group import ServiceGroup, ServiceLeaf, ServiceOrGroup
from .supervisor import ServiceController

log = logging.getLogger(__name__)


@dataclass
class ProjectConfig:
    """The services and groups defined by one config file, in declared order."""
    path: Optional[Path]
    services: Dict[str, ServiceDefinition] = field(default_factory=dict)
    groups: Dict[str, List[str]] = field(default_factory=dict)


#* --- Versioned Format Adapters ---
def _upgrade_v1_to_v2(raw: Dict[str, Any]) -> Dict[str, Any]:
    """Version 1 allowed `log_properties.started`; version 2 spells it `launch_checks.log_text`."""
    services = []
    for entry in raw.get("services") or []:
        entry = dict(entry) if isinstance(entry, dict) else entry
        if isinstance(entry, dict) and "log_properties" in entry:
            properties = entry.pop("log_properties") or {}
            checks = dict(entry.get("launch_checks") or {})
            checks["log_text"] = properties.get("started", "")
            entry["launch_checks"] = checks
        services.append(entry)
    upgraded = dict(raw)
    upgraded["services"] = services
    upgraded["version"] = 2
    return upgraded


CONFIG_UPGRADES: Dict[int, Callable[[Dict[str, Any]], Dict[str, Any]]] = {
    1: _upgrade_v1_to_v2,
}


def upgrade_config(raw: Dict[str, Any]) -> Dict[str, Any]:
    """
    Brings a raw config mapping up to the current format version.
    Files without a `version` key are treated as version 1.

    :raises ConfigurationError: For unknown or unsupported versions.
    """
    version = raw.get("version", 1)
    if not isinstance(version, int) or isinstance(version, bool) or version < 1:
        raise ConfigurationError(f"invalid config version: {version!r}")
    if version > config.CURRENT_CONFIG_VERSION:
        raise ConfigurationError(
            f"config version {version} is newer than supported version {config.CURRENT_CONFIG_VERSION}")
    while version < config.CURRENT_CONFIG_VERSION:
        raw = CONFIG_UPGRADES[version](raw)
        version = raw["version"]
    return raw


#* --- Field Parsing ---
def _parse_env(value: Any, where: str) -> Dict[str, str]:
    """Accepts a list of KEY=VALUE strings or a mapping."""
    if value is None:
        return {}
    if isinstance(value, dict):
        return {str(k): str(v) for k, v in value.items()}
    if isinstance(value, list):
        env = {}
        for item in value:
            key, sep, val = str(item).partition("=")
            if not sep or not key:
                raise ConfigurationError(f"{where}: invalid env entry '{item}', expected KEY=VALUE")
            env[key] = val
        return env
    raise ConfigurationError(f"{where}: env must be a list or a mapping")


def _parse_ports(value: Any, where: str) -> tuple:
    if value is None:
        return ()
    if not isinstance(value, list):
        value = [value]
    ports = []
    for port in value:
        try:
            port_num = int(port)
        except (TypeError, ValueError):
            raise ConfigurationError(f"{where}: invalid port '{port}'")
        if not 0 < port_num < 65536:
            raise ConfigurationError(f"{where}: port {port_num} out of range")
        if port_num not in ports:
            ports.append(port_num)
    return tuple(ports)


def _as_path_list(value: Any, base_dir: Path) -> tuple:
    if value is None:
        return ()
    if isinstance(value, str):
        value = [value]
    return tuple((base_dir / str(p)).resolve() for p in value)


def _parse_watch(value: Any, base_dir: Path, where: str) -> Optional[ServiceWatch]:
    """A watch is either a single path or an {include, exclude} mapping."""
    if value is None or value == "":
        return None
    if isinstance(value, str):
        return ServiceWatch(include=_as_path_list(value, base_dir))
    if isinstance(value, dict):
        watch = ServiceWatch(
            include=_as_path_list(value.get("include"), base_dir),
            exclude=_as_path_list(value.get("exclude"), base_dir),
        )
        return watch if watch.include else None
    raise ConfigurationError(f"{where}: watch must be a path or a mapping")


def parse_service(entry: Dict[str, Any], base_dir: Path, global_env: Dict[str, str]) -> ServiceDefinition:
    """
    Builds a ServiceDefinition from one `services` entry of an upgraded config.

    :param entry: The raw mapping.
    :param base_dir: Directory of the config file; relative paths resolve against it.
    :param global_env: Environment applied to every service, overridden by the service's own.
    """
    if not isinstance(entry, dict):
        raise ConfigurationError(f"service entries must be mappings, got {entry!r}")
    name = entry.get("name")
    if not name or not isinstance(name, str):
        raise ConfigurationError(f"service is missing a name: {entry!r}")
    if os.sep in name or "/" in name or name in (".", ".."):
        raise ConfigurationError(f"service name '{name}' cannot contain path separators")
    if "log_properties" in entry:
        raise ConfigurationError(f"{name}: 'log_properties' is not supported in this config version, use 'launch_checks'")

    commands = entry.get("commands") or {}
    if not isinstance(commands, dict):
        raise ConfigurationError(f"{name}: commands must be a mapping")

    launch_check = None
    checks = entry.get("launch_checks")
    if checks:
        if not isinstance(checks, dict):
            raise ConfigurationError(f"{name}: launch_checks must be a mapping")
        ports = _parse_ports(checks.get("ports"), name)
        try:
            launch_check = LaunchCheck(log_text=str(checks.get("log_text") or ""), ports=ports)
        except ConfigurationError as e:
            raise ConfigurationError(f"{name}: {e}") from e

    warmup = None
    warmup_entry = entry.get("warmup")
    if isinstance(warmup_entry, dict) and warmup_entry.get("url"):
        warmup = Warmup(url=str(warmup_entry["url"]))

    path = entry.get("path")
    env = dict(global_env)
    env.update(_parse_env(entry.get("env"), name))

    return ServiceDefinition(
        name=name,
        path=(base_dir / str(path)).resolve() if path else base_dir,
        platform=str(entry.get("platform") or ""),
        requires_sudo=bool(entry.get("requiresSudo", entry.get("requires_sudo", False))),
        build=str(commands.get("build") or ""),
        launch=str(commands.get("launch") or ""),
        stop=str(commands.get("stop") or ""),
        env=env,
        launch_check=launch_check,
        warmup=warmup,
        watch=_parse_watch(entry.get("watch"), base_dir, name),
    )


def _check_group_cycles(groups: Dict[str, List[str]]) -> None:
    visiting, done = set(), set()

    def visit(name: str, trail: List[str]) -> None:
        if name in done:
            return
        if name in visiting:
            raise ConfigurationError(f"group cycle: {' -> '.join(trail + [name])}")
        visiting.add(name)
        for child in groups[name]:
            if child in groups:
                visit(child, trail + [name])
        visiting.discard(name)
        done.add(name)

    for group_name in groups:
        visit(group_name, [])


def parse_config(raw: Any, path: Optional[Path] = None) -> ProjectConfig:
    """
    Validates and converts a raw config mapping.

    :param raw: The parsed YAML/JSON document.
    :param path: The file it came from; its directory anchors relative paths.
    :raises ConfigurationError: On any invalid or contradictory definition.
    """
    if raw is None:
        raw = {}
    if not isinstance(raw, dict):
        raise ConfigurationError("config file must contain a mapping at the top level")
    raw = upgrade_config(raw)
    base_dir = path.parent.resolve() if path else Path.cwd()
    global_env = _parse_env(raw.get("env"), "env")

    project = ProjectConfig(path=path)
    for entry in raw.get("services") or []:
        service = parse_service(entry, base_dir, global_env)
        if service.name in project.services:
            raise ConfigurationError(f"duplicate service name '{service.name}'")
        project.services[service.name] = service

    for entry in raw.get("groups") or []:
        if not isinstance(entry, dict) or not entry.get("name"):
            raise ConfigurationError(f"group is missing a name: {entry!r}")
        name = str(entry["name"])
        if name in project.services or name in project.groups:
            raise ConfigurationError(f"duplicate name '{name}'")
        children = entry.get("children") or []
        if not isinstance(children, list):
            raise ConfigurationError(f"group {name}: children must be a list")
        project.groups[name] = [str(child) for child in children]

    for name, children in project.groups.items():
        for child in children:
            if child not in project.services and child not in project.groups:
                raise ConfigurationError(f"group {name}: unknown child '{child}'")
    _check_group_cycles(project.groups)
    return project


#* --- Loading ---
def find_config_file(start: Optional[Path] = None) -> Optional[Path]:
    """Looks for a devward config file in `start` (default: cwd) and its parents."""
    if config.CONFIG_FILE_ENV:
        return Path(config.CONFIG_FILE_ENV)
    directory = (start or Path.cwd()).resolve()
    for candidate_dir in [directory, *directory.parents]:
        for file_name in config.CONFIG_FILE_NAMES:
            candidate = candidate_dir / file_name
            if candidate.is_file():
                return candidate
    return None


def load_config(path: Optional[Path] = None) -> ProjectConfig:
    """
    Loads the project config from an explicit path or by discovery.

    :raises ConfigurationError: If no file is found or it cannot be parsed.
    """
    path = Path(path) if path else find_config_file()
    if path is None:
        raise ConfigurationError(
            f"no config file found (looked for {', '.join(config.CONFIG_FILE_NAMES)} in this directory and its parents)")
    try:
        with path.open("r", encoding="utf-8") as f:
            raw = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        raise ConfigurationError(f"could not read config file '{path}': {e}") from e
    project = parse_config(raw, path)
    log.debug(f"Loaded {len(project.services)} services and {len(project.groups)} groups from '{path}'")
    return project


#* --- Targets ---
def build_targets(project: ProjectConfig) -> Dict[str, ServiceOrGroup]:
    """Creates one target per service and group, sharing controllers between groups."""
    targets: Dict[str, ServiceOrGroup] = {
        name: ServiceLeaf(ServiceController(service)) for name, service in project.services.items()
    }

    def resolve(name: str) -> ServiceOrGroup:
        if name not in targets:
            targets[name] = ServiceGroup(name, [resolve(child) for child in project.groups[name]])
        return targets[name]

    for group_name in project.groups:
        resolve(group_name)
    return targets


def select_targets(targets: Dict[str, ServiceOrGroup], names: Sequence[str],
                   project: ProjectConfig) -> List[ServiceOrGroup]:
    """
    Picks the requested targets by name; all services when none are named.

    :raises ConfigurationError: For unknown names.
    """
    if not names:
        return [targets[name] for name in project.services]
    unknown = [name for name in names if name not in targets]
    if unknown:
        raise ConfigurationError(f"unknown service or group: {', '.join(unknown)}")
    return [targets[name] for name in names]


def check_configuration(project: ProjectConfig) -> bool:
    """
    Validates that each service's working directory and launch executable exist.

    :return: True if every check passes, otherwise False.
    """
    log.info("Performing configuration and path validation...")
    all_ok = True
    for service in project.services.values():
        if not service.matches_platform():
            log.info(f"Config Check SKIPPED: {service.name} does not run on this platform")
            continue
        working_dir = service.get_working_dir()
        if not working_dir.is_dir():
            log.error(f"CONFIG CHECK FAILED: {service.name} working directory '{working_dir}' not found")
            all_ok = False
            continue
        if service.launch:
            try:
                executable = shlex.split(service.launch)[0]
            except (ValueError, IndexError):
                log.error(f"CONFIG CHECK FAILED: {service.name} launch command cannot be parsed")
                all_ok = False
                continue
            path_hint = service.env.get("PATH", os.environ.get("PATH"))
            found = shutil.which(executable, path=path_hint) or shutil.which(str(working_dir / executable))
            if not found:
                log.error(f"CONFIG CHECK FAILED: {service.name} launch executable '{executable}' not found")
                all_ok = False
                continue
        log.info(f"Config Check OK: {service.name}")
    return all_ok
