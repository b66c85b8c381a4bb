import os
import logging
from pathlib import Path
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from devward.local.config import effective_settings as config
from devward.local.supervisor import background_tasks
from devward.local.supervisor.config_utils import ProjectConfig, build_targets, load_config, select_targets
from devward.local.supervisor.definition import OperationConfig
from devward.local.supervisor.errors import ConfigurationError
from devward.local.supervisor.group import OperationResult, ServiceOrGroup, run_for_targets
from devward.local.supervisor.process_utils import ConnectionSnapshot
from devward.local.console.handler import (
    display_list, display_status, handle_config_command, handle_logs_command,
    print_help, print_results, toggle_verbose_logging,
)

log = logging.getLogger(__name__)

TARGET_COMMANDS = ("start", "stop", "restart", "build", "status", "watch")

# Observers started by 'start' in the interactive console, stopped on exit.
_observers = []


@dataclass
class ParsedArgs:
    """Target names and per-operation options parsed from one command line."""
    names: List[str] = field(default_factory=list)
    cfg: OperationConfig = field(default_factory=OperationConfig)
    verbose: bool = False
    config_path: Optional[Path] = None


def parse_args(args: Sequence[str]) -> ParsedArgs:
    """
    Splits a command's arguments into target names and `--flag` options.

    :raises ConfigurationError: For unknown flags or malformed values.
    """
    names: List[str] = []
    exclusions = set()
    skip_build = no_watch = verbose = False
    launch_timeout = None
    config_path = None

    for arg in args:
        if not arg.startswith("--"):
            names.append(arg)
            continue
        flag, _, value = arg[2:].partition("=")
        if flag == "exclude" and value:
            exclusions.update(name for name in value.split(",") if name)
        elif flag == "skip-build":
            skip_build = True
        elif flag == "no-watch":
            no_watch = True
        elif flag == "verbose":
            verbose = True
        elif flag == "timeout" and value:
            try:
                launch_timeout = float(value)
            except ValueError:
                raise ConfigurationError(f"invalid timeout '{value}'")
            if launch_timeout <= 0:
                raise ConfigurationError(f"timeout must be positive, got '{value}'")
        elif flag == "config" and value:
            config_path = Path(value).expanduser()
        else:
            raise ConfigurationError(f"unknown option '{arg}'")

    cfg = OperationConfig(
        exclusions=frozenset(exclusions),
        skip_build=skip_build,
        launch_timeout=launch_timeout,
        no_watch=no_watch,
    )
    return ParsedArgs(names=names, cfg=cfg, verbose=verbose, config_path=config_path)


def load_project() -> ProjectConfig:
    """Loads the config file named by --config, DEVWARD_CONFIG, or found by search."""
    return load_config(Path(config.CONFIG_FILE_ENV) if config.CONFIG_FILE_ENV else None)


#* --- Target Helpers ---
def _controllers_overlap(targets: Sequence[ServiceOrGroup]) -> bool:
    seen = set()
    for target in targets:
        names = {c.get_name() for c in target.controllers()}
        if seen & names:
            return True
        seen |= names
    return False


def get_max_workers(targets: Sequence[ServiceOrGroup]) -> int:
    """
    Targets sharing a service run one at a time, so no service sees two
    operations at once. Disjoint targets run in parallel.
    """
    if _controllers_overlap(targets):
        return 1
    return max(1, int(config.MAX_PARALLEL_OPERATIONS))


def check_sudo(targets: Sequence[ServiceOrGroup], cfg: OperationConfig) -> bool:
    """
    Refuses to act on services that need sudo unless devward runs as root.

    :return: True if the operation may proceed.
    """
    needs_sudo = [c.get_name() for t in targets for c in t.controllers() if c.service.is_sudo(cfg)]
    if needs_sudo and hasattr(os, "geteuid") and os.geteuid() != 0:
        print(f"ERROR: {', '.join(sorted(set(needs_sudo)))} require sudo. Re-run devward with sudo.")
        return False
    return True


def run_operation(targets: Sequence[ServiceOrGroup],
                  operation: Callable[[ServiceOrGroup], List[OperationResult]]) -> bool:
    """Runs an operation over the targets, prints the results and reports overall success."""
    results = run_for_targets(targets, operation, get_max_workers(targets))
    print_results(results)
    return all(result.ok for result in results)


#* --- Commands ---
def _start(targets: Sequence[ServiceOrGroup], cfg: OperationConfig, interactive: bool) -> bool:
    ok = run_operation(targets, lambda t: t.start(cfg))
    background_tasks.wait_for_warmups()
    if interactive and not cfg.no_watch and ok:
        controllers = [c for t in targets for c in t.controllers()]
        observer = background_tasks.start_watching(controllers, cfg)
        if observer is not None:
            _observers.append(observer)
    return ok


def _restart(targets: Sequence[ServiceOrGroup], cfg: OperationConfig) -> bool:
    log.info("Stopping services...")
    stopped = run_operation(targets, lambda t: t.stop(cfg))
    if not stopped:
        return False
    log.info("Starting services...")
    ok = run_operation(targets, lambda t: t.start(cfg))
    background_tasks.wait_for_warmups()
    return ok


def _status(targets: Sequence[ServiceOrGroup]) -> bool:
    snapshot = ConnectionSnapshot()
    statuses = [s for target in targets for s in target.status(snapshot)]
    display_status(statuses)
    return all(status.error is None for status in statuses)


def _watch(targets: Sequence[ServiceOrGroup], cfg: OperationConfig) -> bool:
    """Watches the targets' sources in the foreground until Ctrl-C."""
    controllers = [c for t in targets for c in t.controllers()]
    observer = background_tasks.start_watching(controllers, cfg)
    if observer is None:
        print("None of the selected services define a watch.")
        return False
    print("Watching for changes (Press Ctrl-C to stop)...")
    try:
        while observer.is_alive():
            observer.join(1)
    except KeyboardInterrupt:
        print("\n--- Watching stopped. ---")
    finally:
        observer.stop()
        observer.join()
    return True


def stop_watchers() -> None:
    """Stops the background observers started by 'start'."""
    while _observers:
        observer = _observers.pop()
        observer.stop()
        observer.join()


def _run_target_command(command: str, parsed: ParsedArgs, interactive: bool) -> bool:
    project = load_project()
    targets = select_targets(build_targets(project), parsed.names, project)
    cfg = parsed.cfg

    if command == "status":
        return _status(targets)
    if not check_sudo(targets, cfg):
        return False
    if command == "start":
        return _start(targets, cfg, interactive)
    if command == "stop":
        return run_operation(targets, lambda t: t.stop(cfg))
    if command == "restart":
        return _restart(targets, cfg)
    if command == "build":
        return run_operation(targets, lambda t: t.build(cfg))
    return _watch(targets, cfg)


def dispatch(command: str, args: List[str], interactive: bool = True) -> Tuple[bool, bool]:
    """
    Executes a single command and reports how it went.

    :param command: The main command string (e.g., 'start', 'config').
    :param args: A list of arguments for the command.
    :param interactive: Whether the command came from the interactive prompt.
    :return: A (should_exit, ok) tuple.
    """
    log.debug(f"Executing command: {command}, args: {args}")
    command_map: Dict[str, Callable[[], Optional[bool]]] = {
        "list": lambda: display_list(load_project()),
        "logs": lambda: handle_logs_command(load_project(), args),
        "config": lambda: handle_config_command(args, load_project),
        "verbose": toggle_verbose_logging,
        "help": print_help,
    }

    if command == "exit":
        return True, True
    try:
        if command in TARGET_COMMANDS:
            parsed = parse_args(args)
            if parsed.config_path is not None:
                config.CONFIG_FILE_ENV = str(parsed.config_path)
            return False, _run_target_command(command, parsed, interactive)
        if command in command_map:
            return False, command_map[command]() is not False
    except ConfigurationError as e:
        log.error(f"Configuration error: {e}")
        return False, False

    log.info(f"Unknown command: '{command}'. Type 'help' for a list of commands.")
    return False, False


def execute_command(command: str, args: List[str]) -> bool:
    """
    Executes a single command from the interactive console.

    :return bool: True if the console should exit, False otherwise.
    """
    should_exit, _ = dispatch(command, args, interactive=True)
    return should_exit
