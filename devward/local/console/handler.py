import sys
import time
import logging
from collections import deque
from typing import List, Sequence

from devward.local.config import effective_settings as config
from devward.log.handler import STDERR
from devward.local.supervisor.config_utils import ProjectConfig, check_configuration
from devward.local.supervisor.group import Outcome, OperationResult
from devward.local.supervisor.startup import RunLogReader
from devward.local.supervisor.supervisor import ServiceStatus

# --- Platform-specific non-blocking keypress detection ---
try:
    import msvcrt
    def is_keypress_waiting() -> bool:
        return msvcrt.kbhit()
    def clear_keypress_buffer() -> None:
        # Read all waiting characters to clear the buffer
        while msvcrt.kbhit():
            msvcrt.getch()
except ImportError:
    import select
    import termios
    import tty
    def is_keypress_waiting() -> bool:
        if not sys.stdin.isatty():
            return False
        return select.select([sys.stdin], [], [], 0) == ([sys.stdin], [], [])
    def clear_keypress_buffer() -> None:
        if not sys.stdin.isatty():
            return
        # Raw mode lets us read the pending characters without waiting for Enter
        old_settings = termios.tcgetattr(sys.stdin)
        try:
            tty.setcbreak(sys.stdin.fileno())
            while is_keypress_waiting():
                sys.stdin.read(1)
        finally:
            termios.tcsetattr(sys.stdin, termios.TCSADRAIN, old_settings)

log = logging.getLogger(__name__)

_OUTCOME_LABELS = {
    Outcome.SUCCESS: "OK",
    Outcome.SOFT_FAIL: "WARN",
    Outcome.FAILED: "FAILED",
    Outcome.SKIPPED: "SKIPPED",
}


#* --- Results & Status ---
def print_results(results: Sequence[OperationResult]) -> None:
    """Prints one line per service outcome, in the order they were requested."""
    for result in results:
        label = _OUTCOME_LABELS[result.outcome]
        print(f"  {result.operation.capitalize():<7} {result.service:<25} [{label}] {result.message}")


def display_status(statuses: Sequence[ServiceStatus]) -> None:
    """Displays the status table for a status sweep."""
    if not statuses:
        print("\nNo services defined.\n")
        return

    print("\n--- Service Status ---")
    print(f"  {'NAME':<25} {'STATUS':<8} {'PID':<8} {'LAUNCHED':<20} {'PORTS':<20} {'STDOUT':>7} {'STDERR':>7}")
    for status in statuses:
        if status.error:
            print(f"  {status.service:<25} {status.status.value:<8} {status.error}")
            continue
        if not status.is_running:
            print(f"  {status.service:<25} {status.status.value:<8}")
            continue
        started = status.start_time.strftime("%Y-%m-%d %H:%M:%S") if status.start_time else "-"
        ports = ", ".join(status.ports) or "-"
        print(f"  {status.service:<25} {status.status.value:<8} {status.pid:<8} {started:<20} "
              f"{ports:<20} {status.stdout_count:>7} {status.stderr_count:>7}")
    print("-" * 22 + "\n")


def display_list(project: ProjectConfig) -> None:
    """Lists the services and groups defined in the loaded config file."""
    print(f"\n--- Services ({project.path}) ---")
    for service in project.services.values():
        notes = []
        if not service.matches_platform():
            notes.append(f"{service.platform} only")
        if service.requires_sudo:
            notes.append("sudo")
        suffix = f" ({', '.join(notes)})" if notes else ""
        print(f"  {service.name}{suffix}")
    if project.groups:
        print("\n--- Groups ---")
        for name, children in project.groups.items():
            print(f"  {name}: {', '.join(children)}")
    print()


#* --- Logs ---
def _format_record(record: dict) -> str:
    prefix = "!" if record.get("stream") == STDERR else " "
    return f"{prefix}[{record.get('name', '?')}] {record.get('message', '')}"


def read_last_records(reader: RunLogReader, count: int) -> List[dict]:
    """Reads the whole run log through `reader`, keeping the last `count` records."""
    return list(deque(reader.read_new(), maxlen=count))


def handle_logs_command(project: ProjectConfig, args: List[str]) -> bool:
    """
    Handles the 'logs' command: prints a service's recent run-log records and
    then follows new ones until a key is pressed.

    :param project: The loaded project config.
    :param args: The remaining arguments; the first is the service name.
    :return: False if the service is unknown or has no run log.
    """
    if not args:
        print("Usage: logs <service>")
        return False
    name = args[0]
    service = project.services.get(name)
    if service is None:
        print(f"Unknown service: '{name}'.")
        return False

    log_path = service.get_run_log()
    if not log_path.exists():
        print(f"No run log for {name} yet. Start it first.")
        return False

    reader = RunLogReader(log_path)
    print(f"\n--- Displaying last {config.LOG_HISTORY_COUNT} log entries for {name} ---")
    for record in read_last_records(reader, config.LOG_HISTORY_COUNT):
        print(_format_record(record))

    print("\n--- Now tailing new log entries (Press any key to stop) ---\n")
    try:
        while not is_keypress_waiting():
            for record in reader.read_new():
                print(_format_record(record))
            time.sleep(0.5)  # Poll interval
        clear_keypress_buffer()
        print("\n--- Log tailing stopped. Returning to console. ---")
    except KeyboardInterrupt:
        print("\n--- Log tailing interrupted. Returning to console. ---")
    return True


#* --- Settings ---
def _config_show() -> None:
    """Displays the current value of every modifiable setting."""
    print("\n--- Current devward Settings ---")
    print(f"(Overrides file: {config.OVERRIDES_JSON_PATH})")
    for key, value in config.get_modifiable().items():
        print(f"  {key} = {value}")
    print("---")
    print("Use 'config set <KEY> <VALUE>' to change a setting.")
    print("--------------------------------\n")


def _config_set(args: List[str]) -> bool:
    """Changes a modifiable setting and persists it to the overrides file."""
    if len(args) < 2:
        print("Usage: config set <SETTING_NAME> <VALUE>")
        return False

    key, value_str = args[0].upper(), " ".join(args[1:])
    success, message = config.update_setting(key, value_str)
    print(message)
    return success


def _config_help() -> None:
    """Displays help for the config command."""
    print("\nConfig Command Help:")
    print("  config show                - Display all modifiable settings.")
    print("  config set KEY VALUE       - Change a setting and save it as an override.")
    print("  config check               - Validate the service working directories and launch executables.")
    print("  config help                - Show this help message.")


def handle_config_command(args: List[str], project_loader) -> bool:
    """
    Handles all sub-commands for the 'config' command-line interface.

    :param args: A list of string arguments following the 'config' command.
    :param project_loader: Called to load the project config for 'config check'.
    """
    sub_command = args[0].lower() if args else "show"

    if sub_command == "show":
        _config_show()
    elif sub_command == "set":
        return _config_set(args[1:])
    elif sub_command == "check":
        return check_configuration(project_loader())
    elif sub_command == "help":
        _config_help()
    else:
        print(f"Unknown config sub-command: '{sub_command}'. Type 'config help' for available commands.")
        return False
    return True


#* --- Console ---
def toggle_verbose_logging() -> None:
    """Toggles verbose (DEBUG level) logging for the console handler."""
    config.VERBOSE_LOGGING = not config.VERBOSE_LOGGING
    new_level = logging.DEBUG if config.VERBOSE_LOGGING else logging.INFO

    # Reconfigure the console handler's level directly
    root_logger = logging.getLogger()
    found_handler = False
    for handler in root_logger.handlers:
        if type(handler) is logging.StreamHandler:
            handler.setLevel(new_level)
            found_handler = True
            break

    status = "ON" if config.VERBOSE_LOGGING else "OFF"
    if found_handler:
        print(f"Verbose console logging is now {status}.")
        log.debug("Debug logging test: This message should only appear when verbose is ON.")
    else:
        print("Could not find console handler to modify level.")


def print_help() -> None:
    """Prints the main help text for the console."""
    print("\nAvailable commands:")
    print("  start [targets]        - Build and launch services or groups (all services by default).")
    print("  stop [targets]         - Stop services, groups in reverse order.")
    print("  restart [targets]      - Stop and then start services.")
    print("  build [targets]        - Run the build command of services.")
    print("  status [targets]       - Show pid, start time, ports and log counts.")
    print("  list                   - List the services and groups in the config file.")
    print("  logs <service>         - View recent run-log entries and tail new ones.")
    print("  watch [targets]        - Rebuild and restart services when their sources change.")
    print("  config <cmd>           - Manage devward settings. Use 'config help' for more details.")
    print("  verbose                - Toggle detailed DEBUG log output in the console.")
    print("  exit                   - Exit the management console.")
    print("\nOptions:")
    print("  --exclude=NAME         - Skip a service (repeatable, or comma-separated).")
    print("  --skip-build           - Launch without running build commands.")
    print("  --timeout=SECONDS      - Override the launch check timeout.")
    print("  --no-watch             - Don't watch sources after 'start' in the interactive console.")
    print("  --config=PATH          - Use this config file instead of searching for one.")
    print("  --verbose              - Show DEBUG output.")
    print()
