import sys
import logging
import threading
from typing import List, Optional

import devward.local.console as console
from devward.local.config import effective_settings as config
from devward.log.setup import setup_logging

log = logging.getLogger("console")

# --- Global State ---
CONSOLE_LOCK = threading.Lock()


def extract_global_flags(args: List[str]) -> List[str]:
    """
    Applies `--verbose` and `--config=PATH` for the whole session and returns
    the remaining arguments.
    """
    remaining = []
    for arg in args:
        if arg == "--verbose":
            if not config.VERBOSE_LOGGING:
                console.toggle_verbose_logging()
        elif arg.startswith("--config="):
            config.CONFIG_FILE_ENV = arg.split("=", 1)[1]
        else:
            remaining.append(arg)
    return remaining


def run_interactive() -> None:
    """Runs the interactive prompt until 'exit' or Ctrl-C."""
    print("--- devward Service Console ---")
    print("Type 'help' for a list of commands.")

    while True:
        try:
            # The input prompt must be outside the lock to not block background threads
            command_line_str = input("> ")
            with CONSOLE_LOCK:
                command_line = command_line_str.strip().split()
                if not command_line:
                    continue

                command, args = command_line[0].lower(), command_line[1:]
                log.debug(f"Received command: {command}, args: {args}")

                if console.execute_command(command, args):
                    break

        except (KeyboardInterrupt, EOFError):
            with CONSOLE_LOCK:
                log.warning("\nExiting console.")
                break
        except Exception as e:
            with CONSOLE_LOCK:
                log.error(f"An unexpected error occurred in the console: {e}", exc_info=True)
    console.stop_watchers()


def main(argv: Optional[List[str]] = None) -> int:
    """The main entry point for the devward command."""
    argv = sys.argv[1:] if argv is None else argv
    setup_logging(logging.INFO)
    args = extract_global_flags(argv)

    # Non-interactive mode for one-off commands
    if args:
        command, command_args = args[0].lower(), args[1:]
        _, ok = console.dispatch(command, command_args, interactive=False)
        return 0 if ok else 1

    run_interactive()
    print("Exiting devward. See you next time!")
    return 0


if __name__ == "__main__":
    sys.exit(main())
