"""
Entry point for the process that owns a launched service.

The runner is started detached, in its own session, by the service
controller. It runs the service's launch command as its child, writes every
output line to the service's JSON run log, forwards interrupt/terminate
signals to the child and exits with the child's exit code. Its process title
carries the service name, which is what identity validation looks for.

Usage: python -m devward.local.script_entry.runner <name> <log-file> <command>
"""
import sys
import shlex
import signal
import logging
import threading
import subprocess
from pathlib import Path
from typing import List, Optional

import setproctitle

from devward.log.handler import JsonLinesHandler, STDOUT, STDERR

EXIT_COMMAND_NOT_FOUND = 127

child: Optional[subprocess.Popen] = None
pending_signal: Optional[int] = None


def get_output_logger(name: str, log_path: Path) -> logging.Logger:
    """Returns the 'proc.<name>' logger, writing only to the run log."""
    proc_logger = logging.getLogger(f"proc.{name}")
    proc_logger.setLevel(logging.DEBUG)
    proc_logger.propagate = False
    proc_logger.handlers.clear()
    proc_logger.addHandler(JsonLinesHandler(log_path))
    return proc_logger


def close_output_logger(proc_logger: logging.Logger) -> None:
    for handler in list(proc_logger.handlers):
        proc_logger.removeHandler(handler)
        handler.close()


def _read_pipe(pipe, proc_logger: logging.Logger, stream: str) -> None:
    """Target function for reader threads. Logs each line of a child's pipe."""
    level = logging.INFO if stream == STDOUT else logging.ERROR
    try:
        for line_bytes in iter(pipe.readline, b""):
            line = line_bytes.decode("utf-8", errors="replace").rstrip("\r\n")
            proc_logger.log(level, line, extra={"stream": stream})
    finally:
        pipe.close()


def handle_shutdown_signal(signum, frame):
    """
    Forwards the received signal to the service process. A signal that
    arrives before the child exists is held and sent right after spawning.
    """
    global pending_signal
    if child is None:
        pending_signal = signum
    elif child.poll() is None:
        child.send_signal(signum)


def run(name: str, log_path: Path, command: str) -> int:
    """
    Runs the launch command and pipes its output into the run log.

    :return: The exit code of the command.
    """
    global child
    proc_logger = get_output_logger(name, log_path)
    try:
        args = shlex.split(command)
        if not args:
            raise ValueError("empty launch command")
        child = subprocess.Popen(args, stdin=subprocess.DEVNULL, stdout=subprocess.PIPE, stderr=subprocess.PIPE)
    except (OSError, ValueError) as e:
        proc_logger.error(f"Could not run '{command}': {e}", extra={"stream": STDERR})
        close_output_logger(proc_logger)
        return EXIT_COMMAND_NOT_FOUND

    if pending_signal is not None:
        child.send_signal(pending_signal)

    readers = [
        threading.Thread(target=_read_pipe, args=(child.stdout, proc_logger, STDOUT), daemon=True),
        threading.Thread(target=_read_pipe, args=(child.stderr, proc_logger, STDERR), daemon=True),
    ]
    for reader in readers:
        reader.start()

    returncode = child.wait()
    for reader in readers:
        reader.join(timeout=5)
    close_output_logger(proc_logger)
    return returncode


def main(argv: Optional[List[str]] = None) -> int:
    argv = sys.argv[1:] if argv is None else argv
    if len(argv) != 3:
        print(__doc__, file=sys.stderr)
        return 2
    name, log_path, command = argv
    setproctitle.setproctitle(f"devward-runner {name}")

    signal.signal(signal.SIGTERM, handle_shutdown_signal)
    signal.signal(signal.SIGINT, handle_shutdown_signal)
    return run(name, Path(log_path), command)


if __name__ == "__main__":
    sys.exit(main())
