"""
This module initializes the console package, exposing key functionalities for command execution,
toggling verbose logging, and printing help information.
"""

from .process import dispatch, execute_command, stop_watchers
from .handler import toggle_verbose_logging, print_help

__all__ = ["dispatch", "execute_command", "stop_watchers", "toggle_verbose_logging", "print_help"]
