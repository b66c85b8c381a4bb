"""
Logging module for devward.
This module sets up the tool's own logging; service run logs are written by
the handlers in `devward.log.handler`.
"""

from .setup import setup_logging

__all__ = ["setup_logging"]
