"""
Local package for devward.

Everything that acts on the developer's machine lives here: the service
supervisor, the runner entry point and the management console.
"""

from .config import effective_settings

__all__ = ["effective_settings"]
