"""
Logging handlers for devward.
Service output captured by the runner is persisted through these handlers.
"""

from .jsonl import JsonLinesHandler, STDOUT, STDERR

__all__ = ["JsonLinesHandler", "STDOUT", "STDERR"]
