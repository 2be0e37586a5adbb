"""Coding-agent CLI backends."""

from sweteam.adapters.base import CLIBackend
from sweteam.adapters.registry import BACKENDS, backend_for, get_backend

__all__ = ["BACKENDS", "CLIBackend", "backend_for", "get_backend"]
