"""Persistent workflow state."""

from sweteam.state.store import StateStore

__all__ = ["StateStore"]
