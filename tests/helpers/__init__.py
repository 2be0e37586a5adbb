"""Shared test helpers for the sweteam test suite."""

from __future__ import annotations

from tests.helpers.fakes import (
    AgentScript,
    FakeArchitect,
    FakeGit,
    FakeWorker,
    RecordingInterface,
    make_repo_sync,
    make_workspace_factory,
)

__all__ = [
    "AgentScript",
    "FakeArchitect",
    "FakeGit",
    "FakeWorker",
    "RecordingInterface",
    "make_repo_sync",
    "make_workspace_factory",
]
