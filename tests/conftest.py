"""Global test fixtures for sweteam."""

from __future__ import annotations

from collections.abc import AsyncGenerator
from pathlib import Path

import pytest

from sweteam.config.schema import SWETeamConfig
from sweteam.state.store import StateStore


@pytest.fixture
def config(tmp_path: Path) -> SWETeamConfig:
    """Defaults pointed at a temporary directory, clarification off."""
    cfg = SWETeamConfig()
    cfg.repos.base_path = str(tmp_path / "repos")
    cfg.repos.workspaces_path = str(tmp_path / "workspaces")
    cfg.database.path = str(tmp_path / "state" / "test.db")
    cfg.logging.file = ""
    cfg.workflow.skip_clarification = True
    cfg.workflow.analyze_codebase = False
    cfg.processing.response_timeout = 1
    return cfg


@pytest.fixture
async def store() -> AsyncGenerator[StateStore, None]:
    s = StateStore(":memory:")
    await s.initialize()
    yield s
    await s.close()
