"""End-to-end runs against real git repositories (no network, no agent CLIs)."""

from __future__ import annotations

import shutil
import subprocess
from pathlib import Path

import pytest

from sweteam.config.schema import SWETeamConfig
from sweteam.coordinator.event_bus import EventBus
from sweteam.coordinator.workflow import WorkflowEngine
from sweteam.errors import GitError
from sweteam.protocol.models import PlanTask, RunStatus, TestResult
from sweteam.state.store import StateStore
from sweteam.workspace.git_ops import GitOps, RepoSyncResult
from sweteam.workspace.worktree import HARVEST_COMMIT_MESSAGE, Workspace
from tests.helpers import FakeArchitect, RecordingInterface

pytestmark = pytest.mark.skipif(shutil.which("git") is None, reason="git not installed")


def git(cwd: Path, *args: str) -> str:
    return subprocess.run(
        ["git", *args], cwd=cwd, check=True, capture_output=True, text=True,
    ).stdout.strip()


@pytest.fixture(autouse=True)
def git_identity(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    gitconfig = tmp_path / "gitconfig"
    gitconfig.write_text("", encoding="utf-8")
    monkeypatch.setenv("GIT_CONFIG_GLOBAL", str(gitconfig))
    monkeypatch.setenv("GIT_CONFIG_NOSYSTEM", "1")
    for role in ("AUTHOR", "COMMITTER"):
        monkeypatch.setenv(f"GIT_{role}_NAME", "Test Bot")
        monkeypatch.setenv(f"GIT_{role}_EMAIL", "bot@example.com")


@pytest.fixture
def origin(tmp_path: Path) -> Path:
    path = tmp_path / "origin"
    path.mkdir()
    git(path, "init", "-q")
    git(path, "symbolic-ref", "HEAD", "refs/heads/main")
    (path / "README.md").write_text("# widgets\n", encoding="utf-8")
    git(path, "add", "-A")
    git(path, "commit", "-q", "-m", "initial")
    return path


class OfflineGitOps(GitOps):
    async def run_gh(self, *args: str) -> str:
        raise GitError("gh disabled in tests", command=["gh", *args])


class FileWorker:
    """Writes the task description into the task's first file and leaves it uncommitted."""

    def __init__(self, worker_id: str) -> None:
        self.worker_id = worker_id
        self.last_error = ""

    async def implement_task(self, path, description, *, files=None, overall_goal=""):  # noqa: ANN001, ANN201
        target = Path(path) / (files or ["out.txt"])[0]
        target.write_text(description + "\n", encoding="utf-8")
        return True

    async def apply_feedback(self, path, description, feedback, diff=None):  # noqa: ANN001, ANN201
        return True

    async def run_tests(self, path):  # noqa: ANN001, ANN201
        return TestResult(passed=True, summary="ok")


def _engine(store: StateStore, config: SWETeamConfig, origin: Path, tasks: list[PlanTask]) -> WorkflowEngine:
    async def repo_sync(repo_name: str, cfg: SWETeamConfig) -> RepoSyncResult:
        return RepoSyncResult(
            git=GitOps(origin),
            repo_path=str(origin),
            repo_url="",
            repo_spec=repo_name,
            base_branch="main",
            cloned=False,
        )

    return WorkflowEngine(
        store=store,
        interface=RecordingInterface(),
        architect=FakeArchitect(tasks),
        config=config,
        agent_factory=FileWorker,
        event_bus=EventBus(),
        repo_sync=repo_sync,
        git_factory=OfflineGitOps,
    )


async def _start(store: StateStore, request: str) -> int:
    repo = await store.get_or_create_repo("acme/widgets")
    return (await store.create_run(repo.id, request, "chat-1")).id


# ---------------------------------------------------------------------------
# Workspace
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_workspace_lifecycle(origin: Path, tmp_path: Path) -> None:
    ws = await Workspace.create(origin, tmp_path / "ws", "1", "swe-team/feature", "main")
    await ws.verify_branch()

    (ws.path / "app.py").write_text("print('hi')\n", encoding="utf-8")
    assert await ws.harvest_uncommitted()
    assert not await ws.harvest_uncommitted()
    assert git(origin, "log", "-1", "--format=%s", "swe-team/feature") == HARVEST_COMMIT_MESSAGE

    reused = await Workspace.open_or_create(origin, tmp_path / "ws", "1", "swe-team/feature", "main")
    assert reused.path == ws.path

    await ws.cleanup()
    assert not ws.path.exists()
    assert "swe-team/feature" in git(origin, "branch", "--list", "swe-team/feature")


@pytest.mark.asyncio
async def test_recreate_after_directory_loss_attaches_branch(origin: Path, tmp_path: Path) -> None:
    ws = await Workspace.create(origin, tmp_path / "ws", "1", "swe-team/feature", "main")
    (ws.path / "app.py").write_text("x = 1\n", encoding="utf-8")
    await ws.harvest_uncommitted()
    shutil.rmtree(ws.path)

    again = await Workspace.create(origin, tmp_path / "ws", "1", "swe-team/feature", "main")

    assert (again.path / "app.py").read_text(encoding="utf-8") == "x = 1\n"


# ---------------------------------------------------------------------------
# Full runs
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_parallel_workers_are_merged_into_the_working_branch(
    store: StateStore, config: SWETeamConfig, origin: Path,
) -> None:
    tasks = [
        PlanTask(id="model", description="model code", files=["model.txt"]),
        PlanTask(id="view", description="view code", files=["view.txt"]),
    ]
    engine = _engine(store, config, origin, tasks)
    run_id = await _start(store, "add model and view")

    run = await engine.run(run_id, "acme/widgets")

    assert run is not None
    assert run.status == RunStatus.COMPLETED
    assert run.pr_url == ""
    branch = run.working_branch
    assert git(origin, "show", f"{branch}:model.txt") == "model code"
    assert git(origin, "show", f"{branch}:view.txt") == "view code"
    assert git(Path(run.workspace_path), "status", "--porcelain") == ""

    workspaces = Path(config.repos.workspaces_path)
    assert [p.name for p in workspaces.iterdir()] == [Path(run.workspace_path).name]

    warnings = [e.message for e in engine.event_bus.history if e.event_type == "warning"]
    assert len(warnings) == 2
    assert warnings[0].startswith("push failed")


@pytest.mark.asyncio
async def test_conflicting_worker_is_rolled_back(store: StateStore, config: SWETeamConfig, origin: Path) -> None:
    tasks = [
        PlanTask(id="a", description="from a", files=["shared.txt"]),
        PlanTask(id="b", description="from b", files=["shared.txt"]),
    ]
    engine = _engine(store, config, origin, tasks)
    run_id = await _start(store, "two edits to one file")

    run = await engine.run(run_id, "acme/widgets")

    assert run is not None
    assert run.status == RunStatus.COMPLETED
    integration = Path(run.workspace_path)
    assert git(integration, "status", "--porcelain") == ""
    assert (integration / "shared.txt").read_text(encoding="utf-8").strip() in {"from a", "from b"}
    merges = [e.message for e in engine.event_bus.history if e.event_type == "merge"]
    assert merges[0] == "merged"
    assert merges[1].startswith("conflict")
