"""Deterministic stand-ins for agents, git and transports."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from sweteam.config.schema import SWETeamConfig
from sweteam.coordinator.planner import build_plan
from sweteam.errors import GitError, ResponseTimeoutError
from sweteam.interfaces.base import InterfaceAdapter
from sweteam.protocol.models import (
    ClarificationResult,
    PlanResult,
    PlanTask,
    ReviewResult,
    TestResult,
)
from sweteam.workspace.git_ops import GitOps, RepoSyncResult


async def _ignore_task(repo: str, task: str, conversation_id: str) -> None:
    return None


# ---------------------------------------------------------------------------
# Transport
# ---------------------------------------------------------------------------


class RecordingInterface(InterfaceAdapter):
    """Records outbound messages; replies come from a scripted list."""

    name = "recording"

    def __init__(self, replies: list[str] | None = None, on_task: Any = None, on_command: Any = None) -> None:
        super().__init__(on_task or _ignore_task, on_command)
        self.sent: list[tuple[str, str]] = []
        self.replies = list(replies or [])
        self.questions: list[str] = []
        self.started = False

    async def start(self) -> None:
        self.started = True

    async def stop(self) -> None:
        self.started = False

    async def _deliver(self, conversation_id: str, text: str) -> None:
        self.sent.append((conversation_id, text))

    async def wait_for_response(self, conversation_id: str, timeout: float) -> str:
        self.questions.append(self.sent[-1][1] if self.sent else "")
        if not self.replies:
            raise ResponseTimeoutError(conversation_id, timeout)
        return self.replies.pop(0)

    @property
    def messages(self) -> list[str]:
        return [text for _conv, text in self.sent]


# ---------------------------------------------------------------------------
# Agents
# ---------------------------------------------------------------------------


class FakeArchitect:
    def __init__(
        self,
        tasks: list[PlanTask] | None = None,
        *,
        clarifications: list[ClarificationResult] | None = None,
        approve: bool = True,
    ) -> None:
        self.tasks = tasks if tasks is not None else [PlanTask(id="task-1", title="Do it", description="do it")]
        self.clarifications = list(clarifications or [])
        self.approve = approve
        self.clarify_calls: list[tuple[str, list[dict[str, str]]]] = []
        self.plan_requests: list[str] = []
        self.reviews: list[str] = []

    async def clarify_requirements(
        self, path: str | Path, request: str, transcript: list[dict[str, str]],
    ) -> ClarificationResult:
        self.clarify_calls.append((request, list(transcript)))
        if self.clarifications:
            return self.clarifications.pop(0)
        return ClarificationResult(status="ready")

    async def analyze_codebase(self, path: str | Path) -> str:
        return "python project"

    async def plan_and_queue_tasks(self, path: str | Path, request: str, analysis: str = "") -> PlanResult:
        self.plan_requests.append(request)
        return build_plan(self.tasks)

    async def review_code(
        self, path: str | Path, description: str, diff: str, prior_feedback: list[str] | None = None,
    ) -> ReviewResult:
        self.reviews.append(description)
        if self.approve:
            return ReviewResult(approved=True, quality="good", feedback="looks good")
        return ReviewResult(approved=False, quality="needs_work", feedback="add tests")

    def should_approve(self, review: ReviewResult) -> bool:
        return review.approved


@dataclass
class AgentScript:
    """Agent factory whose workers share one record of calls.

    ``failures`` maps a task description to how many implementation
    attempts fail before one succeeds (``-1`` for always).
    """

    failures: dict[str, int] = field(default_factory=dict)
    implemented: list[tuple[str, str]] = field(default_factory=list)
    feedback: list[tuple[str, str]] = field(default_factory=list)
    tests_pass: bool = True
    workers: dict[str, FakeWorker] = field(default_factory=dict)

    def __call__(self, worker_id: str) -> FakeWorker:
        worker = FakeWorker(worker_id, self)
        self.workers[worker_id] = worker
        return worker


class FakeWorker:
    def __init__(self, worker_id: str, script: AgentScript) -> None:
        self.worker_id = worker_id
        self.script = script
        self.last_error = ""

    async def implement_task(
        self,
        path: str | Path,
        description: str,
        *,
        files: list[str] | None = None,
        overall_goal: str = "",
    ) -> bool:
        self.script.implemented.append((self.worker_id, description))
        remaining = self.script.failures.get(description, 0)
        if remaining:
            if remaining > 0:
                self.script.failures[description] = remaining - 1
            self.last_error = f"could not implement {description}"
            return False
        self.last_error = ""
        return True

    async def apply_feedback(self, path: str | Path, description: str, feedback: str, diff: str | None = None) -> bool:
        self.script.feedback.append((description, feedback))
        return True

    async def run_tests(self, path: str | Path) -> TestResult:
        if self.script.tests_pass:
            return TestResult(passed=True, summary="all passed")
        return TestResult(passed=False, summary="1 failed")


# ---------------------------------------------------------------------------
# Git and workspaces
# ---------------------------------------------------------------------------


class FakeGit:
    def __init__(self, *, conflicts: set[str] | None = None, fail_pr: bool = False, fail_push: bool = False) -> None:
        self.conflicts = conflicts or set()
        self.fail_pr = fail_pr
        self.fail_push = fail_push
        self.merged: list[str] = []
        self.merge_attempts: list[str] = []
        self.resets: list[str] = []
        self.pushed: list[tuple[str, str]] = []
        self.prs: list[dict[str, str]] = []

    async def head(self) -> str:
        return f"sha-{len(self.merged)}"

    async def merge(self, branch: str) -> str:
        self.merge_attempts.append(branch)
        if branch in self.conflicts:
            raise GitError(f"git merge failed: CONFLICT in {branch}")
        self.merged.append(branch)
        return ""

    async def reset_hard(self, ref: str) -> str:
        self.resets.append(ref)
        return ""

    async def push(self, remote: str, branch: str) -> str:
        if self.fail_push:
            raise GitError("git push failed: permission denied")
        self.pushed.append((remote, branch))
        return ""

    async def create_pr(self, title: str, body: str, base: str, head: str, repo_spec: str = "") -> str:
        if self.fail_pr:
            raise GitError("gh pr create failed: no commits between branches")
        self.prs.append({"title": title, "base": base, "head": head, "repo": repo_spec})
        return f"https://github.com/{repo_spec or 'acme/widgets'}/pull/{len(self.prs)}"

    async def diff_against(self, base: str) -> str:
        return "diff --git a/x b/x\n+change"

    async def status(self) -> str:
        return ""


class FakeWorkspace:
    """Class-level records are per factory; see :func:`make_workspace_factory`."""

    created: list[FakeWorkspace] = []
    reused: list[FakeWorkspace] = []
    removed: list[str] = []
    failing_cleanup: set[str] = set()

    def __init__(self, origin_path: str | Path, path: str | Path, branch: str) -> None:
        self.origin_path = Path(origin_path)
        self.path = Path(path)
        self.branch = branch
        self.git = FakeGit()
        self.harvests = 0

    @classmethod
    async def create(cls, origin_path: Any, base_path: Any, run_key: str, branch: str, base_ref: str) -> FakeWorkspace:
        ws = cls(origin_path, Path(base_path) / f"{run_key}-{branch.replace('/', '-')}", branch)
        cls.created.append(ws)
        return ws

    @classmethod
    async def open_or_create(
        cls, origin_path: Any, base_path: Any, run_key: str, branch: str, base_ref: str,
    ) -> FakeWorkspace:
        ws = cls(origin_path, Path(base_path) / f"{run_key}-{branch.replace('/', '-')}", branch)
        cls.reused.append(ws)
        return ws

    @classmethod
    def from_existing(cls, origin_path: Any, path: Any, branch: str) -> FakeWorkspace:
        return cls(origin_path, path, branch)

    async def harvest_uncommitted(self) -> bool:
        self.harvests += 1
        return False

    async def verify_branch(self) -> None:
        return None

    async def cleanup(self) -> None:
        if self.branch in self.failing_cleanup:
            raise GitError(f"git worktree remove {self.path} failed")
        self.removed.append(self.branch)


def make_workspace_factory(failing_cleanup: set[str] | None = None) -> type[FakeWorkspace]:
    return type("FakeWorkspace", (FakeWorkspace,), {
        "created": [],
        "reused": [],
        "removed": [],
        "failing_cleanup": set(failing_cleanup or ()),
    })


def make_repo_sync(base: Path, *, base_branch: str = "main"):  # noqa: ANN201
    """A repo sync that pretends every repository is already cloned under *base*."""
    calls: list[str] = []

    async def _sync(repo_name: str, config: SWETeamConfig) -> RepoSyncResult:
        calls.append(repo_name)
        path = base / repo_name.replace("/", "-")
        return RepoSyncResult(
            git=GitOps(path),
            repo_path=str(path),
            repo_url=f"https://github.com/{repo_name}",
            repo_spec=repo_name,
            base_branch=base_branch,
            cloned=False,
        )

    _sync.calls = calls  # type: ignore[attr-defined]
    return _sync
