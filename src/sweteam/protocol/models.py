"""Persistent record and plan types for sweteam."""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from enum import StrEnum
from typing import Any, Literal


class WorkflowStep(StrEnum):
    QUEUED = "queued"
    REPO_SYNC = "repo_sync"
    WORKSPACE_CREATED = "workspace_created"
    BRANCH_CREATED = "branch_created"
    CLARIFYING = "clarifying"
    CLARIFIED = "clarified"
    PLANNING = "planning"
    PLANNED = "planned"
    AGENTS_SPAWNED = "agents_spawned"
    SUBTASK_IMPLEMENTING = "subtask_implementing"
    SUBTASK_COMMITTING = "subtask_committing"
    SUBTASK_TESTING = "subtask_testing"
    SUBTASK_REVIEWING = "subtask_reviewing"
    SUBTASK_FEEDBACK = "subtask_feedback"
    SUBTASK_DONE = "subtask_done"
    MERGING_AGENTS = "merging_agents"
    CREATING_PR = "creating_pr"
    COMPLETED = "completed"
    FAILED = "failed"


# Declaration order is the ordinal order; FAILED is last.
STEP_ORDER: dict[WorkflowStep, int] = {step: i for i, step in enumerate(WorkflowStep)}


def step_ordinal(step: str | None) -> int:
    if not step:
        return 0
    try:
        return STEP_ORDER[WorkflowStep(step)]
    except ValueError:
        return 0


class RunStatus(StrEnum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset({RunStatus.COMPLETED, RunStatus.FAILED, RunStatus.CANCELLED})


def status_for_step(step: WorkflowStep) -> RunStatus:
    """Run status as a function of the workflow step (cancelled is never derived)."""
    if step == WorkflowStep.FAILED:
        return RunStatus.FAILED
    if step == WorkflowStep.COMPLETED:
        return RunStatus.COMPLETED
    if step == WorkflowStep.QUEUED:
        return RunStatus.PENDING
    return RunStatus.IN_PROGRESS


class SubtaskStatus(StrEnum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


class SubtaskOutcome(StrEnum):
    NONE = ""
    APPROVED = "approved"
    COMPLETED_UNAPPROVED = "completed_unapproved"
    FAILED = "failed"


@dataclass(slots=True)
class Repo:
    id: int
    name: str
    path: str = ""
    url: str = ""
    repo_spec: str = ""
    default_branch: str = "main"
    created_at: float = 0.0


@dataclass(slots=True)
class WorkflowRun:
    id: int
    external_id: str
    repo_id: int
    user_request: str = ""
    conversation_id: str = ""
    status: str = RunStatus.PENDING
    workflow_step: str = WorkflowStep.QUEUED
    working_branch: str = ""
    base_branch: str = "main"
    workspace_path: str = ""
    plan_json: str = ""
    current_parallel_group: int = 0
    worker_count: int = 0
    error_message: str = ""
    clarification_log: str = "[]"
    pr_url: str = ""
    created_at: float = 0.0
    updated_at: float = 0.0

    @property
    def step_ordinal(self) -> int:
        return step_ordinal(self.workflow_step)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def plan(self) -> PlanResult | None:
        if not self.plan_json:
            return None
        return PlanResult.from_json(self.plan_json)

    def transcript(self) -> list[dict[str, str]]:
        try:
            data = json.loads(self.clarification_log or "[]")
        except json.JSONDecodeError:
            return []
        return [m for m in data if isinstance(m, dict)] if isinstance(data, list) else []


@dataclass(slots=True)
class Subtask:
    id: int
    external_id: str
    run_id: int
    title: str = ""
    description: str = ""
    files: list[str] = field(default_factory=list)
    dependencies: list[str] = field(default_factory=list)
    order_index: int = 0
    status: str = SubtaskStatus.PENDING
    outcome: str = SubtaskOutcome.NONE
    step: str = ""
    assigned_worker: str = ""
    retry_count: int = 0
    error_message: str = ""
    created_at: float = 0.0


@dataclass(slots=True)
class PlanTask:
    id: str
    title: str = ""
    description: str = ""
    dependencies: list[str] = field(default_factory=list)
    files: list[str] = field(default_factory=list)

    @property
    def label(self) -> str:
        return self.description or self.title or self.id


@dataclass(slots=True)
class PlanResult:
    tasks: list[PlanTask] = field(default_factory=list)
    parallel_groups: list[list[str]] = field(default_factory=list)
    recommended_workers: int = 1

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    def to_json(self) -> str:
        return json.dumps(self.to_dict())

    @classmethod
    def from_json(cls, raw: str) -> PlanResult:
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            return cls()
        if not isinstance(data, dict):
            return cls()
        tasks = [
            PlanTask(
                id=str(t.get("id", "")),
                title=str(t.get("title", "")),
                description=str(t.get("description", "")),
                dependencies=[str(d) for d in t.get("dependencies", [])],
                files=[str(f) for f in t.get("files", [])],
            )
            for t in data.get("tasks", [])
            if isinstance(t, dict)
        ]
        groups = [
            [str(x) for x in g] for g in data.get("parallel_groups", []) if isinstance(g, list)
        ]
        return cls(
            tasks=tasks,
            parallel_groups=groups,
            recommended_workers=int(data.get("recommended_workers", 1) or 1),
        )


@dataclass(slots=True)
class ReviewResult:
    approved: bool
    quality: str = "poor"
    feedback: str = ""
    issues: list[str] = field(default_factory=list)


@dataclass(slots=True)
class TestResult:
    __test__ = False  # keep pytest from collecting this dataclass

    passed: bool
    summary: str = ""


@dataclass(slots=True)
class ClarificationResult:
    status: Literal["ready", "needs_input"]
    message: str = ""
