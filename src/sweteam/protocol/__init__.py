"""Workflow data model shared by the store, engine and transports."""

from sweteam.protocol.models import (
    ClarificationResult,
    PlanResult,
    PlanTask,
    Repo,
    ReviewResult,
    RunStatus,
    Subtask,
    SubtaskOutcome,
    SubtaskStatus,
    TestResult,
    WorkflowRun,
    WorkflowStep,
    step_ordinal,
)

__all__ = [
    "ClarificationResult",
    "PlanResult",
    "PlanTask",
    "Repo",
    "ReviewResult",
    "RunStatus",
    "Subtask",
    "SubtaskOutcome",
    "SubtaskStatus",
    "TestResult",
    "WorkflowRun",
    "WorkflowStep",
    "step_ordinal",
]
