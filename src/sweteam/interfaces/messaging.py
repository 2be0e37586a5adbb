"""User-facing message formatting and parsing."""

from __future__ import annotations

import re
from typing import Iterable

from sweteam.protocol.models import WorkflowRun

_TASK_RE = re.compile(r"^(\S+)\s+(.+)", re.DOTALL)
_AFFIRMATIVE = {
    "y", "yes", "yeah", "yep", "yup", "ok", "okay", "sure", "proceed", "go",
    "lgtm", "approve", "approved", "confirm", "confirmed", "correct", "agreed", "done",
}
_AFFIRMATIVE_PHRASES = ("go ahead", "looks good", "sounds good", "ship it", "that's right", "do it")
_NEGATIONS = {"no", "not", "don't", "dont", "nope", "wait", "but"}

SATISFIED_PROMPT = "Are you satisfied with the requirement? (yes to proceed)"


def parse_task_command(text: str) -> tuple[str, str] | None:
    """Split ``"<repo> <task...>"`` into ``(repo, task)``."""
    match = _TASK_RE.match(text.strip())
    if not match:
        return None
    return match.group(1), match.group(2).strip()


def is_affirmative(text: str) -> bool:
    """True when a reply confirms the requirement as stated."""
    normalized = re.sub(r"[^\w\s']", " ", text.lower()).strip()
    if not normalized:
        return False
    words = normalized.split()
    if any(w in _NEGATIONS for w in words):
        return False
    if words[0] in _AFFIRMATIVE:
        return True
    return any(phrase in normalized for phrase in _AFFIRMATIVE_PHRASES)


def format_task_received(repo: str, task: str) -> str:
    return f"[{repo}] Task Received\nTask: {task}"


def format_planning(repo: str) -> str:
    return f"[{repo}] Planning..."


def format_clarifying(repo: str) -> str:
    return f"[{repo}] Analyzing your requirement..."


def format_plan_created(repo: str, tasks: list[str], workers: int) -> str:
    listing = "\n".join(f"{i}. {t}" for i, t in enumerate(tasks, start=1))
    return f"[{repo}] Plan: {len(tasks)} tasks, {workers} agents\n{listing}"


def format_progress_bar(done: int, total: int, width: int = 10) -> str:
    pct = 0 if total == 0 else round(done / total * 100)
    filled = 0 if total == 0 else round(done / total * width)
    return f"[{'█' * filled}{' ' * (width - filled)}] {pct}%"


def format_progress(repo: str, current: int, total: int, task: str) -> str:
    return f"[{repo}] {format_progress_bar(current, total)} Task {current}/{total}: {task}"


def format_review(repo: str, task: str, iteration: int) -> str:
    return f"[{repo}] Review iteration {iteration}: {task}"


def format_unapproved(repo: str, task: str, iterations: int) -> str:
    return f"[{repo}] Not approved after {iterations} review iteration(s), keeping as is: {task}"


def format_error(repo: str, task: str, error: str) -> str:
    return f'[{repo}] Error in "{task}": {error}'


def format_completed(repo: str, pr_url: str) -> str:
    return f"[{repo}] Done! PR: {pr_url or '(not created)'}"


def format_cancelled(repo: str, run_id: int) -> str:
    return f"[{repo}] Run #{run_id} cancelled."


def format_status(runs: Iterable[WorkflowRun]) -> str:
    lines = [
        f"{i}. #{r.id} {r.user_request or 'unknown'} - {r.workflow_step or 'unknown'} ({r.status or 'unknown'})"
        for i, r in enumerate(runs, start=1)
    ]
    return "\n".join(lines) if lines else "No active runs."


def format_list(runs: Iterable[WorkflowRun]) -> str:
    lines = [f"#{r.id} {r.user_request or 'unknown'} [{r.status or 'unknown'}]" for r in runs]
    if not lines:
        return "No runs found."
    lines.append("Use /stop <id> to cancel a run.")
    return "\n".join(lines)


def format_run_detail(run: WorkflowRun) -> str:
    lines = [
        f"Run #{run.id} ({run.external_id})",
        f"Request: {run.user_request}",
        f"Status: {run.status}",
        f"Step: {run.workflow_step}",
    ]
    if run.working_branch:
        lines.append(f"Branch: {run.working_branch}")
    if run.pr_url:
        lines.append(f"PR: {run.pr_url}")
    if run.error_message:
        lines.append(f"Error: {run.error_message}")
    return "\n".join(lines)
