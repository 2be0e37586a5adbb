"""Plan validation and parallel-group layering.

Tasks form a dependency graph keyed by task id. ``validate_plan`` cleans
the edges and returns a topological order (Kahn's algorithm);
``compute_parallel_groups`` layers the validated tasks so that each
group only depends on strictly earlier groups::

    tasks = validate_plan(coerce_plan_tasks(raw))
    for group in compute_parallel_groups(tasks):
        await run_concurrently(group)

A cyclic plan is not an error: every edge is dropped and the tasks run in
their original order, all independent of each other.
"""

from __future__ import annotations

import logging
from collections import deque
from typing import Any, Iterable

from sweteam.protocol.models import PlanResult, PlanTask

logger = logging.getLogger(__name__)


def coerce_plan_tasks(raw: Any) -> list[PlanTask]:
    """Turn agent JSON output into ``PlanTask`` objects.

    Accepts a list of task dicts, ``{"tasks": [...]}`` or a single task
    dict. Ids may be missing; ``validate_plan`` assigns them.
    """
    if isinstance(raw, dict):
        items = raw.get("tasks", [raw]) if "tasks" in raw else [raw]
    elif isinstance(raw, list):
        items = raw
    else:
        return []

    tasks: list[PlanTask] = []
    for item in items:
        if not isinstance(item, dict):
            continue
        deps = item.get("dependencies", item.get("deps"))
        files = item.get("files", item.get("target_files"))
        tasks.append(PlanTask(
            id=str(item.get("id") or item.get("task_id") or ""),
            title=str(item.get("title") or ""),
            description=str(item.get("description") or ""),
            dependencies=[str(d) for d in deps] if isinstance(deps, list) else [],
            files=[str(f) for f in files] if isinstance(files, list) else [],
        ))
    return tasks


def validate_plan(tasks: Iterable[PlanTask]) -> list[PlanTask]:
    """Return a dependency-consistent copy of *tasks* in topological order."""
    cleaned: list[PlanTask] = []
    seen: set[str] = set()
    for i, task in enumerate(tasks):
        tid = task.id or f"task-{i + 1}"
        if tid in seen:
            tid = f"{tid}-{i + 1}"
        seen.add(tid)
        cleaned.append(PlanTask(
            id=tid,
            title=task.title,
            description=task.description,
            dependencies=list(task.dependencies or []),
            files=list(task.files or []),
        ))

    ids = {t.id for t in cleaned}
    for t in cleaned:
        t.dependencies = list(dict.fromkeys(d for d in t.dependencies if d != t.id and d in ids))

    # Kahn's algorithm over dependency -> dependent edges
    in_degree: dict[str, int] = {t.id: 0 for t in cleaned}
    dependents: dict[str, list[str]] = {t.id: [] for t in cleaned}
    for t in cleaned:
        for dep in t.dependencies:
            dependents[dep].append(t.id)
            in_degree[t.id] += 1

    queue: deque[str] = deque(t.id for t in cleaned if in_degree[t.id] == 0)
    order: list[str] = []
    while queue:
        current = queue.popleft()
        order.append(current)
        for child in dependents[current]:
            in_degree[child] -= 1
            if in_degree[child] == 0:
                queue.append(child)

    if len(order) < len(cleaned):
        logger.warning(
            "Plan has a dependency cycle (%d/%d tasks sortable); dropping all dependencies",
            len(order),
            len(cleaned),
        )
        for t in cleaned:
            t.dependencies = []
        return cleaned

    by_id = {t.id: t for t in cleaned}
    return [by_id[tid] for tid in order]


def compute_parallel_groups(tasks: Iterable[PlanTask]) -> list[list[str]]:
    """Layer *tasks* into groups whose dependencies lie in earlier groups."""
    remaining: dict[str, PlanTask] = {t.id: t for t in tasks}
    placed: set[str] = set()
    groups: list[list[str]] = []

    while remaining:
        group = [
            tid for tid, task in remaining.items()
            if all(dep in placed for dep in task.dependencies)
        ]
        if not group:
            # Only reachable with unvalidated input; keeps the loop finite.
            groups.append(list(remaining))
            break
        for tid in group:
            del remaining[tid]
            placed.add(tid)
        groups.append(group)

    return groups


def recommended_worker_count(groups: list[list[str]]) -> int:
    return max([1, *(len(g) for g in groups)])


def build_plan(tasks: Iterable[PlanTask]) -> PlanResult:
    validated = validate_plan(tasks)
    groups = compute_parallel_groups(validated)
    return PlanResult(
        tasks=validated,
        parallel_groups=groups,
        recommended_workers=recommended_worker_count(groups),
    )
