"""Event bus for workflow run events.

Events are emitted by the workflow engine and the service. Subscribers
(the log mirror, tests) receive every event; events are also optionally
appended to a JSONL file.
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Callable

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class RunEvent:
    """A single workflow event."""

    event_type: str         # "phase" | "spawn" | "subtask" | "review" | "merge" | "pr" | "complete" | "fail" | "cancel" | "warning"
    run_id: int = 0
    timestamp: float = field(default_factory=time.time)
    step: str = ""
    subtask_id: str = ""
    worker_id: str = ""
    data: dict[str, Any] = field(default_factory=dict)
    message: str = ""


class EventBus:
    """In-process pub/sub for run events."""

    def __init__(self, persist_path: str | None = None, max_history: int = 1000) -> None:
        self._subscribers: list[Callable[[RunEvent], Any]] = []
        self._persist_path = persist_path
        self._max_history = max_history
        self._history: list[RunEvent] = []

    def emit(self, event: RunEvent) -> None:
        """Emit an event to all subscribers and persist."""
        self._history.append(event)
        if len(self._history) > self._max_history:
            del self._history[: len(self._history) - self._max_history]

        for cb in self._subscribers:
            try:
                cb(event)
            except Exception as exc:
                logger.debug("EventBus subscriber error: %s", exc)

        if self._persist_path:
            try:
                p = Path(self._persist_path)
                p.parent.mkdir(parents=True, exist_ok=True)
                with p.open("a", encoding="utf-8") as f:
                    f.write(json.dumps(asdict(event)) + "\n")
            except OSError as exc:
                logger.debug("EventBus persist error: %s", exc)

    def subscribe(self, callback: Callable[[RunEvent], Any]) -> None:
        self._subscribers.append(callback)

    def unsubscribe(self, callback: Callable[[RunEvent], Any]) -> None:
        self._subscribers = [cb for cb in self._subscribers if cb != callback]

    @property
    def history(self) -> list[RunEvent]:
        return list(self._history)

    def for_run(self, run_id: int) -> list[RunEvent]:
        return [e for e in self._history if e.run_id == run_id]

    def recent(self, n: int = 20) -> list[RunEvent]:
        """Return the *n* most recent events."""
        return self._history[-n:]


def log_event(event: RunEvent) -> None:
    """Subscriber that mirrors events into the application log."""
    level = logging.WARNING if event.event_type in {"fail", "warning"} else logging.INFO
    logger.log(
        level,
        "run=%s %s%s%s %s",
        event.run_id,
        event.event_type,
        f" subtask={event.subtask_id}" if event.subtask_id else "",
        f" worker={event.worker_id}" if event.worker_id else "",
        event.message,
    )
