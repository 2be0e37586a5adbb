"""SWE Team error hierarchy."""

from __future__ import annotations

from enum import StrEnum
from typing import Any


class ErrorCategory(StrEnum):
    """Category of error for classification and handling."""

    TOOL = "tool"
    STRUCTURAL = "structural"
    TRANSPORT = "transport"
    CONFIGURATION = "configuration"
    CANCELLATION = "cancellation"
    INTERNAL = "internal"


class SWETeamError(Exception):
    """Base error for all orchestrator exceptions."""

    def __init__(
        self,
        message: str,
        *,
        category: ErrorCategory = ErrorCategory.INTERNAL,
        retryable: bool = False,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.category = category
        self.retryable = retryable
        self.details: dict[str, Any] = details or {}

    def __repr__(self) -> str:
        return f"{type(self).__name__}({str(self)!r}, category={self.category!r})"


class ToolFailure(SWETeamError):
    """An external command failed (non-zero exit, timeout, missing binary)."""

    def __init__(self, message: str, *, retryable: bool = True, **kwargs: Any) -> None:
        super().__init__(message, category=ErrorCategory.TOOL, retryable=retryable, **kwargs)


class CLIError(ToolFailure):
    """Error from an agent CLI backend."""

    def __init__(self, message: str, *, binary: str | None = None, **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.binary = binary


class GitError(ToolFailure):
    """Error from a git or gh invocation.

    Only timeouts and network-looking failures are retryable; a merge
    conflict or a bad ref fails the same way every time.
    """

    def __init__(
        self, message: str, *, command: list[str] | None = None, retryable: bool = False, **kwargs: Any,
    ) -> None:
        super().__init__(message, retryable=retryable, **kwargs)
        self.command = command or []


class StructuralError(SWETeamError):
    """The run cannot continue; retrying would not help."""

    def __init__(self, message: str, **kwargs: Any) -> None:
        super().__init__(message, category=ErrorCategory.STRUCTURAL, retryable=False, **kwargs)


class PlanningError(StructuralError):
    """Planning produced nothing usable."""


class WorkspaceError(StructuralError):
    """A workspace is not in the state the run recorded."""


class SubtaskError(SWETeamError):
    """An agent reported that it could not complete a subtask."""

    def __init__(self, message: str, *, subtask_id: str = "", **kwargs: Any) -> None:
        super().__init__(message, category=ErrorCategory.TOOL, retryable=True, **kwargs)
        self.subtask_id = subtask_id


class ResponseTimeoutError(SWETeamError):
    """No reply arrived from the user in time."""

    def __init__(self, conversation_id: str, timeout: float) -> None:
        super().__init__(
            f"Response timeout after {timeout:g}s waiting on {conversation_id}",
            category=ErrorCategory.TRANSPORT,
            retryable=False,
        )
        self.conversation_id = conversation_id
        self.timeout = timeout


class ResponseSupersededError(SWETeamError):
    """A newer question on the same conversation replaced this one."""

    def __init__(self, conversation_id: str) -> None:
        super().__init__(
            f"Question on {conversation_id} was superseded by a newer one",
            category=ErrorCategory.TRANSPORT,
            retryable=False,
        )
        self.conversation_id = conversation_id


class ConfigurationError(SWETeamError):
    """Invalid or missing configuration."""

    def __init__(self, message: str) -> None:
        super().__init__(message, category=ErrorCategory.CONFIGURATION, retryable=False)


class RunNotFoundError(SWETeamError):
    """A workflow run id does not exist in the store."""

    def __init__(self, run_id: int) -> None:
        super().__init__(f"Run {run_id} not found", category=ErrorCategory.INTERNAL)
        self.run_id = run_id
