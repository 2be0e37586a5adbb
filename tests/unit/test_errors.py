"""Tests for the error hierarchy."""

from __future__ import annotations

import pytest

from sweteam.errors import (
    CLIError,
    ConfigurationError,
    ErrorCategory,
    GitError,
    PlanningError,
    ResponseSupersededError,
    ResponseTimeoutError,
    RunNotFoundError,
    StructuralError,
    SubtaskError,
    SWETeamError,
    ToolFailure,
    WorkspaceError,
)


class TestSWETeamError:
    def test_basic(self) -> None:
        e = SWETeamError("test error")
        assert str(e) == "test error"
        assert e.category == ErrorCategory.INTERNAL
        assert not e.retryable
        assert e.details == {}

    def test_repr(self) -> None:
        r = repr(SWETeamError("test error", category=ErrorCategory.TOOL))
        assert "SWETeamError" in r
        assert "test error" in r

    def test_can_be_raised_and_caught(self) -> None:
        with pytest.raises(SWETeamError, match="boom"):
            raise PlanningError("boom")


class TestToolFailures:
    def test_cli_error_is_retryable(self) -> None:
        e = CLIError("claude timed out", binary="claude")
        assert isinstance(e, ToolFailure)
        assert e.category == ErrorCategory.TOOL
        assert e.retryable
        assert e.binary == "claude"

    def test_git_error_defaults_to_not_retryable(self) -> None:
        e = GitError("git merge failed: CONFLICT", command=["git", "merge", "x"])
        assert e.category == ErrorCategory.TOOL
        assert not e.retryable
        assert e.command == ["git", "merge", "x"]
        assert GitError("git push timed out", retryable=True).retryable


class TestStructuralErrors:
    @pytest.mark.parametrize("cls", [PlanningError, WorkspaceError])
    def test_never_retryable(self, cls: type[StructuralError]) -> None:
        e = cls("nope", details={"path": "/tmp/x"})
        assert e.category == ErrorCategory.STRUCTURAL
        assert not e.retryable
        assert e.details["path"] == "/tmp/x"


def test_subtask_error_carries_id() -> None:
    e = SubtaskError("agent gave up", subtask_id="task-2")
    assert e.subtask_id == "task-2"
    assert e.retryable


def test_response_timeout_message() -> None:
    e = ResponseTimeoutError("chat-1", 2.5)
    assert str(e) == "Response timeout after 2.5s waiting on chat-1"
    assert e.category == ErrorCategory.TRANSPORT
    assert (e.conversation_id, e.timeout) == ("chat-1", 2.5)


def test_superseded_question_is_a_transport_error() -> None:
    e = ResponseSupersededError("chat-1")
    assert "superseded" in str(e)
    assert e.category == ErrorCategory.TRANSPORT
    assert not e.retryable


def test_configuration_and_lookup_errors() -> None:
    assert ConfigurationError("bad").category == ErrorCategory.CONFIGURATION
    missing = RunNotFoundError(7)
    assert str(missing) == "Run 7 not found"
    assert missing.run_id == 7
