"""Tests for sweteam.coordinator.cancellation."""

from __future__ import annotations

from sweteam.coordinator.cancellation import CancellationToken, CancellationTokenSource


def test_token_records_reason() -> None:
    token = CancellationToken()
    assert not token.is_cancelled
    token.cancel("stopped by user")
    assert token.is_cancelled
    assert token.reason == "stopped by user"


def test_parent_cancels_children_not_the_reverse() -> None:
    root = CancellationTokenSource()
    a = root.create_linked()
    b = root.create_linked()

    a.cancel("user")
    assert not root.token.is_cancelled
    assert not b.token.is_cancelled

    root.cancel("shutdown")
    assert b.token.is_cancelled
    assert b.token.reason == "shutdown"


def test_child_of_cancelled_parent_starts_cancelled() -> None:
    root = CancellationTokenSource()
    root.cancel("shutdown")
    assert root.create_linked().token.reason == "shutdown"


def test_released_child_is_detached() -> None:
    root = CancellationTokenSource()
    child = root.create_linked()
    root.release(child)
    root.cancel()
    assert not child.token.is_cancelled
