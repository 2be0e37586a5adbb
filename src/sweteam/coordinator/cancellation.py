"""Cooperative cancellation tokens for workflow runs.

A run's token is only consulted at phase and group boundaries; it never
interrupts an in-flight agent or git call.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field


@dataclass
class CancellationToken:
    """A token that can be checked for cancellation."""

    _event: asyncio.Event = field(default_factory=asyncio.Event, repr=False)
    _reason: str = ""

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str:
        return self._reason

    def cancel(self, reason: str = "cancelled") -> None:
        """Signal cancellation."""
        self._reason = reason
        self._event.set()

@dataclass
class CancellationTokenSource:
    """Creates and manages a cancellation token.

    Children created with :meth:`create_linked` are cancelled together with
    their parent; cancelling a child leaves the parent alone.
    """

    _token: CancellationToken = field(default_factory=CancellationToken)
    _children: list[CancellationTokenSource] = field(default_factory=list, repr=False)

    @property
    def token(self) -> CancellationToken:
        return self._token

    def cancel(self, reason: str = "cancelled") -> None:
        """Cancel this source and all children."""
        self._token.cancel(reason)
        for child in self._children:
            child.cancel(reason)

    def create_linked(self) -> CancellationTokenSource:
        child = CancellationTokenSource()
        self._children.append(child)
        if self._token.is_cancelled:
            child.cancel(self._token.reason)
        return child

    def release(self, child: CancellationTokenSource) -> None:
        """Drop a finished child so long-lived roots do not accumulate them."""
        self._children = [c for c in self._children if c is not child]

    def dispose(self) -> None:
        """Release all child references."""
        self._children.clear()
