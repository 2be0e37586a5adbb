"""Transport adapters between users and the service."""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any, Awaitable, Callable

from sweteam.errors import ConfigurationError, ResponseSupersededError, ResponseTimeoutError
from sweteam.interfaces.messaging import parse_task_command

if TYPE_CHECKING:
    from sweteam.config.schema import SWETeamConfig

logger = logging.getLogger(__name__)

MessageCallback = Callable[[str, str, str], Awaitable[Any]]
CommandCallback = Callable[[str, list[str], str], Awaitable[str]]

COMMANDS = ("list", "status", "stop")


class InterfaceAdapter(ABC):
    """Delivers messages to a conversation and collects replies.

    Inbound text that answers an outstanding :meth:`wait_for_response`
    resolves it; anything else is routed as a task or a command.
    """

    name = ""

    def __init__(self, on_task: MessageCallback, on_command: CommandCallback | None = None) -> None:
        self.on_task = on_task
        self.on_command = on_command
        self._pending: dict[str, asyncio.Future[str]] = {}

    @abstractmethod
    async def start(self) -> None: ...

    @abstractmethod
    async def stop(self) -> None: ...

    @abstractmethod
    async def _deliver(self, conversation_id: str, text: str) -> None: ...

    async def send_message(self, conversation_id: str, text: str) -> None:
        """Send *text*; delivery failures are logged, never raised."""
        try:
            await self._deliver(conversation_id, text)
        except Exception as exc:
            logger.warning("%s: failed to deliver message to %s: %s", self.name, conversation_id, exc)

    async def wait_for_response(self, conversation_id: str, timeout: float) -> str:
        loop = asyncio.get_running_loop()
        previous = self._pending.get(conversation_id)
        if previous is not None and not previous.done():
            previous.set_exception(ResponseSupersededError(conversation_id))
        future: asyncio.Future[str] = loop.create_future()
        self._pending[conversation_id] = future
        try:
            return await asyncio.wait_for(future, timeout=timeout)
        except asyncio.TimeoutError as exc:
            raise ResponseTimeoutError(conversation_id, timeout) from exc
        finally:
            if self._pending.get(conversation_id) is future:
                del self._pending[conversation_id]

    def has_pending_response(self, conversation_id: str) -> bool:
        future = self._pending.get(conversation_id)
        return future is not None and not future.done()

    def deliver_response(self, conversation_id: str, text: str) -> bool:
        """Resolve an outstanding wait for *conversation_id*. Returns False if none."""
        future = self._pending.get(conversation_id)
        if future is None or future.done():
            return False
        future.set_result(text)
        return True

    async def handle_text(self, text: str, conversation_id: str) -> str | None:
        """Route one line of user input. Returns a reply for the user, if any."""
        text = text.strip()
        if not text:
            return None
        if self.deliver_response(conversation_id, text):
            return None

        word, _, rest = text.lstrip("/").partition(" ")
        if word.lower() in COMMANDS:
            return await self.run_command(word.lower(), rest.split(), conversation_id)

        parsed = parse_task_command(text)
        if parsed is None:
            return "Usage: <owner/repo> <task description>"
        repo, task = parsed
        await self.on_task(repo, task, conversation_id)
        return None

    async def run_command(self, command: str, args: list[str], conversation_id: str) -> str:
        if self.on_command is None:
            return f"Command '{command}' is not available."
        return await self.on_command(command, args, conversation_id)


def create_interface(
    kind: str,
    config: SWETeamConfig,
    on_task: MessageCallback,
    on_command: CommandCallback | None = None,
) -> InterfaceAdapter:
    """Build the configured transport. Optional transports are imported lazily."""
    if kind == "cli":
        from sweteam.interfaces.cli import CLIInterface

        return CLIInterface(on_task, on_command)
    if kind == "telegram":
        from sweteam.interfaces.telegram import TelegramInterface

        return TelegramInterface(on_task, on_command, config=config.telegram)
    if kind == "api":
        from sweteam.interfaces.api import APIInterface

        return APIInterface(on_task, on_command, config=config.api)
    raise ConfigurationError(f"Unknown interface: {kind}")
