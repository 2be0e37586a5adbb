"""Terminal transport: one line of stdin per message."""

from __future__ import annotations

import asyncio
import logging
import sys
import threading
from typing import TextIO

import click

from sweteam.interfaces.base import CommandCallback, InterfaceAdapter, MessageCallback

logger = logging.getLogger(__name__)

CLI_CONVERSATION = "cli"


class CLIInterface(InterfaceAdapter):
    """Reads stdin on a daemon thread so a blocked read never holds up exit."""

    name = "cli"

    def __init__(
        self,
        on_task: MessageCallback,
        on_command: CommandCallback | None = None,
        *,
        stdin: TextIO | None = None,
        banner: bool = True,
    ) -> None:
        super().__init__(on_task, on_command)
        self._stdin = stdin or sys.stdin
        self.banner = banner
        self._reader: asyncio.Task[None] | None = None
        self.closed = asyncio.Event()

    async def start(self) -> None:
        if self.banner:
            click.echo("SWE Team Ready. Type: <repo> <task description>")
            click.echo("Commands: quit, list, status, stop <id>")
        lines: asyncio.Queue[str | None] = asyncio.Queue()
        thread = threading.Thread(
            target=self._pump, args=(asyncio.get_running_loop(), lines), name="sweteam-stdin", daemon=True,
        )
        thread.start()
        self._reader = asyncio.create_task(self._read_loop(lines))

    def _pump(self, loop: asyncio.AbstractEventLoop, lines: asyncio.Queue[str | None]) -> None:
        try:
            for line in iter(self._stdin.readline, ""):
                loop.call_soon_threadsafe(lines.put_nowait, line)
            loop.call_soon_threadsafe(lines.put_nowait, None)
        except RuntimeError:
            # Event loop already closed.
            return

    async def _read_loop(self, lines: asyncio.Queue[str | None]) -> None:
        try:
            while True:
                line = await lines.get()
                if line is None:
                    break
                line = line.strip()
                if line in ("quit", "exit"):
                    break
                try:
                    reply = await self.handle_text(line, CLI_CONVERSATION)
                except Exception as exc:
                    logger.exception("Failed to handle input %r", line)
                    reply = f"Error: {exc}"
                if reply:
                    await self.send_message(CLI_CONVERSATION, reply)
        finally:
            self.closed.set()

    async def stop(self) -> None:
        if self._reader is not None and not self._reader.done():
            self._reader.cancel()
        self.closed.set()

    async def _deliver(self, conversation_id: str, text: str) -> None:
        click.echo(text)
