"""Coding-agent CLI backends and the subprocess plumbing they share."""

from __future__ import annotations

import asyncio
import json
import logging
import os
import shlex
from pathlib import Path
from typing import Any

from sweteam.errors import CLIError

logger = logging.getLogger(__name__)

# Nested agent sessions refuse to start when these leak in from a parent session.
_STRIP_ENV_VARS = {
    "CLAUDECODE", "CLAUDE_CODE_ENTRYPOINT", "CLAUDE_REPL",
    "CLAUDE_CODE_PACKAGE_DIR",
}

_TEXT_KEYS = ("result", "message", "text", "output")


def clean_env() -> dict[str, str]:
    return {k: v for k, v in os.environ.items() if k not in _STRIP_ENV_VARS}


def extract_text_from_json(payload: Any) -> str | None:
    """Pull the human-readable text out of a backend's JSON output.

    Handles ``{"result": ...}``-style objects, ``{"content": [{"type": "text",
    "text": ...}]}`` message objects and arrays of either (joined with
    newlines). Returns None when nothing textual is found.
    """
    if isinstance(payload, str):
        return payload
    if isinstance(payload, list):
        parts = [t for t in (extract_text_from_json(item) for item in payload) if t]
        return "\n".join(parts) if parts else None
    if not isinstance(payload, dict):
        return None

    for key in _TEXT_KEYS:
        value = payload.get(key)
        if isinstance(value, str):
            return value
        if isinstance(value, (dict, list)):
            nested = extract_text_from_json(value)
            if nested:
                return nested

    content = payload.get("content")
    if isinstance(content, list):
        texts = [
            block.get("text", "")
            for block in content
            if isinstance(block, dict) and block.get("type") == "text"
        ]
        if texts:
            return "\n".join(texts)
    if isinstance(content, str):
        return content
    return None


def parse_output(stdout: str) -> str:
    """Return the text of *stdout*, decoding JSON / JSONL output when possible."""
    stripped = stdout.strip()
    if not stripped:
        return ""
    try:
        return extract_text_from_json(json.loads(stripped)) or stripped
    except json.JSONDecodeError:
        pass

    # JSONL event streams (codex --json): keep the text of every event.
    texts: list[str] = []
    for line in stripped.splitlines():
        line = line.strip()
        if not line.startswith("{"):
            continue
        try:
            text = extract_text_from_json(json.loads(line))
        except json.JSONDecodeError:
            continue
        if text:
            texts.append(text)
    return "\n".join(texts) if texts else stripped


class CLIBackend:
    """One coding-agent CLI (claude, codex, aider) invoked per prompt."""

    name = ""
    binary = ""

    def __init__(self, model: str = "", extra_flags: str = "", timeout: float = 900) -> None:
        self.model = model
        self.extra_flags = shlex.split(extra_flags) if extra_flags else []
        self.timeout = timeout

    def __repr__(self) -> str:
        return f"{type(self).__name__}(model={self.model!r})"

    def build_command(self, prompt: str) -> list[str]:
        raise NotImplementedError

    async def invoke(self, prompt: str, cwd: str | Path) -> str:
        """Run the CLI with *prompt* in *cwd* and return its text output."""
        cmd = self.build_command(prompt)
        logger.debug("Invoking %s in %s (prompt %d chars)", self.name, cwd, len(prompt))
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=str(cwd),
                env=clean_env(),
                start_new_session=True,
            )
        except FileNotFoundError as exc:
            raise CLIError(
                f"'{self.binary}' CLI not found. Install it or add it to PATH.",
                binary=self.binary,
            ) from exc

        try:
            stdout_bytes, stderr_bytes = await asyncio.wait_for(proc.communicate(), timeout=self.timeout)
        except asyncio.TimeoutError as exc:
            proc.kill()
            await proc.wait()
            raise CLIError(
                f"{self.binary} timed out after {self.timeout:g}s",
                binary=self.binary,
            ) from exc

        stdout = (stdout_bytes or b"").decode("utf-8", errors="replace")
        stderr = (stderr_bytes or b"").decode("utf-8", errors="replace")
        if proc.returncode != 0:
            raise CLIError(
                f"{self.binary} exited with code {proc.returncode}: {(stderr.strip() or stdout.strip())[:2000]}",
                binary=self.binary,
                details={"exit_code": proc.returncode},
            )
        return parse_output(stdout)

    async def check_available(self) -> bool:
        try:
            proc = await asyncio.create_subprocess_exec(
                self.binary, "--version",
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
            )
            return await asyncio.wait_for(proc.wait(), timeout=30) == 0
        except (FileNotFoundError, PermissionError, asyncio.TimeoutError):
            return False
