"""Agent capabilities and the shared CLI-driven agent base class."""

from __future__ import annotations

import json
import logging
import re
from pathlib import Path
from typing import Any, Protocol

from sweteam.adapters.base import CLIBackend
from sweteam.adapters.registry import backend_for
from sweteam.config.schema import AgentLLMConfig, WorkflowConfig
from sweteam.protocol.models import ClarificationResult, PlanResult, ReviewResult, TestResult

logger = logging.getLogger(__name__)

_FENCE_RE = re.compile(r"```(?:json)?\s*\n?(.*?)```", re.DOTALL)


class WorkerCapability(Protocol):
    """What the workflow needs from an implementing agent."""

    last_error: str

    async def implement_task(
        self,
        path: str | Path,
        description: str,
        *,
        files: list[str] | None = None,
        overall_goal: str = "",
    ) -> bool: ...

    async def apply_feedback(
        self, path: str | Path, description: str, feedback: str, diff: str | None = None,
    ) -> bool: ...

    async def run_tests(self, path: str | Path) -> TestResult: ...


class PlannerCapability(Protocol):
    """What the workflow needs from the planning / reviewing agent."""

    async def clarify_requirements(
        self, path: str | Path, request: str, transcript: list[dict[str, str]],
    ) -> ClarificationResult: ...

    async def analyze_codebase(self, path: str | Path) -> str: ...

    async def plan_and_queue_tasks(self, path: str | Path, request: str, analysis: str = "") -> PlanResult: ...

    async def review_code(
        self, path: str | Path, description: str, diff: str, prior_feedback: list[str] | None = None,
    ) -> ReviewResult: ...

    def should_approve(self, review: ReviewResult) -> bool: ...


def extract_json(text: str) -> Any:
    """Parse the first JSON value embedded in free-form agent output.

    Tries, in order: the text with markdown fences stripped, then the first
    ``[`` or ``{`` whose balanced bracket span parses. Raises ``ValueError``
    when nothing parses.
    """
    stripped = _FENCE_RE.sub(r"\1", text).strip()
    try:
        return json.loads(stripped)
    except json.JSONDecodeError:
        pass

    for i, ch in enumerate(text):
        if ch not in "[{":
            continue
        close = "]" if ch == "[" else "}"
        depth = 0
        in_str = False
        escape = False
        for j in range(i, len(text)):
            c = text[j]
            if escape:
                escape = False
                continue
            if c == "\\":
                escape = True
                continue
            if c == '"':
                in_str = not in_str
                continue
            if in_str:
                continue
            if c == ch:
                depth += 1
            elif c == close:
                depth -= 1
                if depth == 0:
                    try:
                        return json.loads(text[i:j + 1])
                    except json.JSONDecodeError:
                        break
    raise ValueError("No JSON found in agent output")


class BaseAgent:
    """An agent role backed by one coding-agent CLI."""

    role = ""

    def __init__(
        self,
        llm_config: AgentLLMConfig,
        workflow: WorkflowConfig | None = None,
        *,
        backend: CLIBackend | None = None,
    ) -> None:
        self.workflow = workflow or WorkflowConfig()
        self.backend = backend or backend_for(llm_config)

    def load_prompt(self, key: str) -> str:
        """Read the prompt file configured under *key*; a missing file yields ''."""
        prompt_path = self.workflow.prompts.get(key)
        if not prompt_path:
            return ""
        try:
            return Path(prompt_path).resolve().read_text(encoding="utf-8")
        except OSError:
            logger.debug("Prompt file %s for %s not readable", prompt_path, key)
            return ""

    async def run(self, prompt: str, cwd: str | Path, *, system_prompt_key: str | None = None) -> str:
        system_prompt = self.load_prompt(system_prompt_key or self.role)
        full_prompt = f"{system_prompt}\n\n{prompt}" if system_prompt else prompt
        return await self.backend.invoke(full_prompt, cwd)
