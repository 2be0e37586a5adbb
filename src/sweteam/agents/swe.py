"""SWE agent: implements subtasks inside a worker workspace."""

from __future__ import annotations

import logging
from pathlib import Path

from sweteam.adapters.base import CLIBackend
from sweteam.agents.base import BaseAgent, extract_json
from sweteam.config.schema import AgentLLMConfig, WorkflowConfig
from sweteam.errors import CLIError
from sweteam.protocol.models import TestResult

logger = logging.getLogger(__name__)

MAX_FEEDBACK_DIFF = 5000


class SWEAgent(BaseAgent):
    role = "swe"

    def __init__(
        self,
        agent_id: str,
        llm_config: AgentLLMConfig,
        workflow: WorkflowConfig | None = None,
        *,
        backend: CLIBackend | None = None,
    ) -> None:
        super().__init__(llm_config, workflow, backend=backend)
        self.agent_id = agent_id
        self.last_error = ""

    def __repr__(self) -> str:
        return f"SWEAgent({self.agent_id!r})"

    async def _attempt(self, prompt: str, path: str | Path) -> bool:
        try:
            await self.run(prompt, path)
        except CLIError as exc:
            self.last_error = str(exc)
            logger.warning("%s: agent call failed: %s", self.agent_id, exc)
            return False
        self.last_error = ""
        return True

    async def implement_task(
        self,
        path: str | Path,
        description: str,
        *,
        files: list[str] | None = None,
        overall_goal: str = "",
        context: str = "",
    ) -> bool:
        parts = [f"Implement the following task:\n{description}"]
        if overall_goal:
            parts.append(f"\nOverall goal: {overall_goal}")
        if files:
            parts.append(f"\nFiles to modify: {', '.join(files)}")
        if context:
            parts.append(f"\nContext: {context}")
        parts.append("\nImplement, write tests, and commit your changes.")
        return await self._attempt("".join(parts), path)

    async def apply_feedback(
        self, path: str | Path, description: str, feedback: str, diff: str | None = None,
    ) -> bool:
        if diff and len(diff) > MAX_FEEDBACK_DIFF:
            diff = diff[:MAX_FEEDBACK_DIFF] + "\n... (truncated)"
        prompt = "".join([
            f"Task: {description}",
            f"\nReview feedback:\n{feedback}",
            f"\nCurrent diff:\n{diff}" if diff else "",
            "\nApply the feedback, fix the issues, and commit.",
        ])
        return await self._attempt(prompt, path)

    async def run_tests(self, path: str | Path) -> TestResult:
        prompt = 'Run the test suite. Return JSON: {"passed": true/false, "summary": "brief summary"}'
        try:
            output = await self.run(prompt, path)
        except CLIError as exc:
            return TestResult(passed=False, summary=str(exc))
        try:
            parsed = extract_json(output)
        except ValueError:
            parsed = None
        if isinstance(parsed, dict):
            return TestResult(passed=bool(parsed.get("passed")), summary=str(parsed.get("summary") or output[:200]))
        lower = output.lower()
        return TestResult(passed="fail" not in lower and "error" not in lower, summary=output[:200])
