"""Architect agent: clarifies, plans and reviews."""

from __future__ import annotations

import logging
from pathlib import Path

from sweteam.agents.base import BaseAgent, extract_json
from sweteam.config.schema import QUALITY_LEVELS
from sweteam.coordinator.planner import build_plan, coerce_plan_tasks
from sweteam.errors import CLIError
from sweteam.protocol.models import ClarificationResult, PlanResult, PlanTask, ReviewResult

logger = logging.getLogger(__name__)

_QUALITY_RANK = {q: i for i, q in enumerate(QUALITY_LEVELS)}


def quality_rank(quality: str) -> int:
    key = quality.strip().lower().replace(" ", "_").replace("-", "_")
    return _QUALITY_RANK.get(key, 0)


def default_plan(request: str) -> list[PlanTask]:
    return [PlanTask(id="task-1", title="Implement task", description=request)]


class ArchitectAgent(BaseAgent):
    role = "architect"

    async def analyze_codebase(self, path: str | Path) -> str:
        try:
            return await self.run(
                "Analyze this codebase. Summarize: project structure, tech stack, "
                "test infrastructure, coding conventions. Be concise.",
                path,
            )
        except CLIError as exc:
            logger.warning("Codebase analysis failed: %s", exc)
            return f"Codebase analysis failed: {exc}"

    async def create_plan(self, path: str | Path, request: str, analysis: str = "") -> list[PlanTask]:
        prompt = "".join([
            f"Task: {request}",
            f"\nCodebase analysis:\n{analysis}" if analysis else "",
            '\nCreate a plan as a JSON array of tasks. Each task: { "id": "task-N", "title": "...", '
            '"description": "...", "dependencies": [...], "files": [...] }',
            "\nReturn ONLY the JSON array.",
        ])
        try:
            output = await self.run(prompt, path)
            tasks = coerce_plan_tasks(extract_json(output))
        except (CLIError, ValueError) as exc:
            logger.warning("Planning output unusable, falling back to a single task: %s", exc)
            return default_plan(request)
        return tasks or default_plan(request)

    async def plan_and_queue_tasks(self, path: str | Path, request: str, analysis: str = "") -> PlanResult:
        return build_plan(await self.create_plan(path, request, analysis))

    async def clarify_requirements(
        self, path: str | Path, request: str, transcript: list[dict[str, str]],
    ) -> ClarificationResult:
        history = "\n".join(f"{m.get('role', 'user')}: {m.get('text', '')}" for m in transcript)
        prompt = "".join([
            f"Requirement: {request}",
            f"\nPrevious conversation:\n{history}" if history else "",
            '\nIs the requirement clear enough to create a plan? Respond with JSON: '
            '{"status": "clear", "message": "the requirement restated in full"} '
            'or {"status": "unclear", "message": "your question"}',
        ])
        try:
            output = await self.run(prompt, path, system_prompt_key="architect_clarify")
            parsed = extract_json(output)
        except (CLIError, ValueError) as exc:
            logger.info("Clarification skipped: %s", exc)
            return ClarificationResult(status="ready")

        if not isinstance(parsed, dict):
            return ClarificationResult(status="ready")
        status = str(parsed.get("status", "")).lower()
        message = parsed.get("message")
        if status in ("clear", "ready"):
            return ClarificationResult(status="ready", message=str(message or ""))
        return ClarificationResult(status="needs_input", message=str(message or "Could you provide more details?"))

    async def review_code(
        self,
        path: str | Path,
        description: str,
        diff: str,
        prior_feedback: list[str] | None = None,
    ) -> ReviewResult:
        parts = [f"Task: {description}", f"\nDiff:\n{diff[:20000] or '(no changes)'}"]
        if prior_feedback:
            parts.append("\nPrevious review feedback:\n" + "\n".join(f"- {f}" for f in prior_feedback))
        parts.append(
            '\nReview the change. Respond with JSON: {"approved": true/false, '
            '"quality": "poor|needs_work|good|excellent", "feedback": "...", "issues": ["..."]}'
        )
        output = await self.run("".join(parts), path, system_prompt_key="architect_review")
        try:
            parsed = extract_json(output)
        except ValueError:
            return ReviewResult(approved=False, quality="poor", feedback=output.strip())
        if not isinstance(parsed, dict):
            return ReviewResult(approved=False, quality="poor", feedback=output.strip())

        issues = parsed.get("issues")
        return ReviewResult(
            approved=bool(parsed.get("approved")),
            quality=str(parsed.get("quality") or "poor"),
            feedback=str(parsed.get("feedback") or ""),
            issues=[str(i) for i in issues] if isinstance(issues, list) else [],
        )

    def should_approve(self, review: ReviewResult) -> bool:
        return review.approved and quality_rank(review.quality) >= quality_rank(self.workflow.approval_threshold)
