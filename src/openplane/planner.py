from __future__ import annotations

import logging
import uuid
from typing import Protocol

from openplane.models import ExecutionPlan, PlanRiskLevel, PlanStep
from openplane.sandbox.commands import ToolCommand, ToolCommandError, is_tool_details

logger = logging.getLogger(__name__)

REQUEST_CONTEXT_LIMIT = 3000


class Planner(Protocol):
    async def create_plan(self, prompt: str) -> ExecutionPlan: ...


def _new_id() -> str:
    return uuid.uuid4().hex


def _request_context(prompt: str) -> str:
    if len(prompt) > REQUEST_CONTEXT_LIMIT:
        return prompt[:REQUEST_CONTEXT_LIMIT] + "\n...[truncated]"
    return prompt


class HeuristicPlanner:
    """Keyword-driven planner used when no model-backed planner is configured."""

    async def create_plan(self, prompt: str) -> ExecutionPlan:
        trimmed = (prompt or "").strip()
        if not trimmed:
            raise ValueError("Prompt cannot be empty.")

        context = _request_context(trimmed)
        steps = [
            PlanStep(
                id=_new_id(),
                title="Analyze request",
                details=(
                    f"User request:\n{context}\n\n"
                    "Identify intent, constraints, and expected output."
                ),
                significant_action=False,
            )
        ]

        tool_lines = [line.strip() for line in trimmed.splitlines() if is_tool_details(line)]
        lowered = trimmed.lower()
        if tool_lines:
            for index, line in enumerate(tool_lines, start=1):
                title = "Execute requested tool action"
                if len(tool_lines) > 1:
                    title = f"{title} {index}"
                steps.append(PlanStep(_new_id(), title, line, significant_action=True))
        elif "list" in lowered and "file" in lowered:
            steps.append(
                PlanStep(_new_id(), "Search workspace files", "tool:search|.|*", True)
            )
        else:
            steps.append(
                PlanStep(
                    _new_id(),
                    "Run assistant reasoning",
                    "Produce the requested output while staying within the granted "
                    f"workspace policy.\n\nRequest:\n{context}",
                    True,
                )
            )

        steps.append(
            PlanStep(
                _new_id(),
                "Validate and summarize",
                "Confirm output quality and summarize the final result for this request:\n"
                f"{context}",
                True,
            )
        )

        plan = ExecutionPlan(
            plan_id=_new_id(),
            prompt=trimmed,
            steps=tuple(steps),
            risk_level=assess_risk(steps),
        )
        logger.info("Planned %d steps (risk %s)", len(plan.steps), plan.risk_level.value)
        return plan


def assess_risk(steps: list[PlanStep] | tuple[PlanStep, ...]) -> PlanRiskLevel:
    operations = []
    for step in steps:
        try:
            command = ToolCommand.parse(step.details)
        except ToolCommandError:
            # Unparseable tool steps are treated as potentially mutating.
            return PlanRiskLevel.HIGH
        if command is not None:
            operations.append(command.operation)
    if any(operation.mutating for operation in operations):
        return PlanRiskLevel.HIGH
    if operations:
        return PlanRiskLevel.LOW
    return PlanRiskLevel.MEDIUM
