from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional, Union

from pydantic import ValidationError

from .llm import TextGenerator, generate_json
from .manifest import PlanPayload
from .reflection import format_feedback
from .types import Plan, Reflection


PLANNER_INSTRUCTIONS = """You are a planning assistant. Given a task, create a detailed step-by-step plan.

Output your plan as JSON with the following structure:
{
    "goal": "The main objective to achieve",
    "steps": [
        {"id": 1, "action": "Description of what to do", "dependencies": [], "tools": ["tool_name"]},
        {"id": 2, "action": "Next action", "dependencies": [1], "tools": []}
    ],
    "success_criteria": ["Criterion 1", "Criterion 2"]
}

Rules:
- Each step must have a unique numeric ID
- Dependencies are IDs of steps that must complete before this one
- Steps with no dependencies can run first
- Be specific and actionable in step descriptions
- Include relevant tools if known"""


class PlannerError(RuntimeError):
    pass


def parse_plan(raw: str) -> Plan:
    """Validate extracted planner JSON and build a :class:`Plan`."""

    try:
        payload = PlanPayload.model_validate_json(raw)
    except ValidationError as exc:
        raise PlannerError(f"Planner returned an invalid plan: {exc}") from exc
    return payload.to_plan()


@dataclass
class Planner:
    llm: TextGenerator
    instructions: str = PLANNER_INSTRUCTIONS

    async def generate(self, task: Any, context: Any = None) -> Plan:
        prompt = f"Create a plan for: {task}"
        raw = await generate_json(self.llm, self.instructions, prompt, context)
        return parse_plan(raw)

    async def replan(
        self,
        task: Any,
        previous_result: Optional[str],
        feedback: Union[Reflection, str, None],
        context: Any = None,
    ) -> Plan:
        prompt = (
            f"Original Task: {task}\n\n"
            f"Previous Result: {previous_result or ''}\n\n"
            f"Feedback: {format_feedback(feedback)}\n\n"
            "Create an improved plan that addresses the feedback."
        )
        raw = await generate_json(self.llm, self.instructions, prompt, context)
        return parse_plan(raw)


__all__ = ["PLANNER_INSTRUCTIONS", "Planner", "PlannerError", "parse_plan"]
