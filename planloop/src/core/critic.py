from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from pydantic import ValidationError

from .llm import TextGenerator, generate_json
from .manifest import ReflectionPayload
from .types import Plan, Reflection


REFLECTION_INSTRUCTIONS = """Evaluate the result against the original goal and success criteria.

Output your evaluation as JSON with the following structure:
{
    "satisfactory": true/false,
    "score": 0.0-1.0,
    "strengths": ["What went well"],
    "weaknesses": ["What could be improved"],
    "suggestions": ["Specific improvements for next attempt"]
}

Be objective and thorough in your evaluation."""


class CriticError(RuntimeError):
    pass


def parse_reflection(raw: str) -> Reflection:
    try:
        payload = ReflectionPayload.model_validate_json(raw)
    except ValidationError as exc:
        raise CriticError(f"Critic returned an invalid reflection: {exc}") from exc
    return payload.to_reflection()


@dataclass
class Critic:
    llm: TextGenerator
    instructions: str = REFLECTION_INSTRUCTIONS

    async def reflect(self, task: Any, result: str, plan: Plan, context: Any = None) -> Reflection:
        prompt = (
            f"Original Task: {task}\n\n"
            f"Plan: {plan.to_json()}\n\n"
            f"Result: {result}\n\n"
            "Evaluate the result against the goal and success criteria."
        )
        raw = await generate_json(self.llm, self.instructions, prompt, context)
        return parse_reflection(raw)


__all__ = ["Critic", "CriticError", "REFLECTION_INSTRUCTIONS", "parse_reflection"]
