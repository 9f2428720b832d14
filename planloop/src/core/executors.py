"""Step execution and result synthesis strategies.

The orchestrator never runs a step itself.  It delegates to a
:class:`StepExecutor` for every step and to a :class:`ResultSynthesizer` once
all steps have produced a result.  Both may be plain callables or coroutine
functions; :func:`call_strategy` awaits whatever they return.
"""

from __future__ import annotations

import inspect
from dataclasses import dataclass
from typing import Any, Mapping, Protocol, Sequence

from .llm import TextGenerator, generate_text
from .types import Plan, PlanStep, StepId


_RESULT_PREVIEW_LIMIT = 500


STEP_EXECUTION_INSTRUCTIONS = """Execute the following step as part of a larger plan.

Be thorough and provide detailed output. Consider:
- The specific action required
- Any context from previous steps
- How this step contributes to the overall goal

Provide a complete, actionable result for this step."""


SYNTHESIS_INSTRUCTIONS = """Synthesize the results from all completed steps into a coherent final output.

Consider:
- The original goal
- What each step accomplished
- How the pieces fit together
- Key insights and conclusions

Provide a comprehensive, well-organized result."""


class StepExecutor(Protocol):
    def __call__(
        self,
        step: PlanStep,
        previous_results: Mapping[StepId, str],
        context: Any,
    ) -> Any:  # pragma: no cover - interface
        ...


class ResultSynthesizer(Protocol):
    def __call__(
        self,
        plan: Plan,
        results: Mapping[StepId, str],
        context: Any,
    ) -> Any:  # pragma: no cover - interface
        ...


async def call_strategy(strategy: Any, *args: Any) -> str:
    """Invoke a sync or async strategy and return its result as text."""

    value = strategy(*args)
    while inspect.isawaitable(value):
        value = await value
    return "" if value is None else str(value)


def format_success_criteria(criteria: Sequence[str]) -> str:
    if not criteria:
        return "None specified"
    return "\n".join(f"- {criterion}" for criterion in criteria)


def build_step_prompt(step: PlanStep, previous_results: Mapping[StepId, str]) -> str:
    previous = ""
    if previous_results:
        previous = "\n\nContext from previous steps:\n" + "".join(
            f"- Step {step_id}: {str(result)[:_RESULT_PREVIEW_LIMIT]}\n"
            for step_id, result in previous_results.items()
        )
    tools = ""
    if step.tools:
        tools = "\n\nAvailable tools for this step: " + ", ".join(step.tools)
    return (
        f"## Step to Execute\n{step.action}\n\n"
        f"## Step ID\n{step.id}\n"
        f"{previous}\n"
        f"{tools}\n\n"
        "Execute this step thoroughly and provide the result."
    )


def build_synthesis_prompt(plan: Plan, results: Mapping[StepId, str]) -> str:
    summary = ""
    for step in plan.steps:
        result = results.get(step.id)
        summary += f"### Step {step.id}: {step.action}\n"
        summary += f"{result if result is not None else 'Not completed'}\n\n"
    return (
        f"## Original Goal\n{plan.goal}\n\n"
        f"## Success Criteria\n{format_success_criteria(plan.success_criteria)}\n\n"
        f"## Step Results\n{summary}\n"
        "Synthesize these results into a comprehensive final output that achieves the goal."
    )


@dataclass
class LlmStepExecutor:
    """Executes a step by asking the text generator to perform it."""

    llm: TextGenerator
    instructions: str = STEP_EXECUTION_INSTRUCTIONS

    async def __call__(
        self,
        step: PlanStep,
        previous_results: Mapping[StepId, str],
        context: Any = None,
    ) -> str:
        prompt = build_step_prompt(step, previous_results)
        if context is not None and hasattr(context, "add_message"):
            context.add_message({"role": "user", "content": prompt})
        return await generate_text(self.llm, self.instructions, prompt)


@dataclass
class LlmResultSynthesizer:
    """Combines step results into one answer through the text generator."""

    llm: TextGenerator
    instructions: str = SYNTHESIS_INSTRUCTIONS

    async def __call__(
        self,
        plan: Plan,
        results: Mapping[StepId, str],
        context: Any = None,
    ) -> str:
        return await generate_text(self.llm, self.instructions, build_synthesis_prompt(plan, results))


__all__ = [
    "LlmResultSynthesizer",
    "LlmStepExecutor",
    "ResultSynthesizer",
    "STEP_EXECUTION_INSTRUCTIONS",
    "SYNTHESIS_INSTRUCTIONS",
    "StepExecutor",
    "build_step_prompt",
    "build_synthesis_prompt",
    "format_success_criteria",
    "call_strategy",
]
