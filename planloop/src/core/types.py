"""Shared type definitions for the planning runtime."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Union


StepId = int


class RunState(str, Enum):
    """Phases of the plan-execute-reflect loop."""

    PLANNING = "planning"
    EXECUTING = "executing"
    REFLECTING = "reflecting"
    REPLANNING = "replanning"
    DONE = "done"
    EXHAUSTED = "exhausted"


@dataclass
class PlanStep:
    """One unit of work inside a plan.

    ``tools`` is advisory: the orchestrator never invokes tools itself, it only
    hands the names to the step executor.
    """

    id: StepId
    action: str
    dependencies: List[StepId] = field(default_factory=list)
    tools: List[str] = field(default_factory=list)
    completed: bool = False
    result: Optional[str] = None

    def __post_init__(self) -> None:
        self.dependencies = list(self.dependencies)
        self.tools = list(self.tools)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "PlanStep":
        return cls(
            id=int(data["id"]),
            action=str(data["action"]),
            dependencies=[int(dep) for dep in data.get("dependencies") or []],
            tools=[str(tool) for tool in data.get("tools") or []],
        )

    def has_dependencies(self) -> bool:
        return bool(self.dependencies)

    def dependencies_satisfied(self, completed_ids: Iterable[StepId]) -> bool:
        completed = set(completed_ids)
        return all(dep in completed for dep in self.dependencies)

    def missing_dependencies(self, completed_ids: Iterable[StepId]) -> List[StepId]:
        completed = set(completed_ids)
        return [dep for dep in self.dependencies if dep not in completed]

    def mark_completed(self, result: Optional[str]) -> None:
        self.completed = True
        self.result = result

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "action": self.action,
            "dependencies": list(self.dependencies),
            "tools": list(self.tools),
            "completed": self.completed,
            "result": self.result,
        }


@dataclass
class Plan:
    """A goal, its ordered steps and advisory success criteria."""

    goal: str
    steps: List[PlanStep] = field(default_factory=list)
    success_criteria: List[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        self.steps = [_coerce_plan_step(step) for step in self.steps]
        self.success_criteria = [str(item) for item in self.success_criteria]

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Plan":
        return cls(
            goal=str(data.get("goal") or ""),
            steps=[PlanStep.from_dict(step) for step in data.get("steps") or []],
            success_criteria=list(data.get("success_criteria") or []),
        )

    def get_step(self, step_id: StepId) -> Optional[PlanStep]:
        for step in self.steps:
            if step.id == step_id:
                return step
        return None

    def is_completed(self) -> bool:
        return all(step.completed for step in self.steps)

    def completed_step_ids(self) -> List[StepId]:
        return [step.id for step in self.steps if step.completed]

    def executable_steps(self) -> List[PlanStep]:
        """Steps that have not run yet and whose dependencies have completed."""

        completed = self.completed_step_ids()
        return [
            step
            for step in self.steps
            if not step.completed and step.dependencies_satisfied(completed)
        ]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "goal": self.goal,
            "steps": [step.to_dict() for step in self.steps],
            "success_criteria": list(self.success_criteria),
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict())


def _coerce_plan_step(step: Any) -> PlanStep:
    if isinstance(step, PlanStep):
        return step
    if isinstance(step, Mapping):
        return PlanStep.from_dict(step)
    raise TypeError(f"Unsupported plan step type: {step!r}")


@dataclass(frozen=True)
class Reflection:
    """Scored evaluation of an execution result against the goal."""

    satisfactory: bool
    score: float
    strengths: Sequence[str] = field(default_factory=tuple)
    weaknesses: Sequence[str] = field(default_factory=tuple)
    suggestions: Sequence[str] = field(default_factory=tuple)

    def __post_init__(self) -> None:
        if self.score < 0 or self.score > 1:
            raise ValueError("Score must be between 0 and 1")
        object.__setattr__(self, "strengths", tuple(self.strengths))
        object.__setattr__(self, "weaknesses", tuple(self.weaknesses))
        object.__setattr__(self, "suggestions", tuple(self.suggestions))

    def requires_improvement(self) -> bool:
        return not self.satisfactory

    def summary(self) -> str:
        parts: List[str] = []
        if self.weaknesses:
            parts.append("Weaknesses: " + ", ".join(self.weaknesses))
        if self.suggestions:
            parts.append("Suggestions: " + ", ".join(self.suggestions))
        return "\n".join(parts)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "satisfactory": self.satisfactory,
            "score": self.score,
            "strengths": list(self.strengths),
            "weaknesses": list(self.weaknesses),
            "suggestions": list(self.suggestions),
        }


# ---------------------------------------------------------------------------
# Execution outcomes
# ---------------------------------------------------------------------------


@dataclass
class ExecutionSucceeded:
    """Every step ran and the synthesizer produced ``result``."""

    result: str
    results: Dict[StepId, str] = field(default_factory=dict)


@dataclass
class DependencyGap:
    """A step was reached before all of its prerequisites produced a result."""

    step: PlanStep
    missing_ids: List[StepId]

    @property
    def failed_step(self) -> PlanStep:
        return self.step

    @property
    def message(self) -> str:
        missing = ", ".join(str(dep) for dep in self.missing_ids)
        return f"Cannot execute step {self.step.id}: dependencies not satisfied (missing: {missing})"


@dataclass
class StepFailure:
    """The step executor raised while running ``step``."""

    step: PlanStep
    reason: str
    cause: Optional[BaseException] = None

    @property
    def failed_step(self) -> PlanStep:
        return self.step

    @property
    def message(self) -> str:
        return f"Plan step {self.step.id} ({self.step.action}) failed: {self.reason}"


ExecutionFailure = Union[DependencyGap, StepFailure]
ExecutionOutcome = Union[ExecutionSucceeded, DependencyGap, StepFailure]


@dataclass
class AttemptRecord:
    """What happened during one execute/reflect pass."""

    index: int
    status: str
    step_count: int = 0
    score: Optional[float] = None
    failed_step: Optional[StepId] = None
    feedback: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "index": self.index,
            "status": self.status,
            "step_count": self.step_count,
        }
        if self.score is not None:
            payload["score"] = self.score
        if self.failed_step is not None:
            payload["failed_step"] = self.failed_step
        if self.feedback:
            payload["feedback"] = self.feedback
        return payload


@dataclass
class PlanningResponse:
    """Final outcome of a planning run together with the artefacts behind it."""

    result: str
    plan: Optional[Plan]
    reflection: Optional[Reflection]
    attempts: int
    success: bool
    input: Any = None
    history: List[AttemptRecord] = field(default_factory=list)

    @property
    def failed(self) -> bool:
        return not self.success

    @property
    def score(self) -> Optional[float]:
        return None if self.reflection is None else self.reflection.score

    @property
    def goal(self) -> Optional[str]:
        return None if self.plan is None else self.plan.goal

    @property
    def steps(self) -> List[PlanStep]:
        return [] if self.plan is None else list(self.plan.steps)

    @property
    def step_results(self) -> Dict[StepId, Optional[str]]:
        return {step.id: step.result for step in self.steps if step.completed}

    @property
    def strengths(self) -> List[str]:
        return [] if self.reflection is None else list(self.reflection.strengths)

    @property
    def weaknesses(self) -> List[str]:
        return [] if self.reflection is None else list(self.reflection.weaknesses)

    @property
    def suggestions(self) -> List[str]:
        return [] if self.reflection is None else list(self.reflection.suggestions)

    def metadata(self) -> Dict[str, Any]:
        return {
            "input": self.input,
            "success": self.success,
            "attempts": self.attempts,
            "goal": self.goal,
            "score": self.score,
            "step_count": len(self.steps),
            "completed_steps": len(self.step_results),
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "result": self.result,
            "success": self.success,
            "attempts": self.attempts,
            "input": self.input,
            "plan": None if self.plan is None else self.plan.to_dict(),
            "reflection": None if self.reflection is None else self.reflection.to_dict(),
            "history": [record.to_dict() for record in self.history],
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict())

    def __str__(self) -> str:
        return self.result


__all__ = [
    "AttemptRecord",
    "DependencyGap",
    "ExecutionFailure",
    "ExecutionOutcome",
    "ExecutionSucceeded",
    "Plan",
    "PlanStep",
    "PlanningResponse",
    "Reflection",
    "RunState",
    "StepFailure",
    "StepId",
]
