"""Step ordering policies and static plan checks.

Dependencies act as a gate, not as a scheduler: the policy decides the order
in which steps are attempted and the orchestrator refuses to run a step whose
prerequisites have not produced a result yet.  With :class:`AscendingIdPolicy`
a step that depends on a higher-numbered step can therefore never run; such
forward references are reported by :func:`analyse_plan` rather than being
reordered.
"""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Protocol, Sequence

from .types import Plan, PlanStep, StepId


class ExecutionPolicy(Protocol):
    """Decides the order in which plan steps are attempted."""

    name: str

    def order(self, steps: Sequence[PlanStep]) -> List[PlanStep]:  # pragma: no cover - interface
        ...


@dataclass(frozen=True)
class AscendingIdPolicy:
    """Run steps strictly in ascending id order."""

    name: str = "ascending_id"

    def order(self, steps: Sequence[PlanStep]) -> List[PlanStep]:
        return sorted(steps, key=lambda step: step.id)


@dataclass
class PlanAnalysis:
    duplicate_ids: List[StepId] = field(default_factory=list)
    unknown_dependencies: Dict[StepId, List[StepId]] = field(default_factory=dict)
    forward_references: Dict[StepId, List[StepId]] = field(default_factory=dict)
    first_blocked_step: Optional[StepId] = None

    @property
    def ok(self) -> bool:
        return not (
            self.duplicate_ids
            or self.unknown_dependencies
            or self.forward_references
            or self.first_blocked_step is not None
        )

    def issues(self) -> List[str]:
        lines: List[str] = []
        if self.duplicate_ids:
            ids = ", ".join(str(step_id) for step_id in self.duplicate_ids)
            lines.append(f"duplicate step ids: {ids}")
        for step_id, missing in self.unknown_dependencies.items():
            ids = ", ".join(str(dep) for dep in missing)
            lines.append(f"step {step_id} depends on unknown steps: {ids}")
        for step_id, ahead in self.forward_references.items():
            ids = ", ".join(str(dep) for dep in ahead)
            lines.append(f"step {step_id} depends on later steps: {ids}")
        if self.first_blocked_step is not None:
            lines.append(f"execution would stop at step {self.first_blocked_step}")
        return lines


def analyse_plan(plan: Plan, policy: ExecutionPolicy | None = None) -> PlanAnalysis:
    """Inspect ``plan`` for problems that would block execution."""

    policy = policy or AscendingIdPolicy()
    analysis = PlanAnalysis()
    counts = Counter(step.id for step in plan.steps)
    analysis.duplicate_ids = sorted(step_id for step_id, count in counts.items() if count > 1)
    known = set(counts)
    for step in plan.steps:
        unknown = [dep for dep in step.dependencies if dep not in known]
        if unknown:
            analysis.unknown_dependencies[step.id] = unknown
        ahead = [dep for dep in step.dependencies if dep in known and dep >= step.id]
        if ahead:
            analysis.forward_references[step.id] = ahead

    produced: set[StepId] = set()
    for step in policy.order(plan.steps):
        if not step.dependencies_satisfied(produced):
            analysis.first_blocked_step = step.id
            break
        produced.add(step.id)
    return analysis


__all__ = [
    "AscendingIdPolicy",
    "ExecutionPolicy",
    "PlanAnalysis",
    "analyse_plan",
]
