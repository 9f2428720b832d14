"""Wire formats and run manifests.

Planner and critic output arrives as free-form LLM text.  The JSON objects
extracted from it are validated against the Pydantic models below before they
are turned into runtime dataclasses, so malformed responses surface as a
single well-defined error.  The same module formalises the run manifest that
the CLI writes after a run, making saved runs self-describing and easy to
validate with a JSON schema.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, List, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .types import AttemptRecord, Plan, PlanningResponse, PlanStep, Reflection


MANIFEST_SCHEMA_VERSION = "1.0.0"


def _none_to_list(value: Any) -> Any:
    return [] if value is None else value


class PlanStepPayload(BaseModel):
    """A step as emitted by the planner LLM."""

    model_config = ConfigDict(extra="ignore")

    id: int
    action: str
    dependencies: List[int] = Field(default_factory=list)
    tools: List[str] = Field(default_factory=list)

    @field_validator("dependencies", "tools", mode="before")
    @classmethod
    def _list_default(cls, value: Any) -> Any:
        return _none_to_list(value)

    def to_step(self) -> PlanStep:
        return PlanStep(
            id=self.id,
            action=self.action,
            dependencies=list(self.dependencies),
            tools=list(self.tools),
        )


class PlanPayload(BaseModel):
    """Planner output: ``{goal, steps, success_criteria}``."""

    model_config = ConfigDict(extra="ignore")

    goal: str = ""
    steps: List[PlanStepPayload] = Field(default_factory=list)
    success_criteria: List[str] = Field(default_factory=list)

    @field_validator("goal", mode="before")
    @classmethod
    def _goal_default(cls, value: Any) -> Any:
        return "" if value is None else value

    @field_validator("steps", "success_criteria", mode="before")
    @classmethod
    def _list_default(cls, value: Any) -> Any:
        return _none_to_list(value)

    def to_plan(self) -> Plan:
        return Plan(
            goal=self.goal,
            steps=[step.to_step() for step in self.steps],
            success_criteria=list(self.success_criteria),
        )


class ReflectionPayload(BaseModel):
    """Critic output: ``{satisfactory, score, strengths, weaknesses, suggestions}``."""

    model_config = ConfigDict(extra="ignore")

    satisfactory: bool = False
    score: float = Field(default=0.0, ge=0.0, le=1.0)
    strengths: List[str] = Field(default_factory=list)
    weaknesses: List[str] = Field(default_factory=list)
    suggestions: List[str] = Field(default_factory=list)

    @field_validator("satisfactory", mode="before")
    @classmethod
    def _satisfactory_default(cls, value: Any) -> Any:
        return False if value is None else value

    @field_validator("score", mode="before")
    @classmethod
    def _score_default(cls, value: Any) -> Any:
        return 0.0 if value is None else value

    @field_validator("strengths", "weaknesses", "suggestions", mode="before")
    @classmethod
    def _list_default(cls, value: Any) -> Any:
        return _none_to_list(value)

    def to_reflection(self) -> Reflection:
        return Reflection(
            satisfactory=self.satisfactory,
            score=self.score,
            strengths=list(self.strengths),
            weaknesses=list(self.weaknesses),
            suggestions=list(self.suggestions),
        )


class ManifestPlanStep(PlanStepPayload):
    """Step state as recorded after a run."""

    completed: bool = False
    result: Optional[str] = None


class ManifestAttempt(BaseModel):
    index: int
    status: str
    step_count: int = 0
    score: Optional[float] = None
    failed_step: Optional[int] = None
    feedback: Optional[str] = None


class ManifestPlan(BaseModel):
    goal: str = ""
    steps: List[ManifestPlanStep] = Field(default_factory=list)
    success_criteria: List[str] = Field(default_factory=list)


class RunManifest(BaseModel):
    """Versioned record of one planning run."""

    schema_version: str = Field(default=MANIFEST_SCHEMA_VERSION)
    created_at: str
    agent: str
    session_id: Optional[str] = None
    input: Any = None
    result: str
    success: bool
    attempts: int = Field(ge=0)
    plan: Optional[ManifestPlan] = None
    reflection: Optional[ReflectionPayload] = None
    history: List[ManifestAttempt] = Field(default_factory=list)
    settings: dict[str, Any] = Field(default_factory=dict)

    @field_validator("created_at")
    @classmethod
    def _validate_created_at(cls, value: str) -> str:
        try:
            parsed = datetime.fromisoformat(value)
        except ValueError as exc:
            raise ValueError("created_at must be ISO-8601 formatted") from exc
        if parsed.tzinfo is None:
            raise ValueError("created_at must include timezone information")
        return value

    @classmethod
    def build(
        cls,
        response: PlanningResponse,
        *,
        agent: str,
        session_id: Optional[str] = None,
        settings: Mapping[str, Any] | None = None,
    ) -> "RunManifest":
        """Construct a manifest from a :class:`PlanningResponse`."""

        payload = response.to_dict()
        return cls(
            created_at=datetime.now(timezone.utc).isoformat(),
            agent=agent,
            session_id=session_id,
            input=payload["input"],
            result=payload["result"],
            success=payload["success"],
            attempts=payload["attempts"],
            plan=payload["plan"],
            reflection=payload["reflection"],
            history=payload["history"],
            settings=dict(settings or {}),
        )

    def to_response(self) -> PlanningResponse:
        plan: Plan | None = None
        if self.plan is not None:
            steps = []
            for step in self.plan.steps:
                runtime_step = step.to_step()
                if step.completed:
                    runtime_step.mark_completed(step.result)
                steps.append(runtime_step)
            plan = Plan(
                goal=self.plan.goal,
                steps=steps,
                success_criteria=list(self.plan.success_criteria),
            )
        return PlanningResponse(
            result=self.result,
            plan=plan,
            reflection=None if self.reflection is None else self.reflection.to_reflection(),
            attempts=self.attempts,
            success=self.success,
            input=self.input,
            history=[
                AttemptRecord(**attempt.model_dump()) for attempt in self.history
            ],
        )

    def write(self, path: Path) -> None:
        """Persist the manifest to disk in canonical JSON form."""

        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(self.model_dump_json(indent=2), encoding="utf-8")

    @classmethod
    def write_schema(cls, path: Path) -> None:
        schema = cls.model_json_schema()
        path.write_text(json.dumps(schema, indent=2), encoding="utf-8")


SCHEMAS = {
    "plan": PlanPayload,
    "reflection": ReflectionPayload,
    "run": RunManifest,
}


def load_schema(kind: str) -> dict[str, Any]:
    """Return the JSON schema for ``plan``, ``reflection`` or ``run``."""

    try:
        model = SCHEMAS[kind]
    except KeyError as exc:
        raise ValueError(f"Unknown schema kind: {kind}") from exc
    return model.model_json_schema()


__all__ = [
    "MANIFEST_SCHEMA_VERSION",
    "ManifestAttempt",
    "ManifestPlan",
    "ManifestPlanStep",
    "PlanPayload",
    "PlanStepPayload",
    "ReflectionPayload",
    "RunManifest",
    "SCHEMAS",
    "load_schema",
]
