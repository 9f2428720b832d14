from __future__ import annotations

import asyncio
import json
import logging
from contextlib import asynccontextmanager, contextmanager
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, Iterator, List, Mapping, Optional, TYPE_CHECKING

from .context import AGENT_NAME_KEY, CURRENT_PLAN_KEY, AgentContext, step_result_key
from .critic import Critic
from .executors import ResultSynthesizer, StepExecutor, call_strategy
from .planner import Planner
from .reflection import format_feedback
from .scheduling import AscendingIdPolicy, ExecutionPolicy
from .telemetry import Telemetry, Tracer
from .types import (
    AttemptRecord,
    DependencyGap,
    ExecutionOutcome,
    ExecutionSucceeded,
    Plan,
    PlanningResponse,
    Reflection,
    RunState,
    StepFailure,
    StepId,
)

if TYPE_CHECKING:  # pragma: no cover
    from .executive import PlanningExecutor


logger = logging.getLogger(__name__)

DEFAULT_DESCRIPTION = (
    "Plans and executes complex multi-step tasks with self-reflection and iterative improvement"
)


class ConfigurationError(ValueError):
    """Raised when the orchestrator is given an invalid setting."""


def _validate_attempts(value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigurationError("max_replan_attempts must be an integer")
    if value < 1:
        raise ConfigurationError("max_replan_attempts must be at least 1")
    return value


def _validate_threshold(value: Any) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ConfigurationError("Satisfaction threshold must be a number")
    threshold = float(value)
    if not 0.0 <= threshold <= 1.0:
        raise ConfigurationError("Satisfaction threshold must be between 0 and 1")
    return threshold


_VALIDATORS = {
    "max_replan_attempts": _validate_attempts,
    "satisfaction_threshold": _validate_threshold,
}


@dataclass
class Orchestrator:
    """Plan, execute, reflect and replan until the result is good enough.

    Every assignment to ``max_replan_attempts`` or ``satisfaction_threshold``
    is validated; a rejected value raises :class:`ConfigurationError` and
    leaves the previous setting in place.
    """

    planner: Planner
    critic: Critic
    step_executor: StepExecutor
    synthesizer: ResultSynthesizer
    name: str = "planning_agent"
    description: str = DEFAULT_DESCRIPTION
    telemetry: Telemetry | None = None
    tracer: Tracer | None = None
    policy: ExecutionPolicy = field(default_factory=AscendingIdPolicy)
    max_replan_attempts: int = 3
    satisfaction_threshold: float = 0.8

    _state: RunState = field(init=False, default=RunState.PLANNING, repr=False)
    _attempt_log: List[AttemptRecord] = field(init=False, default_factory=list, repr=False)
    _run_lock: Optional[asyncio.Lock] = field(init=False, default=None, repr=False, compare=False)
    _lock_loop: Any = field(init=False, default=None, repr=False, compare=False)
    _lock_owner: Any = field(init=False, default=None, repr=False, compare=False)

    def __setattr__(self, name: str, value: Any) -> None:
        validator = _VALIDATORS.get(name)
        if validator is not None:
            value = validator(value)
        object.__setattr__(self, name, value)

    def __post_init__(self) -> None:
        if self.tracer is None:
            self.tracer = Tracer(telemetry=self.telemetry)

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    @property
    def planner_instructions(self) -> str:
        return self.planner.instructions

    @planner_instructions.setter
    def planner_instructions(self, value: str) -> None:
        self.planner.instructions = value

    @property
    def reflection_instructions(self) -> str:
        return self.critic.instructions

    @reflection_instructions.setter
    def reflection_instructions(self, value: str) -> None:
        self.critic.instructions = value

    def configure(
        self,
        *,
        max_replan_attempts: Optional[int] = None,
        satisfaction_threshold: Optional[float] = None,
        planner_instructions: Optional[str] = None,
        reflection_instructions: Optional[str] = None,
    ) -> "Orchestrator":
        """Apply several settings at once.

        All values are validated before any of them is applied.
        """

        attempts = None if max_replan_attempts is None else _validate_attempts(max_replan_attempts)
        threshold = (
            None if satisfaction_threshold is None else _validate_threshold(satisfaction_threshold)
        )
        if attempts is not None:
            self.max_replan_attempts = attempts
        if threshold is not None:
            self.satisfaction_threshold = threshold
        if planner_instructions is not None:
            self.planner_instructions = planner_instructions
        if reflection_instructions is not None:
            self.reflection_instructions = reflection_instructions
        return self

    def settings(self) -> Dict[str, Any]:
        return {
            "max_replan_attempts": self.max_replan_attempts,
            "satisfaction_threshold": self.satisfaction_threshold,
            "policy": self.policy.name,
        }

    @property
    def state(self) -> RunState:
        return self._state

    @property
    def attempt_log(self) -> List[AttemptRecord]:
        return list(self._attempt_log)

    # ------------------------------------------------------------------
    # Observability helpers
    # ------------------------------------------------------------------

    def _emit(self, event: str, **payload: Any) -> None:
        if self.telemetry is not None:
            self.telemetry.emit(event, **payload)

    def _log(self, level: str, message: str, **fields: Any) -> None:
        fields.setdefault("agent", self.name)
        if self.telemetry is not None:
            self.telemetry.log(level, message, **fields)
        else:
            logger.log(getattr(logging, level.upper(), logging.INFO), "%s %s", message, fields)

    @contextmanager
    def _span(
        self,
        type: str,
        name: str,
        *,
        input: Any = None,
        metadata: Mapping[str, Any] | None = None,
    ) -> Iterator[Dict[str, Any]]:
        assert self.tracer is not None
        span_id = self.tracer.start_span(type, name, input=input, metadata=dict(metadata or {}))
        outcome: Dict[str, Any] = {}
        try:
            yield outcome
        except BaseException as exc:
            self.tracer.fail_span(span_id, exc)
            raise
        self.tracer.end_span(
            span_id,
            output=outcome.get("output"),
            status=outcome.get("status", "success"),
        )

    # ------------------------------------------------------------------
    # Control loop
    # ------------------------------------------------------------------

    def _is_satisfied(self, reflection: Reflection) -> bool:
        return reflection.satisfactory or reflection.score >= self.satisfaction_threshold

    def _publish_plan(self, context: Any, plan: Plan) -> None:
        context.set(CURRENT_PLAN_KEY, plan)

    async def run(self, input: Any, context: Any = None) -> str:
        """Run the loop for ``input`` and return the final text result."""

        response = await self.execute(input, context)
        return response.result

    @asynccontextmanager
    async def exclusive_run(self) -> AsyncIterator[None]:
        """Hold this orchestrator for the duration of one run.

        Settings, tracer and attempt log belong to the instance, so runs on
        the same orchestrator wait for each other.  A run nested inside a run
        of the same task would wait forever and raises ``RuntimeError``
        instead.
        """

        loop = asyncio.get_running_loop()
        if self._run_lock is None or self._lock_loop is not loop:
            self._run_lock = asyncio.Lock()
            self._lock_loop = loop
        task = asyncio.current_task()
        if self._run_lock.locked() and self._lock_owner is task:
            raise RuntimeError(
                f"{self.name} is already running in this task; "
                "use a separate orchestrator for nested runs"
            )
        async with self._run_lock:
            self._lock_owner = task
            try:
                yield
            finally:
                self._lock_owner = None

    async def execute(self, input: Any, context: Any = None) -> PlanningResponse:
        """Run the loop for ``input`` and return the full :class:`PlanningResponse`.

        Malformed planner or critic output propagates after the trace has
        been marked failed.  Running out of attempts is not an error: the last
        synthesized result, or a fallback message, is returned with
        ``success=False``.
        """

        async with self.exclusive_run():
            return await self._execute(input, context)

    async def _execute(self, input: Any, context: Any) -> PlanningResponse:
        if context is None:
            context = AgentContext(user_input=input)
        elif getattr(context, "user_input", input) is None:
            context.user_input = input
        assert self.tracer is not None

        max_attempts = self.max_replan_attempts
        session_id = getattr(context, "session_id", None)
        context.set(AGENT_NAME_KEY, self.name)
        self._attempt_log = []
        self._state = RunState.PLANNING
        self._emit("orchestrator.run_started", agent=self.name, session_id=session_id)
        self.tracer.start_trace(context, self.name)

        plan: Optional[Plan] = None
        result: Optional[str] = None
        reflection: Optional[Reflection] = None

        try:
            plan = await self.generate_plan(input, context)
            self._publish_plan(context, plan)
            self._log(
                "info",
                "Plan generated",
                goal=plan.goal,
                step_count=len(plan.steps),
                session_id=session_id,
            )

            for attempt in range(1, max_attempts + 1):
                self._state = RunState.EXECUTING
                outcome = await self.execute_plan(plan, context)

                if isinstance(outcome, ExecutionSucceeded):
                    result = outcome.result
                    self._state = RunState.REFLECTING
                    reflection = await self.reflect(input, result, plan, context)
                    self._log(
                        "info",
                        "Reflection completed",
                        attempt=attempt,
                        score=reflection.score,
                        satisfactory=reflection.satisfactory,
                        session_id=session_id,
                    )

                    if self._is_satisfied(reflection):
                        self._attempt_log.append(
                            AttemptRecord(
                                index=attempt,
                                status="satisfied",
                                step_count=len(plan.steps),
                                score=reflection.score,
                            )
                        )
                        self._state = RunState.DONE
                        self.tracer.end_trace(
                            output={"response": result, "attempts": attempt},
                            status="success",
                        )
                        self._emit(
                            "orchestrator.run_completed",
                            agent=self.name,
                            attempts=attempt,
                            success=True,
                        )
                        return PlanningResponse(
                            result=result,
                            plan=plan,
                            reflection=reflection,
                            attempts=attempt,
                            success=True,
                            input=input,
                            history=list(self._attempt_log),
                        )

                    self._attempt_log.append(
                        AttemptRecord(
                            index=attempt,
                            status="needs_replan",
                            step_count=len(plan.steps),
                            score=reflection.score,
                            feedback=format_feedback(reflection),
                        )
                    )
                    self._state = RunState.REPLANNING
                    plan = await self.replan(input, result, reflection, context)
                    self._publish_plan(context, plan)
                    self._log(
                        "info",
                        "Replanned",
                        attempt=attempt,
                        new_goal=plan.goal,
                        new_step_count=len(plan.steps),
                        session_id=session_id,
                    )
                    continue

                self._attempt_log.append(
                    AttemptRecord(
                        index=attempt,
                        status="execution_failed",
                        step_count=len(plan.steps),
                        failed_step=outcome.failed_step.id,
                        feedback=outcome.message,
                    )
                )
                self._log(
                    "warning",
                    "Plan execution failed",
                    attempt=attempt,
                    error=outcome.message,
                    failed_step=outcome.failed_step.id,
                    session_id=session_id,
                )
                self._state = RunState.REPLANNING
                plan = await self.replan(input, None, outcome.message, context)
                self._publish_plan(context, plan)

            final_result = (
                result
                if result is not None
                else f"Unable to complete task after {max_attempts} attempts."
            )
            self._state = RunState.EXHAUSTED
            self.tracer.end_trace(
                output={
                    "response": final_result,
                    "attempts": max_attempts,
                    "max_attempts_reached": True,
                },
                status="success",
            )
            self._emit(
                "orchestrator.run_completed",
                agent=self.name,
                attempts=max_attempts,
                success=False,
            )
            return PlanningResponse(
                result=final_result,
                plan=plan,
                reflection=reflection,
                attempts=max_attempts,
                success=False,
                input=input,
                history=list(self._attempt_log),
            )
        except BaseException as exc:
            self.tracer.fail_trace(exc)
            self._emit("orchestrator.run_failed", agent=self.name, error=str(exc))
            raise

    def run_sync(self, input: Any, context: Any = None) -> str:
        """Synchronous wrapper around :meth:`run`."""

        import asyncio

        try:
            asyncio.get_running_loop()
        except RuntimeError:
            return asyncio.run(self.run(input, context))
        raise RuntimeError(
            "Orchestrator.run_sync cannot be invoked inside a running event loop; "
            "await run instead"
        )

    # ------------------------------------------------------------------
    # Phases
    # ------------------------------------------------------------------

    async def generate_plan(self, input: Any, context: Any) -> Plan:
        with self._span("planning", "generate_plan", input={"input": input}) as span:
            plan = await self.planner.generate(input, context)
            span["output"] = {"goal": plan.goal, "step_count": len(plan.steps)}
        return plan

    async def execute_plan(self, plan: Plan, context: Any) -> ExecutionOutcome:
        """Run every step of ``plan`` in policy order.

        Each call starts from an empty results map, so steps of a previous
        pass are never reused.  The first unmet dependency or executor error
        ends the pass and is returned, not raised.
        """

        results: Dict[StepId, str] = {}
        with self._span(
            "execution",
            "execute_plan",
            input={"goal": plan.goal},
            metadata={"step_count": len(plan.steps), "policy": self.policy.name},
        ) as span:
            for step in self.policy.order(plan.steps):
                missing = step.missing_dependencies(results.keys())
                if missing:
                    gap = DependencyGap(step=step, missing_ids=missing)
                    span.update(status="error", output={"error": gap.message})
                    return gap

                with self._span(
                    "plan_step",
                    f"step_{step.id}",
                    input={"action": step.action},
                    metadata={"dependencies": list(step.dependencies), "tools": list(step.tools)},
                ) as step_span:
                    try:
                        step_result = await call_strategy(
                            self.step_executor, step, dict(results), context
                        )
                    except Exception as exc:
                        failure = StepFailure(step=step, reason=str(exc), cause=exc)
                        step_span.update(status="error", output={"error": failure.reason})
                        span.update(status="error", output={"error": failure.message})
                        return failure
                    step_span["output"] = {"result": step_result}

                results[step.id] = step_result
                step.mark_completed(step_result)
                context.set(step_result_key(step.id), step_result)

            synthesized = await call_strategy(self.synthesizer, plan, dict(results), context)
            span["output"] = {"completed_steps": len(results)}
        return ExecutionSucceeded(result=synthesized, results=results)

    async def reflect(self, input: Any, result: str, plan: Plan, context: Any) -> Reflection:
        with self._span("reflection", "reflect", input={"result": result}) as span:
            reflection = await self.critic.reflect(input, result, plan, context)
            span["output"] = reflection.to_dict()
        return reflection

    async def replan(
        self,
        input: Any,
        previous_result: Optional[str],
        feedback: Reflection | str | None,
        context: Any,
    ) -> Plan:
        with self._span(
            "replanning",
            "replan",
            input={"previous_result": previous_result, "feedback": format_feedback(feedback)},
        ) as span:
            plan = await self.planner.replan(input, previous_result, feedback, context)
            span["output"] = {"goal": plan.goal, "step_count": len(plan.steps)}
        return plan

    # ------------------------------------------------------------------
    # Delegation surface
    # ------------------------------------------------------------------

    def plan(self, input: Any) -> "PlanningExecutor":
        """Return a fluent :class:`PlanningExecutor` for ``input``."""

        from .executive import PlanningExecutor

        return PlanningExecutor(self, input)

    def to_tool_definition(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "parameters": {
                "type": "object",
                "properties": {
                    "task": {
                        "type": "string",
                        "description": "The task or goal to plan and execute",
                    },
                    "max_attempts": {
                        "type": "integer",
                        "description": "Maximum planning attempts (default: 3)",
                    },
                    "threshold": {
                        "type": "number",
                        "description": "Satisfaction threshold 0-1 (default: 0.8)",
                    },
                },
                "required": ["task"],
            },
        }

    async def execute_from_tool_call(self, arguments: Mapping[str, Any], context: Any = None) -> str:
        """Run as a delegated sub-agent and return a JSON summary.

        Failures, including invalid arguments, are reported in the payload
        instead of being raised to the calling agent.
        """

        try:
            executor = self.plan(arguments["task"])
            if arguments.get("max_attempts") is not None:
                executor.max_attempts(int(arguments["max_attempts"]))
            if arguments.get("threshold") is not None:
                executor.threshold(float(arguments["threshold"]))
            response = await executor.achieve(context)
        except Exception as exc:
            logger.warning("Delegated planning run failed: %s", exc)
            return json.dumps({"success": False, "error": f"Planning failed: {exc}"})
        return json.dumps(
            {
                "success": response.success,
                "result": response.result,
                "attempts": response.attempts,
                "goal": response.goal,
                "score": response.score,
            }
        )


__all__ = [
    "ConfigurationError",
    "DEFAULT_DESCRIPTION",
    "Orchestrator",
]
