from __future__ import annotations

"""Fluent entry points for driving the planning loop.

:class:`PlanningExecutor` collects per-run overrides (attempt budget, model,
threshold, prompt templates, session and initial state) and applies them to an
:class:`~planloop.src.core.orchestrator.Orchestrator` only for the duration of
one run.  :func:`build_orchestrator` wires a ready-to-use orchestrator from a
text generator and :class:`~planloop.src.core.settings.PlanningSettings`, which
keeps the CLI and tests free of assembly code.
"""

import inspect
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional

from .context import AgentContext
from .critic import Critic
from .executors import LlmResultSynthesizer, LlmStepExecutor, ResultSynthesizer, StepExecutor
from .llm import HttpTextGenerator, TextGenerator
from .orchestrator import Orchestrator
from .planner import Planner
from .scheduling import ExecutionPolicy
from .settings import PlanningSettings, load_settings
from .telemetry import Telemetry, Tracer
from .types import PlanningResponse


@dataclass
class PlanningExecutor:
    """Builder that runs one goal through an orchestrator.

    Parameters
    ----------
    orchestrator:
        The orchestrator that performs the run.  Its settings are restored
        once the run finishes, whether or not it succeeded.
    input:
        The goal handed to the planner.
    """

    orchestrator: Orchestrator
    input: Any
    _max_attempts: Optional[int] = field(init=False, default=None, repr=False)
    _threshold: Optional[float] = field(init=False, default=None, repr=False)
    _planner_instructions: Optional[str] = field(init=False, default=None, repr=False)
    _reflection_instructions: Optional[str] = field(init=False, default=None, repr=False)
    _model: Optional[str] = field(init=False, default=None, repr=False)
    _session_id: Optional[str] = field(init=False, default=None, repr=False)
    _state: Dict[str, Any] = field(init=False, default_factory=dict, repr=False)
    _then: Optional[Callable[[PlanningResponse], Any]] = field(init=False, default=None, repr=False)

    def max_attempts(self, attempts: int) -> "PlanningExecutor":
        self._max_attempts = attempts
        return self

    def threshold(self, threshold: float) -> "PlanningExecutor":
        self._threshold = threshold
        return self

    def with_planner_instructions(self, instructions: str) -> "PlanningExecutor":
        self._planner_instructions = instructions
        return self

    def with_reflection_instructions(self, instructions: str) -> "PlanningExecutor":
        self._reflection_instructions = instructions
        return self

    def using(self, model: str) -> "PlanningExecutor":
        """Use ``model`` for this run on every HTTP text generator the orchestrator holds."""

        self._model = model
        return self

    def with_session(self, session_id: str) -> "PlanningExecutor":
        self._session_id = session_id
        return self

    def with_context(self, values: Mapping[str, Any]) -> "PlanningExecutor":
        self._state.update(values)
        return self

    def then(self, callback: Callable[[PlanningResponse], Any]) -> "PlanningExecutor":
        self._then = callback
        return self

    def high_accuracy(self) -> "PlanningExecutor":
        return self.max_attempts(5).threshold(0.9)

    def fast(self) -> "PlanningExecutor":
        return self.max_attempts(1).threshold(0.6)

    def balanced(self) -> "PlanningExecutor":
        return self.max_attempts(3).threshold(0.8)

    def _build_context(self, context: Optional[AgentContext]) -> AgentContext:
        if context is None:
            return AgentContext(
                session_id=self._session_id,
                user_input=self.input,
                state=self._state,
            )
        if self._state:
            context.load_state(self._state)
        return context

    async def achieve(self, context: Optional[AgentContext] = None) -> PlanningResponse:
        """Run the goal with the collected overrides applied."""

        orchestrator = self.orchestrator
        async with orchestrator.exclusive_run():
            previous = {
                "max_replan_attempts": orchestrator.max_replan_attempts,
                "satisfaction_threshold": orchestrator.satisfaction_threshold,
                "planner_instructions": orchestrator.planner_instructions,
                "reflection_instructions": orchestrator.reflection_instructions,
            }
            orchestrator.configure(
                max_replan_attempts=self._max_attempts,
                satisfaction_threshold=self._threshold,
                planner_instructions=self._planner_instructions,
                reflection_instructions=self._reflection_instructions,
            )
            generators = _http_generators(orchestrator) if self._model is not None else []
            previous_models = [generator.model for generator in generators]
            for generator in generators:
                generator.model = self._model
            try:
                response = await orchestrator._execute(self.input, self._build_context(context))
            finally:
                orchestrator.configure(**previous)
                for generator, model in zip(generators, previous_models):
                    generator.model = model

        if self._then is not None:
            outcome = self._then(response)
            if inspect.isawaitable(outcome):
                await outcome
        return response

    def go(self, context: Optional[AgentContext] = None) -> PlanningResponse:
        """Synchronous wrapper around :meth:`achieve`."""

        import asyncio

        try:
            asyncio.get_running_loop()
        except RuntimeError:
            return asyncio.run(self.achieve(context))
        raise RuntimeError(
            "PlanningExecutor.go cannot be invoked inside a running event loop; "
            "await achieve instead"
        )


def _http_generators(orchestrator: Orchestrator) -> List[HttpTextGenerator]:
    candidates = [
        getattr(orchestrator.planner, "llm", None),
        getattr(orchestrator.critic, "llm", None),
        getattr(orchestrator.step_executor, "llm", None),
        getattr(orchestrator.synthesizer, "llm", None),
    ]
    generators: List[HttpTextGenerator] = []
    for candidate in candidates:
        if isinstance(candidate, HttpTextGenerator) and all(candidate is not seen for seen in generators):
            generators.append(candidate)
    return generators


def build_text_generator(settings: PlanningSettings | None = None) -> HttpTextGenerator:
    settings = settings or load_settings()
    return HttpTextGenerator(
        base_url=settings.base_url,
        model=settings.model,
        api_key=settings.api_key,
        timeout=settings.timeout,
    )


def build_orchestrator(
    llm: TextGenerator,
    settings: PlanningSettings | None = None,
    *,
    name: str = "planning_agent",
    telemetry: Telemetry | None = None,
    step_executor: StepExecutor | None = None,
    synthesizer: ResultSynthesizer | None = None,
    policy: ExecutionPolicy | None = None,
) -> Orchestrator:
    """Assemble an :class:`Orchestrator` that uses ``llm`` for every phase."""

    settings = settings or load_settings()
    extra: Dict[str, Any] = {}
    if policy is not None:
        extra["policy"] = policy
    return Orchestrator(
        planner=Planner(llm),
        critic=Critic(llm),
        step_executor=step_executor or LlmStepExecutor(llm),
        synthesizer=synthesizer or LlmResultSynthesizer(llm),
        name=name,
        telemetry=telemetry,
        tracer=Tracer(telemetry=telemetry, enabled=settings.tracing_enabled),
        max_replan_attempts=settings.max_attempts,
        satisfaction_threshold=settings.threshold,
        **extra,
    )


__all__ = [
    "PlanningExecutor",
    "build_orchestrator",
    "build_text_generator",
]
