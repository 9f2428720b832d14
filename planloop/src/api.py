"""High level entrypoints that compose the planning subsystems."""
from __future__ import annotations

from planloop.src.core.context import AgentContext
from planloop.src.core.critic import Critic, CriticError
from planloop.src.core.executive import PlanningExecutor, build_orchestrator, build_text_generator
from planloop.src.core.executors import LlmResultSynthesizer, LlmStepExecutor
from planloop.src.core.llm import HttpTextGenerator, LlmClientError, extract_json
from planloop.src.core.orchestrator import ConfigurationError, Orchestrator
from planloop.src.core.planner import Planner, PlannerError
from planloop.src.core.scheduling import AscendingIdPolicy, analyse_plan
from planloop.src.core.settings import PlanningSettings, load_settings
from planloop.src.core.telemetry import Telemetry, Tracer
from planloop.src.core.types import (
    DependencyGap,
    ExecutionSucceeded,
    Plan,
    PlanningResponse,
    PlanStep,
    Reflection,
    RunState,
    StepFailure,
)

__all__ = (
    "AgentContext",
    "AscendingIdPolicy",
    "ConfigurationError",
    "Critic",
    "CriticError",
    "DependencyGap",
    "ExecutionSucceeded",
    "HttpTextGenerator",
    "LlmClientError",
    "LlmResultSynthesizer",
    "LlmStepExecutor",
    "Orchestrator",
    "Plan",
    "PlanStep",
    "Planner",
    "PlannerError",
    "PlanningExecutor",
    "PlanningResponse",
    "PlanningSettings",
    "Reflection",
    "RunState",
    "StepFailure",
    "Telemetry",
    "Tracer",
    "analyse_plan",
    "build_orchestrator",
    "build_text_generator",
    "extract_json",
    "load_settings",
)
