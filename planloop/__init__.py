"""Convenience exports for the planloop package.

To keep import-time side effects minimal we lazily proxy attributes from
``planloop.src.api``.  Importing :mod:`planloop` therefore does not pull in
pydantic, httpx or the settings layer until one of the names is used.
"""

from __future__ import annotations

import importlib
from typing import Any

# Preload the ``planloop.src`` namespace so that submodule imports work even if
# callers import :mod:`planloop` first.
importlib.import_module("planloop.src")

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


def __getattr__(name: str) -> Any:
    if name in __all__:
        from planloop.src import api as _api

        return getattr(_api, name)
    raise AttributeError(name)


def __dir__() -> list[str]:
    return sorted(set(globals().keys()) | set(__all__))
