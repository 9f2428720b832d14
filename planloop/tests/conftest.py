from __future__ import annotations

import json
import sys
from pathlib import Path
from typing import Any, Dict, List, Sequence, Tuple

import pytest

# Ensure the project root is importable when running tests from a checkout
PROJECT_ROOT = Path(__file__).resolve().parents[2]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))


LOGIN_PLAN: Dict[str, Any] = {
    "goal": "Build a login form",
    "steps": [
        {"id": 1, "action": "Design the form fields", "dependencies": [], "tools": []},
        {"id": 2, "action": "Implement validation", "dependencies": [1], "tools": ["editor"]},
    ],
    "success_criteria": ["Form validates input"],
}


class ScriptedLLM:
    """Text generator that answers planner and critic prompts from queues.

    The last queued answer is repeated once a queue runs dry.  Every call is
    recorded so tests can inspect the prompts that were sent.
    """

    def __init__(self, plans: Sequence[Any], reflections: Sequence[Any] = ()) -> None:
        self.plans = list(plans)
        self.reflections = list(reflections)
        self.calls: List[Tuple[str, str]] = []

    @staticmethod
    def _next(queue: List[Any]) -> Any:
        return queue.pop(0) if len(queue) > 1 else queue[0]

    def __call__(self, system_prompt: str, user_prompt: str) -> str:
        self.calls.append((system_prompt, user_prompt))
        if user_prompt.startswith("Create a plan for:") or "Create an improved plan" in user_prompt:
            payload = self._next(self.plans)
        elif "Evaluate the result" in user_prompt:
            payload = self._next(self.reflections)
        else:
            return f"handled: {user_prompt.splitlines()[0]}"
        if isinstance(payload, str):
            return payload
        return "Sure, here is the JSON:\n" + json.dumps(payload) + "\nLet me know if you need more."

    def prompts(self, marker: str) -> List[str]:
        return [user for _, user in self.calls if marker in user]

    @property
    def replan_prompts(self) -> List[str]:
        return self.prompts("Create an improved plan")

    @property
    def plan_prompts(self) -> List[str]:
        return self.prompts("Create a plan for:")


def reflection(score: float, satisfactory: bool = False, **extra: Any) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "satisfactory": satisfactory,
        "score": score,
        "strengths": [],
        "weaknesses": [],
        "suggestions": [],
    }
    payload.update(extra)
    return payload


@pytest.fixture
def login_plan() -> Dict[str, Any]:
    return json.loads(json.dumps(LOGIN_PLAN))


@pytest.fixture
def scripted_llm():
    return ScriptedLLM


@pytest.fixture
def make_reflection():
    return reflection
