"""Session-scoped state shared between the orchestrator and its host."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional


AGENT_NAME_KEY = "agent_name"
CURRENT_PLAN_KEY = "current_plan"


def step_result_key(step_id: Any) -> str:
    return f"step_{step_id}_result"


@dataclass
class AgentContext:
    """Mutable key/value state plus message history for one session.

    The orchestrator writes ``agent_name``, ``current_plan`` and
    ``step_<id>_result`` here so that the host, or tools nested inside a step,
    can observe a run while it is in progress.
    """

    session_id: Optional[str] = None
    user_input: Any = None
    state: Dict[str, Any] = field(default_factory=dict)
    messages: List[Dict[str, Any]] = field(default_factory=list)

    def __post_init__(self) -> None:
        if self.session_id is None:
            self.session_id = uuid.uuid4().hex
        self.state = dict(self.state)
        self.messages = [dict(message) for message in self.messages]

    def get(self, key: str, default: Any = None) -> Any:
        return self.state.get(key, default)

    def set(self, key: str, value: Any) -> None:
        self.state[key] = value

    def all_state(self) -> Dict[str, Any]:
        return dict(self.state)

    def load_state(self, values: Mapping[str, Any]) -> None:
        self.state.update(values)

    def add_message(self, message: Mapping[str, Any]) -> None:
        payload = dict(message)
        payload.setdefault("role", "user")
        payload.setdefault("content", "")
        self.messages.append(payload)

    @property
    def history(self) -> List[Dict[str, Any]]:
        return list(self.messages)


__all__ = [
    "AGENT_NAME_KEY",
    "CURRENT_PLAN_KEY",
    "AgentContext",
    "step_result_key",
]
