"""Structured telemetry and run tracing used by the planning loop."""

from __future__ import annotations

import json
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from threading import Lock
from time import perf_counter
from typing import Any, Dict, Iterable, List, MutableMapping, Optional, Protocol


logger = logging.getLogger(__name__)

_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


class TelemetrySink(Protocol):
    """A destination for telemetry events."""

    def write(self, event: Dict[str, Any]) -> None:
        """Persist or forward a telemetry event."""


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class Telemetry:
    """Dispatcher that fan-outs events to the configured sinks."""

    sinks: Iterable[TelemetrySink] = field(default_factory=tuple)
    context: MutableMapping[str, Any] = field(default_factory=dict)

    def emit(self, event: str, **payload: Any) -> None:
        if not self.sinks:
            return
        base: Dict[str, Any] = {"event": event, "time": _now_iso()}
        if self.context:
            base.update(self.context)
        base.update(payload)
        for sink in self.sinks:
            try:
                sink.write(dict(base))
            except Exception:  # pragma: no cover - telemetry failures must not break runs
                logger.debug("Telemetry sink %r rejected event %s", sink, event, exc_info=True)
                continue

    def log(self, level: str, message: str, **fields: Any) -> None:
        """Write a log line and mirror it as a ``log`` event."""

        logger.log(_LEVELS.get(level.lower(), logging.INFO), "%s %s", message, fields)
        self.emit("log", level=level.lower(), message=message, fields=fields)


@dataclass
class InMemorySink:
    """Sink that keeps telemetry in-memory for inspection in tests."""

    events: List[Dict[str, Any]] = field(default_factory=list)

    def write(self, event: Dict[str, Any]) -> None:
        self.events.append(dict(event))

    def named(self, event: str) -> List[Dict[str, Any]]:
        return [entry for entry in self.events if entry.get("event") == event]


@dataclass
class JsonLinesSink:
    """Append-only JSONL sink for telemetry events."""

    path: Path
    _lock: Lock = field(default_factory=Lock, init=False)

    def write(self, event: Dict[str, Any]) -> None:
        line = json.dumps(event, sort_keys=True, default=str)
        with self._lock:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with self.path.open("a", encoding="utf-8") as fh:
                fh.write(line + "\n")


@dataclass
class TraceSpan:
    """One timed phase of a run."""

    span_id: str
    trace_id: str
    parent_span_id: Optional[str]
    type: str
    name: str
    session_id: Optional[str] = None
    input: Any = None
    output: Any = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    status: str = "running"
    error_message: Optional[str] = None
    duration_ms: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "span_id": self.span_id,
            "trace_id": self.trace_id,
            "parent_span_id": self.parent_span_id,
            "type": self.type,
            "name": self.name,
            "session_id": self.session_id,
            "input": self.input,
            "output": self.output,
            "metadata": dict(self.metadata),
            "status": self.status,
            "error_message": self.error_message,
            "duration_ms": self.duration_ms,
        }


@dataclass
class Tracer:
    """Hierarchical tracer for planning runs.

    Spans are parented through a stack: a span started while another is open
    becomes its child.  Finished spans stay in :attr:`spans` and are mirrored
    to :class:`Telemetry` as ``trace.span_started`` / ``trace.span_ended``
    events.  A disabled tracer accepts every call and records nothing.
    """

    telemetry: Telemetry | None = None
    enabled: bool = True

    spans: List[TraceSpan] = field(init=False, default_factory=list)
    _trace_id: Optional[str] = field(init=False, default=None, repr=False)
    _session_id: Optional[str] = field(init=False, default=None, repr=False)
    _stack: List[str] = field(init=False, default_factory=list, repr=False)
    _started: Dict[str, float] = field(init=False, default_factory=dict, repr=False)
    _by_id: Dict[str, TraceSpan] = field(init=False, default_factory=dict, repr=False)

    @property
    def current_trace_id(self) -> Optional[str]:
        return self._trace_id

    @property
    def current_span_id(self) -> Optional[str]:
        return self._stack[-1] if self._stack else None

    def _emit(self, event: str, **payload: Any) -> None:
        if self.telemetry is not None:
            self.telemetry.emit(event, **payload)

    def start_trace(self, context: Any, agent_name: str) -> str:
        if not self.enabled:
            return ""
        self._trace_id = uuid.uuid4().hex
        self._session_id = getattr(context, "session_id", None)
        self._stack = []
        self._started = {}
        state = context.all_state() if hasattr(context, "all_state") else {}
        self.start_span(
            "agent_run",
            agent_name,
            input={"user_input": getattr(context, "user_input", None)},
            metadata={
                "session_id": self._session_id,
                "initial_state_keys": sorted(state.keys()),
            },
        )
        return self._trace_id

    def start_span(
        self,
        type: str,
        name: str,
        input: Any = None,
        metadata: Dict[str, Any] | None = None,
    ) -> str:
        if not self.enabled or self._trace_id is None:
            return ""
        span = TraceSpan(
            span_id=uuid.uuid4().hex,
            trace_id=self._trace_id,
            parent_span_id=self.current_span_id,
            type=type,
            name=name,
            session_id=self._session_id,
            input=input,
            metadata=dict(metadata or {}),
        )
        self.spans.append(span)
        self._by_id[span.span_id] = span
        self._started[span.span_id] = perf_counter()
        self._stack.append(span.span_id)
        self._emit(
            "trace.span_started",
            trace_id=span.trace_id,
            span_id=span.span_id,
            parent_span_id=span.parent_span_id,
            type=type,
            name=name,
            session_id=span.session_id,
        )
        return span.span_id

    def _close(self, span_id: str, *, status: str, output: Any = None, error: Optional[str] = None) -> None:
        span = self._by_id.get(span_id)
        if span is None or span_id not in self._started:
            return
        started = self._started.pop(span_id)
        if span_id in self._stack:
            self._stack.remove(span_id)
        span.duration_ms = round((perf_counter() - started) * 1000, 3)
        span.status = status
        span.output = output
        span.error_message = error
        self._emit(
            "trace.span_ended",
            trace_id=span.trace_id,
            span_id=span.span_id,
            parent_span_id=span.parent_span_id,
            type=span.type,
            name=span.name,
            status=status,
            output=output,
            error_message=error,
            duration_ms=span.duration_ms,
        )

    def end_span(self, span_id: str, output: Any = None, status: str = "success") -> None:
        if not self.enabled or not span_id:
            return
        self._close(span_id, status=status, output=output)

    def fail_span(self, span_id: str, exc: BaseException) -> None:
        if not self.enabled or not span_id:
            return
        self._close(span_id, status="error", error=str(exc))

    def end_trace(self, output: Any = None, status: str = "success") -> None:
        if not self.enabled or self._trace_id is None:
            return
        self._end_root(output=output, status=status)

    def _end_root(self, *, output: Any, status: str, error: Optional[str] = None) -> None:
        root = next(
            (
                span
                for span in self.spans
                if span.trace_id == self._trace_id and span.parent_span_id is None
            ),
            None,
        )
        if root is not None:
            self._close(root.span_id, status=status, output=output, error=error)
        self._trace_id = None
        self._session_id = None
        self._stack = []
        self._started = {}

    def fail_trace(self, exc: BaseException) -> None:
        if not self.enabled or self._trace_id is None:
            return
        while len(self._stack) > 1:
            self.fail_span(self._stack[-1], exc)
        self._end_root(output={"error": str(exc)}, status="error", error=str(exc))

    def spans_for_trace(self, trace_id: str) -> List[TraceSpan]:
        return [span for span in self.spans if span.trace_id == trace_id]


__all__ = [
    "InMemorySink",
    "JsonLinesSink",
    "Telemetry",
    "TelemetrySink",
    "TraceSpan",
    "Tracer",
]
