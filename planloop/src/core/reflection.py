"""Helpers that turn reflections and attempt history into planner feedback.

The replanning prompt only ever sees text.  A failed reflection contributes
its weaknesses and suggestions; a failed execution pass contributes the raw
failure message and nothing reflection-derived.
"""

from __future__ import annotations

from collections import Counter
from typing import Any, Dict, List, Sequence, Union

from .types import AttemptRecord, Reflection


__all__ = [
    "format_feedback",
    "summarise_attempts",
]


def format_feedback(feedback: Union[Reflection, str, None]) -> str:
    """Render replanning feedback.

    A :class:`Reflection` becomes ``"Weaknesses: ...\\nSuggestions: ..."``; any
    other value is used verbatim.
    """

    if isinstance(feedback, Reflection):
        return (
            "Weaknesses: "
            + ", ".join(feedback.weaknesses)
            + "\nSuggestions: "
            + ", ".join(feedback.suggestions)
        )
    if feedback is None:
        return ""
    return str(feedback)


def summarise_attempts(attempts: Sequence[AttemptRecord]) -> Dict[str, Any]:
    """Return a compact summary of the attempts made during a run."""

    records = list(attempts)
    summary: Dict[str, Any] = {
        "attempt_count": len(records),
        "status_counts": dict(Counter(record.status for record in records)),
    }
    if records:
        summary["final_status"] = records[-1].status
    scores = [record.score for record in records if record.score is not None]
    if scores:
        summary["best_score"] = max(scores)
        summary["scores"] = scores
    failures: List[Dict[str, Any]] = [
        {"attempt": record.index, "step_id": record.failed_step, "feedback": record.feedback}
        for record in records
        if record.status == "execution_failed"
    ]
    if failures:
        summary["execution_failures"] = failures
    return summary
