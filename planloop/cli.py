from __future__ import annotations

"""Developer-facing CLI for running and inspecting planning loops."""

import asyncio
import json
import logging
from collections import Counter, defaultdict
from pathlib import Path
from typing import Any, Dict, List, Optional

import typer
from jsonschema import Draft202012Validator
from pydantic import ValidationError

from planloop.src.core.context import AgentContext
from planloop.src.core.critic import CriticError
from planloop.src.core.executive import build_orchestrator, build_text_generator
from planloop.src.core.llm import LlmClientError
from planloop.src.core.manifest import SCHEMAS, PlanPayload, RunManifest, load_schema
from planloop.src.core.planner import PlannerError
from planloop.src.core.reflection import summarise_attempts
from planloop.src.core.scheduling import analyse_plan
from planloop.src.core.settings import PlanningSettings
from planloop.src.core.telemetry import JsonLinesSink, Telemetry


app = typer.Typer(help="Run plan-execute-reflect loops and inspect their artefacts.")


@app.callback()
def _configure(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log orchestrator progress to stderr."),
) -> None:
    logging.basicConfig(
        level=logging.INFO if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _fail(message: str, exc: Optional[BaseException] = None) -> None:
    typer.secho(message, err=True, fg=typer.colors.RED)
    if exc is not None:
        raise typer.Exit(code=1) from exc
    raise typer.Exit(code=1)


def _load_json_file(path: Path) -> Any:
    try:
        content = path.read_text(encoding="utf-8")
    except OSError as exc:
        _fail(f"Failed to read {path}: {exc}", exc)
    try:
        return json.loads(content)
    except json.JSONDecodeError as exc:
        _fail(f"Invalid JSON in {path}: {exc}", exc)


def _load_manifest(path: Path) -> RunManifest:
    """Load and validate a run record from ``path``."""

    payload = _load_json_file(path)
    try:
        return RunManifest.model_validate(payload)
    except ValidationError as exc:
        typer.secho("Run record validation failed:", err=True, fg=typer.colors.RED)
        typer.echo(exc)
        raise typer.Exit(code=1) from exc


def _validate_against_schema(data: Any, kind: str) -> None:
    validator = Draft202012Validator(load_schema(kind))
    errors = sorted(validator.iter_errors(data), key=lambda err: list(err.path))
    if errors:
        typer.secho(f"File failed {kind} schema validation:", err=True, fg=typer.colors.RED)
        for error in errors[:5]:
            location = "/".join(str(part) for part in error.path) or "<root>"
            typer.secho(f"- {location}: {error.message}", err=True, fg=typer.colors.RED)
        if len(errors) > 5:
            typer.secho(f"... {len(errors) - 5} additional errors omitted", err=True, fg=typer.colors.RED)
        raise typer.Exit(code=1)


def _truncate_text(value: Optional[str], limit: int = 160) -> Optional[str]:
    if value is None:
        return None
    text = value.strip()
    if len(text) <= limit:
        return text
    return text[: limit - 3] + "..."


@app.command()
def run(
    goal: str = typer.Argument(..., help="Goal to plan and execute."),
    max_attempts: Optional[int] = typer.Option(None, "--max-attempts", "-n", help="Maximum execution passes."),
    threshold: Optional[float] = typer.Option(None, "--threshold", "-t", help="Satisfaction threshold 0-1."),
    model: Optional[str] = typer.Option(None, help="Model name sent to the LLM endpoint."),
    base_url: Optional[str] = typer.Option(None, "--base-url", help="OpenAI-compatible API base URL."),
    api_key: Optional[str] = typer.Option(None, "--api-key", help="API key for the LLM endpoint."),
    output: Optional[Path] = typer.Option(None, "--output", "-o", resolve_path=True, help="Write the run record JSON here."),
    telemetry: Optional[Path] = typer.Option(None, "--telemetry", resolve_path=True, help="Append telemetry events to this JSONL file."),
) -> None:
    """Plan, execute and reflect on ``GOAL`` and print the result."""

    overrides: Dict[str, Any] = {
        "max_attempts": max_attempts,
        "threshold": threshold,
        "model": model,
        "base_url": base_url,
        "api_key": api_key,
    }
    try:
        settings = PlanningSettings(**{key: value for key, value in overrides.items() if value is not None})
    except ValidationError as exc:
        typer.secho("Invalid settings:", err=True, fg=typer.colors.RED)
        typer.echo(exc)
        raise typer.Exit(code=1) from exc

    sink_telemetry = Telemetry(sinks=[JsonLinesSink(telemetry)]) if telemetry is not None else None
    orchestrator = build_orchestrator(
        build_text_generator(settings),
        settings,
        telemetry=sink_telemetry,
    )
    context = AgentContext(user_input=goal)
    try:
        response = asyncio.run(orchestrator.execute(goal, context))
    except (PlannerError, CriticError, LlmClientError) as exc:
        _fail(f"Planning failed: {exc}", exc)

    typer.echo(response.result)
    if not response.success:
        typer.secho(
            f"Stopped after {response.attempts} attempts without a satisfactory result.",
            err=True,
            fg=typer.colors.YELLOW,
        )
    if output is not None:
        manifest = RunManifest.build(
            response,
            agent=orchestrator.name,
            session_id=context.session_id,
            settings=settings.public_dict(),
        )
        try:
            manifest.write(output)
        except OSError as exc:
            _fail(f"Failed to write run record: {exc}", exc)
        typer.secho(f"Wrote run record to {output}", err=True, fg=typer.colors.GREEN)


@app.command()
def show(
    path: Path = typer.Argument(..., exists=True, resolve_path=True, help="Path to a run record JSON file."),
) -> None:
    """Emit a condensed JSON summary of a saved run."""

    manifest = _load_manifest(path)
    response = manifest.to_response()
    summary: Dict[str, Any] = {
        "agent": manifest.agent,
        "created_at": manifest.created_at,
        "session_id": manifest.session_id,
        "input": manifest.input,
        "success": manifest.success,
        "attempts": manifest.attempts,
        "goal": response.goal,
        "score": response.score,
        "result": _truncate_text(manifest.result),
        "steps": [
            {
                "id": step.id,
                "action": _truncate_text(step.action, 80),
                "dependencies": list(step.dependencies),
                "completed": step.completed,
            }
            for step in response.steps
        ],
        "history": summarise_attempts(response.history),
    }
    typer.echo(json.dumps(summary, indent=2, ensure_ascii=True))


@app.command()
def schema(
    kind: str = typer.Argument(..., help=f"One of: {', '.join(sorted(SCHEMAS))}."),
    output: Optional[Path] = typer.Option(None, "--output", "-o", resolve_path=True, help="Write the schema here."),
) -> None:
    """Print the JSON schema for planner output, critic output or run records."""

    try:
        payload = load_schema(kind)
    except ValueError as exc:
        _fail(str(exc), exc)
    text = json.dumps(payload, indent=2)
    if output is None:
        typer.echo(text)
        return
    try:
        output.write_text(text, encoding="utf-8")
    except OSError as exc:
        _fail(f"Failed to write schema: {exc}", exc)
    typer.secho(f"Wrote {kind} schema to {output}", fg=typer.colors.GREEN)


@app.command()
def validate(
    path: Path = typer.Argument(..., exists=True, resolve_path=True, help="JSON file to validate."),
    kind: str = typer.Option("plan", "--kind", "-k", help=f"One of: {', '.join(sorted(SCHEMAS))}."),
    strict: bool = typer.Option(False, help="Treat plan analysis findings as errors."),
) -> None:
    """Validate a planner, critic or run record JSON file."""

    if kind not in SCHEMAS:
        _fail(f"Unknown schema kind: {kind}")
    payload = _load_json_file(path)
    _validate_against_schema(payload, kind)

    if kind == "plan":
        plan = PlanPayload.model_validate(payload).to_plan()
        analysis = analyse_plan(plan)
        for issue in analysis.issues():
            typer.secho(f"warning: {issue}", err=True, fg=typer.colors.YELLOW)
        if strict and not analysis.ok:
            raise typer.Exit(code=1)
    typer.secho(f"{path} is a valid {kind} document", fg=typer.colors.GREEN)


@app.command()
def trace(
    path: Path = typer.Argument(..., exists=True, resolve_path=True, help="Telemetry JSONL file."),
) -> None:
    """Summarise the spans recorded in a telemetry file."""

    try:
        lines = path.read_text(encoding="utf-8").splitlines()
    except OSError as exc:
        _fail(f"Failed to read {path}: {exc}", exc)

    spans: Dict[str, List[Dict[str, Any]]] = defaultdict(list)
    for number, line in enumerate(lines, start=1):
        if not line.strip():
            continue
        try:
            event = json.loads(line)
        except json.JSONDecodeError as exc:
            _fail(f"Invalid JSON on line {number} of {path}: {exc}", exc)
        if event.get("event") == "trace.span_ended":
            spans[str(event.get("trace_id"))].append(event)

    summary: List[Dict[str, Any]] = []
    for trace_id, ended in spans.items():
        root = next((span for span in ended if span.get("parent_span_id") is None), None)
        summary.append(
            {
                "trace_id": trace_id,
                "agent": None if root is None else root.get("name"),
                "status": None if root is None else root.get("status"),
                "duration_ms": None if root is None else root.get("duration_ms"),
                "span_counts": dict(Counter(span.get("type") for span in ended)),
                "errors": [
                    {"type": span.get("type"), "name": span.get("name"), "error": span.get("error_message")}
                    for span in ended
                    if span.get("status") == "error"
                ],
            }
        )
    typer.echo(json.dumps(summary, indent=2, ensure_ascii=True))


def main() -> None:
    """Entrypoint for ``python -m planloop.cli``."""

    app()


if __name__ == "__main__":  # pragma: no cover
    main()
