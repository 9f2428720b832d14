from __future__ import annotations

import asyncio
import json

import pytest

from planloop.src.core.context import AgentContext
from planloop.src.core.critic import Critic, CriticError
from planloop.src.core.orchestrator import ConfigurationError, Orchestrator
from planloop.src.core.planner import Planner, PlannerError
from planloop.src.core.telemetry import InMemorySink, Telemetry
from planloop.src.core.types import (
    DependencyGap,
    ExecutionSucceeded,
    Plan,
    PlanStep,
    RunState,
    StepFailure,
)


class RecordingExecutor:
    def __init__(self, fail_on: set[int] | None = None) -> None:
        self.fail_on = fail_on or set()
        self.calls: list[tuple[int, dict]] = []

    def __call__(self, step, previous, context):
        self.calls.append((step.id, dict(previous)))
        if step.id in self.fail_on:
            raise RuntimeError("disk full")
        return f"done {step.id}"


class CountingSynthesizer:
    def __init__(self) -> None:
        self.calls = 0

    async def __call__(self, plan, results, context):
        self.calls += 1
        return f"answer {self.calls}"


def _build(llm, *, executor=None, synthesizer=None, sink=None, **kwargs) -> Orchestrator:
    telemetry = Telemetry(sinks=[sink]) if sink is not None else None
    return Orchestrator(
        planner=Planner(llm),
        critic=Critic(llm),
        step_executor=executor or RecordingExecutor(),
        synthesizer=synthesizer or CountingSynthesizer(),
        telemetry=telemetry,
        **kwargs,
    )


def _root_span(orchestrator: Orchestrator):
    return next(span for span in orchestrator.tracer.spans if span.type == "agent_run")


def test_early_exit_when_first_reflection_meets_threshold(scripted_llm, login_plan, make_reflection):
    llm = scripted_llm([login_plan], [make_reflection(0.85)])
    executor = RecordingExecutor()
    orchestrator = _build(llm, executor=executor)

    response = asyncio.run(orchestrator.execute("Build a login form"))

    assert response.success
    assert response.result == "answer 1"
    assert response.attempts == 1
    assert llm.replan_prompts == []
    assert [step_id for step_id, _ in executor.calls] == [1, 2]
    assert orchestrator.state is RunState.DONE
    root = _root_span(orchestrator)
    assert root.status == "success"
    assert root.output == {"response": "answer 1", "attempts": 1}


def test_satisfactory_flag_ends_run_below_threshold(scripted_llm, login_plan, make_reflection):
    llm = scripted_llm([login_plan], [make_reflection(0.1, satisfactory=True)])
    orchestrator = _build(llm)

    result = asyncio.run(orchestrator.run("Build a login form"))

    assert result == "answer 1"
    assert llm.replan_prompts == []


def test_login_form_replans_once_then_succeeds(scripted_llm, login_plan, make_reflection):
    llm = scripted_llm([login_plan], [make_reflection(0.5), make_reflection(0.9)])
    executor = RecordingExecutor()
    synthesizer = CountingSynthesizer()
    orchestrator = _build(llm, executor=executor, synthesizer=synthesizer)

    response = asyncio.run(orchestrator.execute("Build a login form"))

    assert response.success
    assert response.attempts == 2
    assert response.result == "answer 2"
    assert synthesizer.calls == 2
    assert len(llm.plan_prompts) == 1
    assert len(llm.replan_prompts) == 1
    assert [record.status for record in response.history] == ["needs_replan", "satisfied"]


def test_step_failure_with_single_attempt_returns_fallback(scripted_llm, login_plan, make_reflection):
    llm = scripted_llm([login_plan], [make_reflection(0.9)])
    executor = RecordingExecutor(fail_on={1})
    sink = InMemorySink()
    orchestrator = _build(llm, executor=executor, sink=sink, max_replan_attempts=1)

    response = asyncio.run(orchestrator.execute("Build a login form"))

    assert response.result == "Unable to complete task after 1 attempts."
    assert not response.success
    assert response.attempts == 1
    assert [step_id for step_id, _ in executor.calls] == [1]
    assert len(llm.replan_prompts) == 1
    assert llm.prompts("Evaluate the result") == []
    assert orchestrator.state is RunState.EXHAUSTED

    root = _root_span(orchestrator)
    assert root.status == "success"
    assert root.output["max_attempts_reached"] is True
    warnings = [event for event in sink.named("log") if event["level"] == "warning"]
    assert [event["message"] for event in warnings] == ["Plan execution failed"]
    assert warnings[0]["fields"]["failed_step"] == 1


@pytest.mark.parametrize("attempts", [1, 2, 4])
def test_execution_passes_are_bounded(scripted_llm, login_plan, make_reflection, attempts):
    llm = scripted_llm([login_plan], [make_reflection(0.2)])
    executor = RecordingExecutor()
    orchestrator = _build(llm, executor=executor, max_replan_attempts=attempts)

    response = asyncio.run(orchestrator.execute("Build a login form"))

    step_one_runs = [step_id for step_id, _ in executor.calls if step_id == 1]
    assert len(step_one_runs) == attempts
    assert response.attempts == attempts
    assert response.result == f"answer {attempts}"
    assert not response.success


def test_dependency_waits_for_prior_result(scripted_llm, login_plan, make_reflection):
    llm = scripted_llm([login_plan], [make_reflection(1.0)])
    executor = RecordingExecutor()
    orchestrator = _build(llm, executor=executor)

    asyncio.run(orchestrator.run("Build a login form"))

    step_two_previous = dict(executor.calls)[2]
    assert step_two_previous == {1: "done 1"}


def test_unknown_dependency_is_reported_as_gap():
    plan = Plan(
        goal="g",
        steps=[
            PlanStep(id=1, action="first"),
            PlanStep(id=2, action="second", dependencies=[1, 99]),
        ],
    )
    executor = RecordingExecutor()
    orchestrator = _build(lambda system, user: "{}", executor=executor)

    outcome = asyncio.run(orchestrator.execute_plan(plan, AgentContext()))

    assert isinstance(outcome, DependencyGap)
    assert outcome.failed_step.id == 2
    assert outcome.missing_ids == [99]
    assert outcome.message == "Cannot execute step 2: dependencies not satisfied (missing: 99)"
    assert [step_id for step_id, _ in executor.calls] == [1]


def test_forward_reference_blocks_ascending_execution():
    plan = Plan(
        goal="g",
        steps=[
            PlanStep(id=2, action="second"),
            PlanStep(id=1, action="first", dependencies=[2]),
        ],
    )
    executor = RecordingExecutor()
    orchestrator = _build(lambda system, user: "{}", executor=executor)

    outcome = asyncio.run(orchestrator.execute_plan(plan, AgentContext()))

    assert isinstance(outcome, DependencyGap)
    assert outcome.failed_step.id == 1
    assert executor.calls == []


def test_execute_plan_publishes_step_results():
    plan = Plan(goal="g", steps=[PlanStep(id=3, action="c"), PlanStep(id=1, action="a")])
    context = AgentContext()
    orchestrator = _build(lambda system, user: "{}")

    outcome = asyncio.run(orchestrator.execute_plan(plan, context))

    assert isinstance(outcome, ExecutionSucceeded)
    assert outcome.results == {1: "done 1", 3: "done 3"}
    assert context.get("step_1_result") == "done 1"
    assert context.get("step_3_result") == "done 3"
    assert all(step.completed for step in plan.steps)


def test_executor_error_becomes_step_failure():
    plan = Plan(goal="g", steps=[PlanStep(id=1, action="explode")])
    orchestrator = _build(lambda system, user: "{}", executor=RecordingExecutor(fail_on={1}))

    outcome = asyncio.run(orchestrator.execute_plan(plan, AgentContext()))

    assert isinstance(outcome, StepFailure)
    assert outcome.message == "Plan step 1 (explode) failed: disk full"
    assert isinstance(outcome.cause, RuntimeError)


def test_each_pass_starts_from_empty_results(scripted_llm, login_plan, make_reflection):
    llm = scripted_llm([login_plan], [make_reflection(0.3), make_reflection(0.95)])
    executor = RecordingExecutor()
    orchestrator = _build(llm, executor=executor)

    asyncio.run(orchestrator.run("Build a login form"))

    step_one_calls = [previous for step_id, previous in executor.calls if step_id == 1]
    assert step_one_calls == [{}, {}]


def test_reflection_feedback_reaches_replan_prompt(scripted_llm, login_plan, make_reflection):
    first = make_reflection(0.3, weaknesses=["too short", "vague"], suggestions=["add detail"])
    llm = scripted_llm([login_plan], [first, make_reflection(0.95)])
    orchestrator = _build(llm)

    asyncio.run(orchestrator.run("Build a login form"))

    (prompt,) = llm.replan_prompts
    assert "Original Task: Build a login form" in prompt
    assert "Previous Result: answer 1" in prompt
    assert "Feedback: Weaknesses: too short, vague\nSuggestions: add detail" in prompt


def test_execution_error_feedback_has_no_reflection_text(scripted_llm, login_plan, make_reflection):
    broken = dict(login_plan, steps=[{"id": 1, "action": "wait", "dependencies": [99]}])
    llm = scripted_llm([broken, login_plan], [make_reflection(0.9)])
    orchestrator = _build(llm)

    response = asyncio.run(orchestrator.execute("Build a login form"))

    (prompt,) = llm.replan_prompts
    assert "Cannot execute step 1: dependencies not satisfied (missing: 99)" in prompt
    assert "Weaknesses" not in prompt
    assert "Suggestions" not in prompt
    assert response.success
    assert response.attempts == 2
    assert [record.status for record in response.history] == ["execution_failed", "satisfied"]


def test_context_tracks_agent_and_current_plan(scripted_llm, login_plan, make_reflection):
    replacement = dict(login_plan, goal="Build a better login form")
    llm = scripted_llm([login_plan, replacement], [make_reflection(0.1)])
    context = AgentContext(session_id="session-1")
    orchestrator = _build(llm, name="planner_bot", max_replan_attempts=2)

    asyncio.run(orchestrator.run("Build a login form", context))

    assert context.get("agent_name") == "planner_bot"
    assert context.get("current_plan").goal == "Build a better login form"
    assert context.get("step_2_result") == "done 2"
    assert context.user_input == "Build a login form"
    assert {"role": "user", "content": "Create a plan for: Build a login form"} in context.history


def test_malformed_plan_propagates_and_fails_trace(scripted_llm):
    llm = scripted_llm(["I cannot help with that."])
    sink = InMemorySink()
    orchestrator = _build(llm, sink=sink)

    with pytest.raises(PlannerError):
        asyncio.run(orchestrator.run("Build a login form"))

    root = _root_span(orchestrator)
    assert root.status == "error"
    planning = next(span for span in orchestrator.tracer.spans if span.type == "planning")
    assert planning.status == "error"
    assert sink.named("orchestrator.run_failed")


def test_run_logs_each_phase(scripted_llm, login_plan, make_reflection):
    llm = scripted_llm([login_plan], [make_reflection(0.5), make_reflection(0.9)])
    sink = InMemorySink()
    orchestrator = _build(llm, sink=sink)

    asyncio.run(orchestrator.run("Build a login form", AgentContext(session_id="abc")))

    messages = [event["message"] for event in sink.named("log")]
    assert messages == ["Plan generated", "Reflection completed", "Replanned", "Reflection completed"]
    replanned = sink.named("log")[2]
    assert replanned["fields"]["attempt"] == 1
    assert replanned["fields"]["session_id"] == "abc"
    span_types = {span.type for span in orchestrator.tracer.spans}
    assert span_types == {"agent_run", "planning", "execution", "plan_step", "reflection", "replanning"}


def test_streaming_llm_chunks_are_joined(login_plan, make_reflection):
    class Chunk:
        def __init__(self, text: str) -> None:
            self.text = text

    async def streaming_llm(system_prompt, user_prompt):
        payload = login_plan if "plan" in user_prompt.lower() and "Evaluate" not in user_prompt else make_reflection(0.9)
        text = json.dumps(payload)
        for index in range(0, len(text), 7):
            yield Chunk(text[index : index + 7])

    orchestrator = _build(streaming_llm)

    response = asyncio.run(orchestrator.execute("Build a login form"))

    assert response.success
    assert response.goal == "Build a login form"


def test_threshold_validation_keeps_previous_value(scripted_llm, login_plan):
    orchestrator = _build(scripted_llm([login_plan]))
    orchestrator.satisfaction_threshold = 0.6

    for invalid in (-0.1, 1.1):
        with pytest.raises(ConfigurationError):
            orchestrator.satisfaction_threshold = invalid
        assert orchestrator.satisfaction_threshold == 0.6

    with pytest.raises(ValueError):
        orchestrator.configure(satisfaction_threshold=2)


def test_invalid_attempts_rejected(scripted_llm, login_plan):
    orchestrator = _build(scripted_llm([login_plan]))

    with pytest.raises(ConfigurationError):
        orchestrator.max_replan_attempts = 0
    with pytest.raises(ConfigurationError):
        _build(scripted_llm([login_plan]), max_replan_attempts=0)
    assert orchestrator.max_replan_attempts == 3


def test_configure_is_all_or_nothing(scripted_llm, login_plan):
    orchestrator = _build(scripted_llm([login_plan]))

    with pytest.raises(ConfigurationError):
        orchestrator.configure(max_replan_attempts=5, satisfaction_threshold=1.5)
    assert orchestrator.max_replan_attempts == 3
    assert orchestrator.satisfaction_threshold == 0.8

    orchestrator.configure(
        max_replan_attempts=5,
        satisfaction_threshold=0.7,
        planner_instructions="Plan carefully.",
        reflection_instructions="Judge harshly.",
    )
    assert orchestrator.max_replan_attempts == 5
    assert orchestrator.satisfaction_threshold == 0.7
    assert orchestrator.planner.instructions == "Plan carefully."
    assert orchestrator.critic.instructions == "Judge harshly."


def test_custom_instructions_are_sent_with_json_suffix(scripted_llm, login_plan, make_reflection):
    llm = scripted_llm([login_plan], [make_reflection(0.9)])
    orchestrator = _build(llm)
    orchestrator.planner_instructions = "Plan carefully."

    asyncio.run(orchestrator.run("Build a login form"))

    system_prompt, _ = llm.calls[0]
    assert system_prompt == "Plan carefully.\n\nIMPORTANT: Respond only with valid JSON, no additional text."


def test_run_sync_returns_result(scripted_llm, login_plan, make_reflection):
    llm = scripted_llm([login_plan], [make_reflection(0.9)])
    orchestrator = _build(llm)

    assert orchestrator.run_sync("Build a login form") == "answer 1"


def test_run_sync_refuses_running_loop(scripted_llm, login_plan):
    orchestrator = _build(scripted_llm([login_plan]))

    async def _inside_loop():
        with pytest.raises(RuntimeError):
            orchestrator.run_sync("Build a login form")

    asyncio.run(_inside_loop())


def test_tool_definition_describes_arguments(scripted_llm, login_plan):
    definition = _build(scripted_llm([login_plan])).to_tool_definition()

    assert definition["name"] == "planning_agent"
    assert definition["parameters"]["required"] == ["task"]
    assert set(definition["parameters"]["properties"]) == {"task", "max_attempts", "threshold"}


def test_execute_from_tool_call_reports_summary(scripted_llm, login_plan, make_reflection):
    llm = scripted_llm([login_plan], [make_reflection(0.6)])
    orchestrator = _build(llm)

    payload = json.loads(
        asyncio.run(
            orchestrator.execute_from_tool_call({"task": "Build a login form", "threshold": 0.5})
        )
    )

    assert payload == {
        "success": True,
        "result": "answer 1",
        "attempts": 1,
        "goal": "Build a login form",
        "score": 0.6,
    }
    assert orchestrator.satisfaction_threshold == 0.8


def test_execute_from_tool_call_reports_failures(scripted_llm):
    orchestrator = _build(scripted_llm(["no json here"]))

    payload = json.loads(asyncio.run(orchestrator.execute_from_tool_call({"task": "anything"})))

    assert payload["success"] is False
    assert payload["error"].startswith("Planning failed: ")


def test_malformed_reflection_propagates_and_fails_trace(scripted_llm, login_plan):
    llm = scripted_llm([login_plan], ["The result looks fine to me."])
    sink = InMemorySink()
    orchestrator = _build(llm, sink=sink)

    with pytest.raises(CriticError):
        asyncio.run(orchestrator.run("Build a login form"))

    assert _root_span(orchestrator).status == "error"
    reflection = next(span for span in orchestrator.tracer.spans if span.type == "reflection")
    assert reflection.status == "error"
    assert llm.replan_prompts == []
    assert sink.named("orchestrator.run_failed")


def test_synthesizer_error_is_fatal(scripted_llm, login_plan, make_reflection):
    def broken_synthesizer(plan, results, context):
        raise RuntimeError("synthesis offline")

    llm = scripted_llm([login_plan], [make_reflection(0.9)])
    orchestrator = _build(llm, synthesizer=broken_synthesizer)

    with pytest.raises(RuntimeError, match="synthesis offline"):
        asyncio.run(orchestrator.execute("Build a login form"))

    assert llm.replan_prompts == []
    execution = next(span for span in orchestrator.tracer.spans if span.type == "execution")
    assert execution.status == "error"
    assert _root_span(orchestrator).status == "error"


def test_repeated_step_failures_are_bounded(scripted_llm, login_plan, make_reflection):
    llm = scripted_llm([login_plan], [make_reflection(0.9)])
    executor = RecordingExecutor(fail_on={1})
    orchestrator = _build(llm, executor=executor, max_replan_attempts=3)

    response = asyncio.run(orchestrator.execute("Build a login form"))

    assert [step_id for step_id, _ in executor.calls] == [1, 1, 1]
    assert len(llm.replan_prompts) == 3
    assert llm.prompts("Evaluate the result") == []
    assert response.result == "Unable to complete task after 3 attempts."
    assert response.attempts == 3
    assert not response.success
    assert [record.status for record in response.history] == ["execution_failed"] * 3


def test_cancelled_run_closes_open_spans(scripted_llm, login_plan):
    class HangingExecutor:
        async def __call__(self, step, previous, context):
            await asyncio.sleep(10)

    orchestrator = _build(scripted_llm([login_plan]), executor=HangingExecutor())

    async def scenario():
        await asyncio.wait_for(orchestrator.execute("Build a login form"), timeout=0.05)

    with pytest.raises(asyncio.TimeoutError):
        asyncio.run(scenario())

    assert [span.type for span in orchestrator.tracer.spans if span.status == "running"] == []
    assert _root_span(orchestrator).status == "error"
    step = next(span for span in orchestrator.tracer.spans if span.type == "plan_step")
    assert step.status == "error"


class YieldingLLM:
    """Async wrapper that yields to the event loop before every answer."""

    def __init__(self, scripted) -> None:
        self.scripted = scripted

    async def __call__(self, system_prompt, user_prompt):
        await asyncio.sleep(0)
        return self.scripted(system_prompt, user_prompt)


def test_overlapping_tool_calls_do_not_leak_settings(scripted_llm, login_plan, make_reflection):
    llm = YieldingLLM(scripted_llm([login_plan], [make_reflection(0.55)]))
    orchestrator = _build(llm)

    async def scenario():
        return await asyncio.gather(
            orchestrator.execute_from_tool_call({"task": "a", "threshold": 0.5}),
            orchestrator.execute_from_tool_call({"task": "b", "threshold": 0.6, "max_attempts": 1}),
        )

    first, second = (json.loads(payload) for payload in asyncio.run(scenario()))

    assert first["success"] is True
    assert second["success"] is False
    assert orchestrator.satisfaction_threshold == 0.8
    assert orchestrator.max_replan_attempts == 3
    roots = [span for span in orchestrator.tracer.spans if span.type == "agent_run"]
    assert [root.status for root in roots] == ["success", "success"]
    assert [span.type for span in orchestrator.tracer.spans if span.status == "running"] == []


def test_nested_run_in_same_task_is_rejected(scripted_llm, login_plan, make_reflection):
    llm = scripted_llm([login_plan], [make_reflection(0.9)])
    orchestrator = _build(llm, max_replan_attempts=1)
    errors = []

    async def nesting_executor(step, previous, context):
        try:
            await orchestrator.execute("inner goal")
        except RuntimeError as exc:
            errors.append(str(exc))
            raise
        return "unreachable"

    orchestrator.step_executor = nesting_executor

    response = asyncio.run(orchestrator.execute("Build a login form"))

    assert not response.success
    assert errors and "already running" in errors[0]
