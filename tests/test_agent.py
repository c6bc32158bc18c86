"""Tests for the Planner -> Executor -> Reviewer state machine."""

import asyncio
import json
from typing import (
    Any,
    Dict,
    List,
)

import pytest

from conftest import ScriptedAdapter
from hybridmind.agent.agent_loop import AgentState
from hybridmind.agent.planner import (
    infer_action,
    parse_plan,
)
from hybridmind.agent.reviewer import (
    Verdict,
    parse_review,
)
from hybridmind.core.engine import ExecutionEngine
from hybridmind.core.errors import (
    AuthError,
    InvalidRequest,
    PlanningError,
    SecurityViolation,
)
from hybridmind.core.schema import (
    ExecutionOptions,
    ExecutionRequest,
    Mode,
    StepAction,
    StepStatus,
    Tier,
)
from hybridmind.providers import ProviderHTTPError

PLANNER = "gpt-4o"
EXECUTOR = "claude-sonnet-4"
REVIEWER = "o1"

THOUGHT = json.dumps({"tool": "thought", "content": "inspected the module"})
DONE = json.dumps({"verdict": "done", "summary": "Goal achieved"})
REPLAN = json.dumps({"verdict": "replan", "summary": "Missing tests", "feedback": "add tests"})


def plan(*steps: Dict[str, Any]) -> str:
    return json.dumps({"strategy": "step by step", "steps": list(steps)})


def step(step_id: str, *depends_on: str, **extra: Any) -> Dict[str, Any]:
    return {"id": step_id, "name": step_id, "action": "analyze", "dependsOn": list(depends_on),
            **extra}


def agent_request(models: List[str] | None = None, **options: Any) -> ExecutionRequest:
    return ExecutionRequest(
        mode=Mode.AGENTIC,
        prompt="Tidy up utils.py",
        code="def f(): pass",
        models=[PLANNER, EXECUTOR, REVIEWER] if models is None else models,
        tier=Tier.PRO,
        options=ExecutionOptions(**options),
    )


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------
def test_parse_plan_normalizes_steps() -> None:
    """Missing ids, unknown actions and odd casing are repaired."""

    raw = "Here is the plan:\n" + plan(
        {"name": "Write unit tests", "action": "bogus", "priority": "HIGH"},
        {"id": "doc", "description": "document it", "depends_on": ["Write unit tests"],
         "estimatedComplexity": "Complex"},
    )

    parsed = parse_plan("goal", raw)

    first, second = parsed.steps
    assert first.id == "Write unit tests"
    assert first.action is StepAction.TEST
    assert first.priority == "high"
    assert second.action is StepAction.DOCUMENT
    assert second.estimated_complexity == "complex"
    assert second.depends_on == ["Write unit tests"]


@pytest.mark.parametrize(
    "raw, fragment",
    [
        ("no plan at all", "'steps'"),
        (plan(), "malformed"),
        (plan(step("a", "b"), step("b", "a")), "cycle"),
        (plan(step("a"), step("a")), "Duplicate"),
        (plan(step("a", "zzz")), "unknown step"),
        (plan(step("a", "a")), "itself"),
    ],
)
def test_parse_plan_rejects_invalid_plans(raw: str, fragment: str) -> None:
    """Invalid plans raise PlanningError with a reason."""

    with pytest.raises(PlanningError) as excinfo:
        parse_plan("goal", raw)

    assert fragment in excinfo.value.reason


def test_parse_plan_rejects_deep_nesting() -> None:
    """A reply too deeply nested to decode is treated as having no plan."""

    raw = '{"steps": ' + "[" * 100_000 + "]" * 100_000 + "}"

    with pytest.raises(PlanningError) as excinfo:
        parse_plan("goal", raw)

    assert "'steps'" in excinfo.value.reason


def test_infer_action() -> None:
    """Keywords map to actions; anything else is analysis."""

    assert infer_action("Optimize the hot loop") is StepAction.OPTIMIZE
    assert infer_action("fix the off-by-one bug") is StepAction.FIX
    assert infer_action("look around") is StepAction.ANALYZE


def test_parse_review_accepts_replanning_spelling() -> None:
    """The reviewer's verdict is case-insensitive and accepts 'replanning'."""

    assert parse_review('{"verdict": "Replanning"}').verdict is Verdict.REPLAN
    assert parse_review(DONE).summary == "Goal achieved"


# ---------------------------------------------------------------------------
# Full runs
# ---------------------------------------------------------------------------
@pytest.mark.asyncio
async def test_happy_path(engine: ExecutionEngine, adapter: ScriptedAdapter) -> None:
    """Plan, execute every step in dependency order, review once."""

    adapter.script(PLANNER, plan(step("b", "a"), step("a")))
    adapter.script(EXECUTOR, THOUGHT)
    adapter.script(REVIEWER, DONE)

    result = await engine.execute(agent_request())

    assert result.success
    assert not result.partial
    assert result.output == "Goal achieved"
    assert [t.role for t in result.trace] == ["planner", "executor", "executor", "reviewer"]
    assert [t.step_id for t in result.trace[1:3]] == ["a", "b"]
    assert result.data["state"] == "done"
    assert result.data["models"] == {
        "planner": PLANNER,
        "executor": EXECUTOR,
        "reviewer": REVIEWER,
    }
    assert result.usage.total_tokens == 4 * 15
    assert adapter.calls_for(EXECUTOR)[0]["options"]["role"] == "executor"


@pytest.mark.asyncio
async def test_cyclic_plan_fails_after_one_correction(
    engine: ExecutionEngine, adapter: ScriptedAdapter
) -> None:
    """A cyclic plan is re-requested once, then the run fails with PlanningError."""

    adapter.script(PLANNER, plan(step("a", "b"), step("b", "a")))

    with pytest.raises(PlanningError):
        await engine.execute(agent_request())

    calls = adapter.calls_for(PLANNER)
    assert len(calls) == 2
    assert "Your previous response was rejected" in calls[1]["messages"][-1]["content"]
    assert "cycle" in calls[1]["messages"][-1]["content"]
    assert adapter.calls_for(EXECUTOR) == []


@pytest.mark.asyncio
async def test_planner_corrective_retry_recovers(
    engine: ExecutionEngine, adapter: ScriptedAdapter
) -> None:
    """A bad first plan followed by a good one proceeds normally."""

    adapter.script(PLANNER, "I would start by reading the file.", plan(step("a")))
    adapter.script(EXECUTOR, THOUGHT)
    adapter.script(REVIEWER, DONE)

    result = await engine.execute(agent_request())

    assert result.success
    assert not result.partial
    assert len(adapter.calls_for(PLANNER)) == 2


@pytest.mark.asyncio
async def test_executor_gets_one_corrective_retry(
    engine: ExecutionEngine, adapter: ScriptedAdapter
) -> None:
    """An invalid tool call is re-prompted with the validator's reason."""

    adapter.script(PLANNER, plan(step("a")))
    adapter.script(EXECUTOR, '{"tool": "shell", "cmd": "rm -rf /"}', THOUGHT)
    adapter.script(REVIEWER, DONE)

    result = await engine.execute(agent_request())

    assert result.success
    steps = result.data["steps"]
    assert steps[0]["success"]
    assert steps[0]["attempts"] == 2
    retry = adapter.calls_for(EXECUTOR)[1]["messages"]
    assert retry[-2] == {"role": "assistant", "content": '{"tool": "shell", "cmd": "rm -rf /"}'}
    assert "unknown tool 'shell'" in retry[-1]["content"]


@pytest.mark.asyncio
async def test_failed_step_skips_dependents(
    engine: ExecutionEngine, adapter: ScriptedAdapter
) -> None:
    """Two invalid replies fail a step; its dependents are skipped, others still run."""

    adapter.script(PLANNER, plan(step("a"), step("b", "a"), step("c")))
    adapter.script(EXECUTOR, "no idea", "still no idea", THOUGHT)
    adapter.script(REVIEWER, DONE)

    result = await engine.execute(agent_request())

    assert result.success
    assert result.partial
    assert result.failed_step == 2
    assert result.trace[2].step_id == "a"
    statuses = {s["id"]: s["status"] for s in result.data["plan"]["steps"]}
    assert statuses == {"a": "failed", "b": "skipped", "c": "completed"}
    assert [s["stepId"] for s in result.data["steps"]] == ["a", "c"]


@pytest.mark.asyncio
async def test_path_escape_halts_without_corrective_retry(
    engine: ExecutionEngine, adapter: ScriptedAdapter
) -> None:
    """A tool call touching an absolute path is not re-prompted; the run stops."""

    adapter.script(PLANNER, plan(step("a")))
    adapter.script(EXECUTOR, json.dumps({"tool": "delete_file", "path": "/etc/passwd"}))
    adapter.script(REVIEWER, DONE)

    with pytest.raises(SecurityViolation):
        await engine.execute(agent_request())

    assert len(adapter.calls_for(EXECUTOR)) == 1
    assert adapter.calls_for(REVIEWER) == []


@pytest.mark.asyncio
async def test_path_escape_after_completed_step_keeps_partial_result(
    engine: ExecutionEngine, adapter: ScriptedAdapter
) -> None:
    """Completed work survives a security violation; remaining steps are skipped."""

    adapter.script(PLANNER, plan(step("a"), step("b"), step("c")))
    adapter.script(EXECUTOR, THOUGHT, json.dumps({"tool": "delete_file", "path": "../.env"}))
    adapter.script(REVIEWER, DONE)

    result = await engine.execute(agent_request())

    assert result.success
    assert result.partial
    assert result.failed_step == 2
    assert len(result.trace) == 3
    assert result.trace[2].error.code == "SecurityViolation"
    assert result.trace[2].output == json.dumps({"tool": "delete_file", "path": "../.env"})
    statuses = {s["id"]: s["status"] for s in result.data["plan"]["steps"]}
    assert statuses == {"a": "completed", "b": "failed", "c": "skipped"}
    assert len(adapter.calls_for(EXECUTOR)) == 2
    assert adapter.calls_for(REVIEWER) == []


@pytest.mark.asyncio
async def test_failed_step_ignores_corrected_attempts(
    engine: ExecutionEngine, adapter: ScriptedAdapter
) -> None:
    """A bad reply fixed on retry is not reported as the failing step."""

    adapter.script(PLANNER, plan(step("a"), step("b")))
    adapter.script(EXECUTOR, "not json", THOUGHT, "bad", "bad")
    adapter.script(REVIEWER, DONE)

    result = await engine.execute(agent_request())

    assert result.partial
    assert result.trace[result.failed_step].step_id == "b"
    assert result.failed_step == 4


@pytest.mark.asyncio
async def test_reviewer_unparseable_twice_forces_done(
    engine: ExecutionEngine, adapter: ScriptedAdapter
) -> None:
    """Two malformed reviews close the run as a partial success."""

    adapter.script(PLANNER, plan(step("a")))
    adapter.script(EXECUTOR, THOUGHT)
    adapter.script(REVIEWER, "Looks fine to me", '{"verdict": "maybe"}')

    result = await engine.execute(agent_request())

    assert result.success
    assert result.partial
    assert result.data["review"]["forced"]
    assert result.output == "thought: inspected the module"
    assert len(adapter.calls_for(REVIEWER)) == 2


@pytest.mark.asyncio
async def test_replan_keeps_completed_steps(
    engine: ExecutionEngine, adapter: ScriptedAdapter
) -> None:
    """A replan verdict revises the plan and runs only the new steps."""

    adapter.script(PLANNER, plan(step("a")), plan(step("tests", "a", action="test")))
    adapter.script(EXECUTOR, THOUGHT)
    adapter.script(REVIEWER, REPLAN, DONE)

    result = await engine.execute(agent_request())

    assert result.success
    assert not result.partial
    assert result.data["replans"] == 1
    assert [s["id"] for s in result.data["plan"]["steps"]] == ["a", "tests"]
    assert [s["stepId"] for s in result.data["steps"]] == ["a", "tests"]
    revise_prompt = adapter.calls_for(PLANNER)[1]["messages"][-1]["content"]
    assert "add tests" in revise_prompt
    assert "COMPLETED STEP IDS: a" in revise_prompt


@pytest.mark.asyncio
async def test_replan_limit(engine: ExecutionEngine, adapter: ScriptedAdapter) -> None:
    """A reviewer that never accepts is overruled after the replan budget."""

    adapter.script(PLANNER, plan(step("a")), plan(step("x", "a")), plan(step("y", "x")))
    adapter.script(EXECUTOR, THOUGHT)
    adapter.script(REVIEWER, REPLAN)

    result = await engine.execute(agent_request())

    assert result.success
    assert result.partial
    assert result.data["replans"] == 2
    assert len(adapter.calls_for(REVIEWER)) == 3


@pytest.mark.asyncio
async def test_step_budget(engine: ExecutionEngine, adapter: ScriptedAdapter) -> None:
    """Steps beyond max_steps are not attempted."""

    adapter.script(PLANNER, plan(step("a"), step("b")))
    adapter.script(EXECUTOR, THOUGHT)
    adapter.script(REVIEWER, DONE)

    result = await engine.execute(agent_request(max_steps=1))

    assert result.partial
    assert len(adapter.calls_for(EXECUTOR)) == 1


@pytest.mark.asyncio
async def test_dispatch_error_halts_with_partial_result(
    engine: ExecutionEngine, adapter: ScriptedAdapter
) -> None:
    """A provider failure mid-run keeps completed work and reports the failing step."""

    adapter.script(PLANNER, plan(step("a"), step("b", "a")))
    adapter.script(EXECUTOR, THOUGHT, ProviderHTTPError(401, "key revoked"))

    result = await engine.execute(agent_request())

    assert result.success
    assert result.partial
    assert result.failed_step == 2
    assert result.trace[2].error.code == "AuthError"
    assert result.data["error"]["code"] == "AuthError"
    assert adapter.calls_for(REVIEWER) == []


@pytest.mark.asyncio
async def test_dispatch_error_on_first_step_fails_run(
    engine: ExecutionEngine, adapter: ScriptedAdapter
) -> None:
    """Without any completed step the provider error is raised."""

    adapter.script(PLANNER, plan(step("a")))
    adapter.script(EXECUTOR, ProviderHTTPError(401, "key revoked"))

    with pytest.raises(AuthError):
        await engine.execute(agent_request())


# ---------------------------------------------------------------------------
# Role selection and step-wise driving
# ---------------------------------------------------------------------------
@pytest.mark.parametrize(
    "models, expected",
    [
        (["gpt-4o"], ("gpt-4o", "gpt-4o", "gpt-4o")),
        (["gpt-4o", "o1"], ("gpt-4o", "o1", "gpt-4o")),
        (["gpt-4o", "o1", "claude-opus-4"], ("gpt-4o", "o1", "claude-opus-4")),
    ],
)
def test_pinned_models_fill_roles(
    engine: ExecutionEngine, models: List[str], expected: tuple
) -> None:
    """Named models map to planner, executor and reviewer in order."""

    roles, adaptive = engine.select_roles(agent_request(models))

    assert (roles.planner, roles.executor, roles.reviewer) == expected
    assert not adaptive


def test_too_many_pinned_models(engine: ExecutionEngine) -> None:
    """Only three roles exist."""

    with pytest.raises(InvalidRequest):
        engine.select_roles(agent_request(["gpt-4o", "o1", "claude-opus-4", "grok-3"]))


@pytest.mark.asyncio
async def test_adaptive_workflow_selects_executor_per_step(
    engine: ExecutionEngine, adapter: ScriptedAdapter
) -> None:
    """The adaptive workflow routes demanding steps to the strongest model."""

    adapter.script("llama-3.3-70b", plan(step("a", action="fix", priority="high")))
    adapter.script("claude-opus-4", THOUGHT)
    adapter.script("gpt-4o", DONE)

    result = await engine.execute(agent_request([], workflow_type="adaptive"))

    assert result.success
    assert result.data["steps"][0]["model"] == "claude-opus-4"
    assert adapter.calls_for("claude-sonnet-4") == []


@pytest.mark.asyncio
async def test_step_wise_advance(engine: ExecutionEngine, adapter: ScriptedAdapter) -> None:
    """A run can be driven one step at a time."""

    adapter.script(PLANNER, plan(step("a"), step("b", "a")))
    adapter.script(EXECUTOR, THOUGHT)
    adapter.script(REVIEWER, DONE)
    run = engine.create_agent_run(agent_request())

    created = await run.start()
    assert [s.id for s in created.steps] == ["a", "b"]
    assert run.state is AgentState.EXECUTING

    first = await run.advance()
    assert first.step_id == "a"
    assert run.plan.step("b").status is StepStatus.PENDING

    second = await run.advance()
    assert second.step_id == "b"

    assert await run.advance() is None
    assert run.state is AgentState.DONE
    assert not run.partial

    with pytest.raises(InvalidRequest):
        await run.start()


@pytest.mark.asyncio
async def test_concurrent_advances_run_each_step_once(
    engine: ExecutionEngine, adapter: ScriptedAdapter
) -> None:
    """Two callers advancing the same run at once get consecutive steps."""

    adapter.script(PLANNER, plan(step("a"), step("b", "a")))
    adapter.script(EXECUTOR, THOUGHT)
    adapter.script(REVIEWER, DONE)
    run = engine.create_agent_run(agent_request())
    await run.start()

    first, second = await asyncio.gather(run.advance(), run.advance())

    assert [first.step_id, second.step_id] == ["a", "b"]
    assert [o.step_id for o in run.outcomes] == ["a", "b"]
    assert len(adapter.calls_for(EXECUTOR)) == 2
