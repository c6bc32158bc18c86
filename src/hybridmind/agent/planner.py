"""
Planner role: decompose a goal into a dependency-aware :class:`WorkflowPlan`.

The planner model is asked for one JSON object ``{"strategy": ..., "steps": [...]}``.  A reply
that cannot be turned into a valid plan gets exactly one corrective re-prompt quoting the reason;
a second bad reply raises :class:`PlanningError`.
"""

import logging
from typing import (
    Any,
    ClassVar,
    Dict,
    List,
    Sequence,
)

from pydantic import (
    BaseModel,
    Field,
)
from pydantic import ValidationError as PydanticValidationError

from hybridmind.agent.roles import (
    Invoke,
    TraceRecorder,
    context_block,
    corrective_messages,
    dumps,
    find_object_with,
)
from hybridmind.core.errors import PlanningError
from hybridmind.core.schema import (
    Step,
    StepAction,
    StepStatus,
    WorkflowPlan,
)
from hybridmind.providers import Message

logger = logging.getLogger(__name__)

_PRIORITIES = ("high", "medium", "low")
_COMPLEXITIES = ("simple", "moderate", "complex")

# Keyword -> action, checked in order when a step names no valid action.
_ACTION_KEYWORDS: Sequence[tuple[tuple[str, ...], StepAction]] = (
    (("refactor", "restructure"), StepAction.REFACTOR),
    (("optimize", "performance"), StepAction.OPTIMIZE),
    (("document", "comment"), StepAction.DOCUMENT),
    (("test",), StepAction.TEST),
    (("review", "check"), StepAction.REVIEW),
    (("fix", "bug"), StepAction.FIX),
)


def infer_action(text: str) -> StepAction:
    """Guess a step action from its description."""
    lower = text.lower()
    for keywords, action in _ACTION_KEYWORDS:
        if any(word in lower for word in keywords):
            return action
    return StepAction.ANALYZE


class PlanPayload(BaseModel):
    """Validates the planner's JSON reply before it becomes a plan."""

    strategy: str = ""
    steps: List[Dict[str, Any]] = Field(..., min_length=1)


def _normalize_step(index: int, raw: Dict[str, Any]) -> Step:
    step_id = raw.get("id") or raw.get("name") or f"step-{index + 1}"
    name = raw.get("name") or step_id
    description = raw.get("description") or ""

    action = raw.get("action")
    valid_actions = {a.value for a in StepAction}
    if not isinstance(action, str) or action.lower() not in valid_actions:
        action = infer_action(f"{name} {description}").value

    priority = str(raw.get("priority", "medium")).lower()
    complexity = str(raw.get("estimatedComplexity", raw.get("estimated_complexity", "moderate")))
    depends_on = raw.get("dependsOn", raw.get("depends_on", []))
    if not isinstance(depends_on, list) or not all(isinstance(d, str) for d in depends_on):
        raise PlanningError(f"Step '{step_id}': dependsOn must be a list of step ids")

    try:
        return Step(
            id=str(step_id),
            name=str(name),
            description=str(description),
            action=action.lower(),
            priority=priority if priority in _PRIORITIES else "medium",
            estimated_complexity=(
                complexity.lower() if complexity.lower() in _COMPLEXITIES else "moderate"
            ),
            depends_on=depends_on,
        )
    except PydanticValidationError as exc:
        raise PlanningError(f"Step '{step_id}' is invalid: {exc}") from exc


def parse_plan(goal: str, raw: str, keep: Sequence[Step] = ()) -> WorkflowPlan:
    """
    Build and validate a plan from the planner's raw reply.

    Parameters
    ----------
    goal:
        The caller's goal, stored on the plan.
    raw:
        Model output containing one JSON object with a ``steps`` array.
    keep:
        Already completed steps carried over from a previous plan; new steps may depend on them.

    Raises
    ------
    PlanningError
        If the reply holds no plan, a step is malformed, or the plan is empty, cyclic, has
        duplicate ids or references unknown steps.
    """
    obj = find_object_with(raw or "", "steps")
    if obj is None:
        raise PlanningError("Response does not contain one JSON object with a 'steps' array")
    try:
        payload = PlanPayload.model_validate(obj)
    except PydanticValidationError as exc:
        raise PlanningError(f"Plan is malformed: {exc.errors()[0]['msg']}") from exc

    steps = [_normalize_step(i, s) for i, s in enumerate(payload.steps)]
    carried = [s.model_copy() for s in keep]
    plan = WorkflowPlan(goal=goal, strategy=payload.strategy, steps=[*carried, *steps])
    plan.topological_order()
    return plan


class Planner:
    """Turns a goal (and later, reviewer feedback) into a validated plan."""

    TEMPERATURE: ClassVar[float] = 0.3

    SYSTEM_PROMPT: ClassVar[
        str
    ] = """\
You are the planning agent of HybridMind, a software engineering assistant.
Break the user's goal into concrete, ordered steps. Respond with ONE JSON object and no other text:
{"strategy": "<brief approach>",
 "steps": [{"id": "<unique id>", "name": "<short name>", "description": "<what the step does>",
            "action": "analyze|refactor|optimize|document|test|review|fix",
            "priority": "high|medium|low", "estimatedComplexity": "simple|moderate|complex",
            "dependsOn": ["<ids of steps that must finish first>"]}]}
Dependencies must reference earlier step ids and must not form a cycle.
"""

    AUTONOMOUS_DIRECTIVE: ClassVar[str] = (
        "\nAUTONOMOUS EXECUTION MODE: every step must be immediately executable and produce "
        "complete, working results. No placeholders."
    )

    CORRECTION: ClassVar[str] = "Return a corrected plan as exactly one JSON object."

    def __init__(
        self,
        model: str,
        invoke: Invoke,
        recorder: TraceRecorder,
        *,
        autonomous: bool = True,
        max_steps: int | None = None,
    ) -> None:
        self.model = model
        self._invoke = invoke
        self._recorder = recorder
        self.autonomous = autonomous
        self.max_steps = max_steps

    def _system_prompt(self) -> str:
        prompt = self.SYSTEM_PROMPT
        if self.autonomous:
            prompt += self.AUTONOMOUS_DIRECTIVE
        if self.max_steps:
            prompt += f"\nUse at most {self.max_steps} steps."
        return prompt

    async def create_plan(self, goal: str, code: str | None = None) -> WorkflowPlan:
        messages: List[Message] = [
            {"role": "system", "content": self._system_prompt()},
            {"role": "user", "content": f"GOAL:\n{goal}{context_block(code)}"},
        ]
        plan = await self._request(goal, messages)
        logger.info("Plan created: %d steps, strategy: %s", len(plan.steps), plan.strategy)
        return plan

    async def revise_plan(
        self, plan: WorkflowPlan, feedback: str, history: Sequence[str] = ()
    ) -> WorkflowPlan:
        """
        Ask for the remaining work given reviewer *feedback*.

        Completed steps are kept verbatim; failed and skipped steps are dropped and replaced by
        whatever the planner proposes.
        """
        completed = [s for s in plan.steps if s.status is StepStatus.COMPLETED]
        current = plan.model_dump(by_alias=True, mode="json")
        done_ids = ", ".join(s.id for s in completed) or "none"
        user = (
            f"GOAL:\n{plan.goal}\n\nCURRENT PLAN:\n{dumps(current)}\n\n"
            f"COMPLETED STEP IDS: {done_ids}\n"
        )
        if history:
            user += "\nRESULTS SO FAR:\n" + "\n".join(history) + "\n"
        user += (
            f"\nREVIEWER FEEDBACK:\n{feedback}\n\n"
            "Return ONLY the new steps still needed. Do not reuse completed step ids; "
            "new steps may depend on completed ones."
        )
        messages: List[Message] = [
            {"role": "system", "content": self._system_prompt()},
            {"role": "user", "content": user},
        ]
        revised = await self._request(plan.goal, messages, keep=completed)
        added = len(revised.steps) - len(completed)
        logger.info("Plan revised: %d new steps (%d kept)", added, len(completed))
        return revised

    async def _request(
        self, goal: str, messages: List[Message], keep: Sequence[Step] = ()
    ) -> WorkflowPlan:
        options = {"role": "planner", "temperature": self.TEMPERATURE}
        result = await self._invoke(self.model, messages, options)
        self._recorder.ok("planner", result)
        try:
            return parse_plan(goal, result.content, keep)
        except PlanningError as exc:
            logger.warning("Planner reply rejected, asking once more: %s", exc.reason)
            retry_messages = corrective_messages(
                messages, result.content, exc.reason, self.CORRECTION
            )

        result = await self._invoke(self.model, retry_messages, options)
        self._recorder.ok("planner", result)
        return parse_plan(goal, result.content, keep)
