"""
Agent state machine for HybridMind.

    PLANNING -> EXECUTING -> REVIEWING -> DONE
                    ^            |
                    +--- REPLANNING
    (any state) -> FAILED when no usable output exists

:class:`AgentRun` owns one run.  :meth:`AgentRun.advance` drives it until one plan step has been
attempted or a terminal state is reached, which lets the HTTP layer expose step-wise execution;
:meth:`AgentRun.run` simply advances until the end.
"""

import asyncio
import logging
from enum import Enum
from typing import (
    Any,
    Dict,
    List,
)
from uuid import uuid4

from hybridmind.agent.executor import (
    StepExecutor,
    StepOutcome,
)
from hybridmind.agent.planner import Planner
from hybridmind.agent.reviewer import (
    Review,
    Reviewer,
    Verdict,
)
from hybridmind.agent.roles import (
    Invoke,
    TraceRecorder,
)
from hybridmind.config import settings
from hybridmind.core.errors import (
    HybridMindError,
    InvalidRequest,
    PlanningError,
    SecurityViolation,
)
from hybridmind.core.schema import (
    Step,
    StepStatus,
    Tier,
    WorkflowPlan,
)
from hybridmind.core.selector import (
    ModelSelector,
    RoleModels,
)

logger = logging.getLogger(__name__)


class AgentState(str, Enum):
    PLANNING = "planning"
    EXECUTING = "executing"
    REVIEWING = "reviewing"
    REPLANNING = "replanning"
    DONE = "done"
    FAILED = "failed"


TERMINAL_STATES = frozenset({AgentState.DONE, AgentState.FAILED})


class AgentRun:
    """
    One Planner -> Executor -> Reviewer run.

    Parameters
    ----------
    goal:
        What the caller wants done.
    roles:
        Planner, executor and reviewer models.
    invoke:
        Engine-provided dispatch callable (admission, retries and deadline already applied).
    code:
        Optional code context shared with every role.
    selector:
        When given together with ``per_step_selection``, each step's executor model is chosen by
        :meth:`ModelSelector.select_for_step` instead of ``roles.executor``.
    max_steps:
        Budget of step attempts across all replans.
    max_replans:
        Reviewer-requested replans before the run is closed as a partial success.
    deadline:
        :func:`time.monotonic` timestamp bounding model calls; ``start`` and ``advance`` may
        renew it.
    """

    def __init__(
        self,
        goal: str,
        roles: RoleModels,
        invoke: Invoke,
        *,
        code: str | None = None,
        tier: Tier = Tier.FREE,
        selector: ModelSelector | None = None,
        per_step_selection: bool = False,
        max_steps: int | None = None,
        max_replans: int | None = None,
        autonomy_level: str = "autonomous",
        workspace_root: str | None = None,
        deadline: float | None = None,
    ) -> None:
        self.id = uuid4().hex
        self.deadline = deadline
        self.goal = goal
        self.code = code
        self.roles = roles
        self.tier = tier
        self.selector = selector
        self.per_step_selection = per_step_selection and selector is not None
        self.max_steps = max_steps or settings.AGENT_MAX_STEPS
        self.max_replans = settings.AGENT_MAX_REPLANS if max_replans is None else max_replans
        self.autonomy_level = autonomy_level

        autonomous = autonomy_level == "autonomous"
        self.recorder = TraceRecorder()
        self.planner = Planner(
            roles.planner, invoke, self.recorder, autonomous=autonomous, max_steps=self.max_steps
        )
        self.executor = StepExecutor(
            invoke, self.recorder, workspace_root=workspace_root, autonomous=autonomous
        )
        self.reviewer = Reviewer(roles.reviewer, invoke, self.recorder, autonomous=autonomous)

        self.state = AgentState.PLANNING
        self.plan: WorkflowPlan | None = None
        self.outcomes: List[StepOutcome] = []
        self.review: Review | None = None
        self.replans = 0
        self.budget_exhausted = False
        self.forced_done = False
        self.error: HybridMindError | None = None
        # Serializes start() and advance() on one run.
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    @property
    def finished(self) -> bool:
        return self.state in TERMINAL_STATES

    @property
    def partial(self) -> bool:
        """True when the run ended without every planned step completing cleanly."""
        if self.state is not AgentState.DONE:
            return False
        if self.forced_done or self.budget_exhausted or self.error is not None:
            return True
        return any(s.status is not StepStatus.COMPLETED for s in self.plan.steps)

    async def start(self, deadline: float | None = None) -> WorkflowPlan:
        """Run the planning phase only and return the plan."""
        async with self._lock:
            if deadline is not None:
                self.deadline = deadline
            if self.state is not AgentState.PLANNING:
                raise InvalidRequest(f"Agent run {self.id} is already past planning")
            await self._plan()
            if self.state is AgentState.FAILED:
                raise self.error
            return self.plan

    async def advance(self, deadline: float | None = None) -> StepOutcome | None:
        """
        Drive the machine until one step has been attempted or the run is finished.

        Returns the step outcome, or ``None`` once a terminal state is reached.  *deadline*, when
        given, replaces the run's deadline for this and later calls.
        """
        async with self._lock:
            if deadline is not None:
                self.deadline = deadline
            while not self.finished:
                if self.state is AgentState.PLANNING:
                    await self._plan()
                elif self.state is AgentState.EXECUTING:
                    outcome = await self._execute_next()
                    if outcome is not None:
                        return outcome
                elif self.state is AgentState.REVIEWING:
                    await self._review()
                elif self.state is AgentState.REPLANNING:
                    await self._replan()
            return None

    async def run(self) -> "AgentRun":
        while await self.advance() is not None:
            pass
        return self

    def history(self) -> List[str]:
        """One line per successful step, fed to later prompts."""
        return [f"- {o.step_id}: {o.summary}" for o in self.outcomes if o.success]

    def output(self) -> str | None:
        if self.review is not None and self.review.summary and not self.review.forced:
            return self.review.summary
        done = [o for o in self.outcomes if o.success]
        return done[-1].summary if done else None

    def failed_trace_index(self) -> int | None:
        """
        Trace index of the attempt that stopped the run, if any.

        For a failed plan step this is the step's last failed attempt, so a bad reply that was
        corrected on retry is never reported.  Without a failed step, a planner or reviewer
        error that closed the run is reported instead.
        """
        trace = self.recorder.trace
        failed = next((o.step_id for o in self.outcomes if not o.success), None)
        if failed is not None:
            hits = [t.index for t in trace if t.step_id == failed and not t.success]
            if hits:
                return hits[-1]
        if self.error is not None:
            hits = [t.index for t in trace if not t.success]
            if hits:
                return hits[-1]
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sessionId": self.id,
            "state": self.state.value,
            "partial": self.partial,
            "goal": self.goal,
            "models": self.roles.as_dict(),
            "plan": self.plan.model_dump(by_alias=True, mode="json") if self.plan else None,
            "steps": [o.to_dict() for o in self.outcomes],
            "review": self.review.model_dump(mode="json") if self.review else None,
            "replans": self.replans,
            "error": self.error.to_dict() if self.error else None,
            "usage": self.recorder.usage.model_dump(by_alias=True),
        }

    # ------------------------------------------------------------------
    # States
    # ------------------------------------------------------------------
    def _transition(self, state: AgentState) -> None:
        logger.info("Agent run %s: %s -> %s", self.id, self.state.value, state.value)
        self.state = state

    def _fail(self, exc: HybridMindError) -> None:
        self.error = exc
        self._transition(AgentState.FAILED)

    def _halt(self, exc: HybridMindError) -> None:
        """Stop executing: keep completed work, skip what is left."""
        self.error = exc
        for step in self.plan.pending:
            step.status = StepStatus.SKIPPED
        if any(o.success for o in self.outcomes):
            self._transition(AgentState.DONE)
        else:
            self._transition(AgentState.FAILED)

    async def _plan(self) -> None:
        try:
            self.plan = await self.planner.create_plan(self.goal, self.code)
        except HybridMindError as exc:
            if not isinstance(exc, PlanningError):
                self.recorder.failed("planner", self.roles.planner, exc)
            logger.warning("Planning failed for run %s: %s", self.id, exc.reason)
            self._fail(exc)
            return
        self._transition(AgentState.EXECUTING)

    def _executor_model(self, step: Step) -> str:
        if self.per_step_selection:
            return self.selector.select_for_step(step, self.tier).id
        return self.roles.executor

    async def _execute_next(self) -> StepOutcome | None:
        for skipped in self.plan.skip_blocked():
            logger.info("Skipping step '%s': a prerequisite did not complete", skipped.id)

        step = self.plan.next_runnable()
        if step is None:
            self._finish_execution()
            return None
        if len(self.outcomes) >= self.max_steps:
            logger.warning("Run %s hit its budget of %d steps", self.id, self.max_steps)
            self.budget_exhausted = True
            self._finish_execution()
            return None

        model = self._executor_model(step)
        position = len(self.outcomes) + 1
        total = len(self.outcomes) + len(self.plan.pending)
        try:
            outcome = await self.executor.execute(
                step,
                model,
                goal=self.goal,
                code=self.code,
                position=position,
                total=total,
                history=self.history(),
            )
        except HybridMindError as exc:
            logger.warning("Step '%s' halted run %s: %s", step.id, self.id, exc.reason)
            if not isinstance(exc, SecurityViolation):
                # The executor already traced the rejected reply.
                self.recorder.failed("executor", model, exc, step_id=step.id)
            step.status = StepStatus.FAILED
            outcome = StepOutcome(step_id=step.id, model=model, success=False, error=exc)
            self.outcomes.append(outcome)
            self._halt(exc)
            return outcome

        step.status = StepStatus.COMPLETED if outcome.success else StepStatus.FAILED
        self.outcomes.append(outcome)
        return outcome

    def _finish_execution(self) -> None:
        if any(o.success for o in self.outcomes):
            self._transition(AgentState.REVIEWING)
            return
        failed = next((o.error for o in self.outcomes if o.error is not None), None)
        self._fail(failed or PlanningError("No plan step could be executed"))

    async def _review(self) -> None:
        try:
            self.review = await self.reviewer.review(self.plan, self.history(), self.code)
        except HybridMindError as exc:
            logger.warning("Review failed for run %s: %s", self.id, exc.reason)
            self.recorder.failed("reviewer", self.roles.reviewer, exc)
            self.error = exc
            self._transition(AgentState.DONE)
            return

        if self.review.forced:
            self.forced_done = True
        if self.review.verdict is Verdict.DONE:
            self._transition(AgentState.DONE)
            return
        if self.replans >= self.max_replans or self.budget_exhausted:
            logger.warning(
                "Run %s: reviewer asked to replan but the budget is spent (%d replans)",
                self.id,
                self.replans,
            )
            self.forced_done = True
            self._transition(AgentState.DONE)
            return
        self._transition(AgentState.REPLANNING)

    async def _replan(self) -> None:
        self.replans += 1
        feedback = self.review.feedback or self.review.summary or "The goal is not achieved yet."
        try:
            self.plan = await self.planner.revise_plan(self.plan, feedback, self.history())
        except HybridMindError as exc:
            if not isinstance(exc, PlanningError):
                self.recorder.failed("planner", self.roles.planner, exc)
            logger.warning("Replanning failed for run %s: %s", self.id, exc.reason)
            self.error = exc
            self.forced_done = True
            self._transition(AgentState.DONE)
            return
        self.review = None
        self._transition(AgentState.EXECUTING)
