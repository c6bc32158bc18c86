"""
Execution engine: the four modes on top of the dispatcher.

Every model invocation in every mode goes through :meth:`ExecutionEngine.invoke`, which books one
unit of admission per attempt, applies the retry policy and the caller's deadline, and reconciles
the estimated cost with the actual one afterwards.
"""

import asyncio
import logging
import time
from typing import (
    Any,
    Dict,
    List,
    Mapping,
)

from hybridmind.agent.agent_loop import (
    AgentRun,
    AgentState,
)
from hybridmind.config import settings
from hybridmind.core.admission import (
    Admission,
    Booking,
)
from hybridmind.core.dispatcher import (
    Dispatcher,
    RetryPolicy,
)
from hybridmind.core.errors import (
    HybridMindError,
    InvalidRequest,
    TierRestricted,
)
from hybridmind.core.registry import (
    ModelRegistry,
    default_registry,
)
from hybridmind.core.schema import (
    DispatchResult,
    ErrorInfo,
    ExecutionRequest,
    ExecutionResult,
    Mode,
    ModelResult,
    StepTrace,
    Tier,
    Usage,
)
from hybridmind.core.selector import (
    ModelSelector,
    RoleModels,
)
from hybridmind.providers import Message

logger = logging.getLogger(__name__)

ADAPTIVE_WORKFLOW = "adaptive"
"""Workflow type that picks the executor model per step."""


def build_messages(prompt: str, code: str | None = None) -> List[Message]:
    content = prompt if not code else f"{prompt}\n\nCODE:\n{code}"
    return [{"role": "user", "content": content}]


def build_chain_messages(
    prompt: str, code: str | None, previous_model: str, previous_output: str
) -> List[Message]:
    """Prompt for chain step *i + 1*: the original request plus step *i*'s answer."""
    content = (
        f"ORIGINAL REQUEST:\n{prompt}\n\n"
        f"PREVIOUS MODEL'S RESPONSE ({previous_model}):\n{previous_output}\n\n"
        "Build on the previous model's response: correct it, improve it and complete the request."
    )
    if code:
        content += f"\n\nCODE:\n{code}"
    return [{"role": "user", "content": content}]


class ExecutionEngine:
    """
    Runs :class:`ExecutionRequest` objects.

    Parameters
    ----------
    dispatcher:
        Performs the provider calls.
    admission:
        Rate-limit and budget service (usually a :class:`UsageLedger`).
    selector:
        Automatic model selection for requests that name no models.
    retry_policy:
        Applied to every invocation; defaults to :class:`RetryPolicy`.
    workspace_root:
        Root that agent tool-call paths must stay inside.
    """

    def __init__(
        self,
        dispatcher: Dispatcher,
        admission: Admission,
        selector: ModelSelector | None = None,
        registry: ModelRegistry | None = None,
        retry_policy: RetryPolicy | None = None,
        workspace_root: str | None = None,
    ) -> None:
        self.dispatcher = dispatcher
        self.admission = admission
        self.registry = registry or dispatcher.registry or default_registry
        self.selector = selector or ModelSelector(self.registry)
        self.retry_policy = retry_policy or RetryPolicy()
        self.workspace_root = workspace_root

    # ------------------------------------------------------------------
    # Single invocation
    # ------------------------------------------------------------------
    async def invoke(
        self,
        request: ExecutionRequest,
        model_id: str,
        messages: List[Message],
        options: Mapping[str, Any] | None = None,
        deadline: float | None = None,
    ) -> DispatchResult:
        """
        Dispatch once (with retries), admitting every attempt against the caller's tier.

        Failed attempts are refunded; the successful one is charged at its actual cost.
        """
        max_tokens = request.max_tokens or settings.DEFAULT_MAX_TOKENS
        opts: Dict[str, Any] = {
            "temperature": settings.DEFAULT_TEMPERATURE,
            "max_tokens": max_tokens,
        }
        opts.update(options or {})
        if request.temperature is not None:
            opts["temperature"] = request.temperature

        prompt_chars = sum(len(m["content"]) for m in messages)
        estimate = self.registry.estimate_cost(model_id, prompt_chars, max_tokens)
        booked: List[Booking] = []

        def admit(attempt: int) -> None:
            booked.append(self.admission.admit(request.tier, estimate, request.payload_chars))

        result: DispatchResult | None = None
        try:
            result = await self.dispatcher.dispatch_with_retry(
                model_id,
                messages,
                opts,
                policy=self.retry_policy,
                deadline=deadline,
                before_attempt=admit,
            )
            return result
        finally:
            for index, booking in enumerate(booked):
                last = index == len(booked) - 1
                actual = result.cost_usd if result is not None and last else 0.0
                self.admission.record_usage(request.tier, booking, actual)

    # ------------------------------------------------------------------
    # Model selection and tier gating
    # ------------------------------------------------------------------
    def _check_allowed(self, tier: Tier, name: str) -> str:
        descriptor = self.registry.resolve(name)
        if tier is Tier.FREE and descriptor.tier is not Tier.FREE:
            raise TierRestricted(
                f"Model '{descriptor.id}' requires the pro tier; free callers may use: "
                + ", ".join(d.id for d in self.registry.all(tier=Tier.FREE))
            )
        return descriptor.id

    def _check_tier(self, request: ExecutionRequest, models: List[str]) -> List[str]:
        """Enforce the tier's model cap and allow-list; returns canonical ids."""
        limits = self.admission.limits(request.tier)
        if len(models) > limits.max_models:
            raise TierRestricted(
                f"The {request.tier.value} tier allows at most {limits.max_models} models per "
                f"request; {len(models)} requested"
            )
        return [self._check_allowed(request.tier, name) for name in models]

    def select_models(self, request: ExecutionRequest) -> List[str]:
        """Models for a single/parallel/chain request, auto-selected when none were named."""
        if request.models:
            models = list(request.models)
        elif request.mode is Mode.SINGLE:
            models = [d.id for d in self.selector.recommend("coding", caller_tier=request.tier)]
        elif request.mode is Mode.PARALLEL:
            count = self.admission.limits(request.tier).max_models
            models = [
                d.id
                for d in self.selector.recommend("coding", count=count, caller_tier=request.tier)
            ]
        else:
            roles = self.selector.select_for_workflow(request.options.workflow_type, request.tier)
            unique = list(dict.fromkeys([roles.planner, roles.executor, roles.reviewer]))
            models = unique[: self.admission.limits(request.tier).max_models]

        if request.mode is Mode.SINGLE and len(models) != 1:
            raise InvalidRequest("Single mode takes exactly one model")
        if request.mode is Mode.PARALLEL and len(models) < 2:
            raise InvalidRequest("Parallel mode needs at least two models")
        if not models:
            raise InvalidRequest("No model available for this request")
        return self._check_tier(request, models)

    def select_roles(self, request: ExecutionRequest) -> tuple[RoleModels, bool]:
        """
        Planner / executor / reviewer for an agentic request.

        Returns the roles and whether the executor is chosen per step.  Named models map to
        ``[planner, executor, reviewer]``; one model fills every role, two share planner and
        reviewer.
        """
        models = request.models
        if models:
            resolved = self._check_tier(request, list(models))
            if len(resolved) > 3:
                raise InvalidRequest("Agentic mode takes at most three models")
            if len(resolved) == 1:
                resolved = resolved * 3
            elif len(resolved) == 2:
                resolved = [resolved[0], resolved[1], resolved[0]]
            return RoleModels(*resolved), False

        workflow = request.options.workflow_type
        adaptive = workflow == ADAPTIVE_WORKFLOW
        roles = self.selector.select_for_workflow(None if adaptive else workflow, request.tier)
        for name in set(roles.as_dict().values()):
            self._check_allowed(request.tier, name)
        return roles, adaptive

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------
    async def execute(
        self, request: ExecutionRequest, timeout: float | None = None
    ) -> ExecutionResult:
        """
        Run *request* in its mode.

        *timeout* bounds the whole request; dispatches still outstanding when it expires report
        ``Cancelled``.
        """
        deadline = time.monotonic() + timeout if timeout else None
        logger.info("Executing %s request for the %s tier", request.mode.value, request.tier.value)
        logger.debug("Request payload: %s", request.prompt)

        if request.mode is Mode.AGENTIC:
            run = self.create_agent_run(request, deadline)
            await run.run()
            return self.agent_result(run)

        models = self.select_models(request)
        if request.mode is Mode.SINGLE:
            return await self._run_single(request, models[0], deadline)
        if request.mode is Mode.PARALLEL:
            return await self._run_parallel(request, models, deadline)
        return await self._run_chain(request, models, deadline)

    async def _run_single(
        self, request: ExecutionRequest, model: str, deadline: float | None
    ) -> ExecutionResult:
        result = await self.invoke(
            request, model, build_messages(request.prompt, request.code), deadline=deadline
        )
        return ExecutionResult(
            mode=Mode.SINGLE,
            success=True,
            output=result.content,
            results=[
                ModelResult(
                    model=result.model, success=True, output=result.content, usage=result.usage
                )
            ],
            usage=result.usage,
            data={"model": result.model, "attempts": result.attempts, "costUsd": result.cost_usd},
        )

    async def _run_parallel(
        self, request: ExecutionRequest, models: List[str], deadline: float | None
    ) -> ExecutionResult:
        messages = build_messages(request.prompt, request.code)

        async def one(model: str) -> ModelResult:
            try:
                result = await self.invoke(request, model, messages, deadline=deadline)
            except HybridMindError as exc:
                logger.warning("Parallel branch %s failed: %s", model, exc.reason)
                return ModelResult(model=model, success=False, error=ErrorInfo.from_exc(exc))
            return ModelResult(
                model=result.model, success=True, output=result.content, usage=result.usage
            )

        results = list(await asyncio.gather(*(one(m) for m in models)))
        succeeded = [r for r in results if r.success]
        if not succeeded:
            # Every branch failed: surface the first error with the per-model detail attached.
            first = next(r for r in results if r.error is not None)
            logger.warning("All %d parallel branches failed", len(results))
            return ExecutionResult(
                mode=Mode.PARALLEL,
                success=False,
                results=results,
                data={"error": first.error.model_dump(by_alias=True)},
            )

        usage = Usage()
        for r in results:
            usage = usage + r.usage
        return ExecutionResult(
            mode=Mode.PARALLEL,
            success=True,
            partial=len(succeeded) < len(results),
            output=succeeded[0].output,
            results=results,
            usage=usage,
        )

    async def _run_chain(
        self, request: ExecutionRequest, models: List[str], deadline: float | None
    ) -> ExecutionResult:
        trace: List[StepTrace] = []
        usage = Usage()
        messages = build_messages(request.prompt, request.code)

        for index, model in enumerate(models):
            try:
                result = await self.invoke(
                    request, model, messages, {"role": "chain"}, deadline=deadline
                )
            except HybridMindError as exc:
                logger.warning("Chain halted at step %d (%s): %s", index, model, exc.reason)
                trace.append(
                    StepTrace(
                        index=index,
                        model=model,
                        role="chain",
                        success=False,
                        error=ErrorInfo.from_exc(exc),
                    )
                )
                if index == 0:
                    raise
                return ExecutionResult(
                    mode=Mode.CHAIN,
                    success=True,
                    partial=True,
                    output=trace[index - 1].output,
                    usage=usage,
                    trace=trace,
                    failed_step=index,
                )

            usage = usage + result.usage
            trace.append(
                StepTrace(
                    index=index,
                    model=result.model,
                    role="chain",
                    success=True,
                    output=result.content,
                    attempts=result.attempts,
                    usage=result.usage,
                )
            )
            messages = build_chain_messages(
                request.prompt, request.code, result.model, result.content
            )

        return ExecutionResult(
            mode=Mode.CHAIN, success=True, output=trace[-1].output, usage=usage, trace=trace
        )

    # ------------------------------------------------------------------
    # Agentic
    # ------------------------------------------------------------------
    def create_agent_run(
        self, request: ExecutionRequest, deadline: float | None = None
    ) -> AgentRun:
        """
        Build an :class:`AgentRun` whose every model call goes through :meth:`invoke`.

        Calls use the run's current ``deadline``, which step-wise callers renew per request.
        """
        roles, per_step = self.select_roles(request)

        async def invoke(
            model_id: str, messages: List[Message], options: Dict[str, Any]
        ) -> DispatchResult:
            return await self.invoke(request, model_id, messages, options, deadline=run.deadline)

        run = AgentRun(
            request.prompt,
            roles,
            invoke,
            code=request.code,
            tier=request.tier,
            selector=self.selector,
            per_step_selection=per_step,
            max_steps=request.options.max_steps,
            autonomy_level=request.options.autonomy_level,
            workspace_root=self.workspace_root,
            deadline=deadline,
        )
        return run

    @staticmethod
    def agent_result(run: AgentRun) -> ExecutionResult:
        """Convert a finished run to a result, raising its error if it produced nothing."""
        if run.state is AgentState.FAILED:
            raise run.error
        failed = run.failed_trace_index()
        return ExecutionResult(
            mode=Mode.AGENTIC,
            success=True,
            partial=run.partial,
            output=run.output(),
            usage=run.recorder.usage,
            trace=run.recorder.trace,
            failed_step=failed if run.partial else None,
            data=run.to_dict(),
        )
