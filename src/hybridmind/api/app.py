"""
Core API backend for HybridMind.

This module exposes the execution engine over HTTP.  Endpoints:
- **GET /health**                     - liveness probe for health checks.
- **POST /run/single|parallel|chain** - run a prompt in one of the non-agentic modes.
- **POST /agent/plan**                - create an agent session and return its plan.
- **POST /agent/next**                - execute the next step of a session (review once done).
- **POST /agent/execute**             - run the whole Planner -> Executor -> Reviewer loop.
- **GET /agent/status/{session_id}**  - current state of an agent session.
- **GET /models**, **POST /models/recommend**, **GET /models/workflows** - catalogue queries.

Every success is ``{"success": true, "data": ..., "meta": {...}}`` and every failure
``{"success": false, "error": ..., "code": ...}``.  The caller's tier comes from the
``X-HybridMind-Tier`` header, set by the licensing layer in front of this service.
"""

import logging
import time
from collections import OrderedDict
from contextlib import asynccontextmanager
from typing import (
    Any,
    AsyncIterator,
    Dict,
    List,
    Optional,
)

from fastapi import (
    Depends,
    FastAPI,
    Header,
    Query,
    Request,
)
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from hybridmind.agent.agent_loop import (
    AgentRun,
    AgentState,
)
from hybridmind.api.models import (
    AgentRequest,
    ApiResponse,
    NextStepRequest,
    RecommendRequest,
    RunRequest,
)
from hybridmind.common import (
    AnsiColors,
    colored_print,
)
from hybridmind.config import settings
from hybridmind.core.admission import UsageLedger
from hybridmind.core.dispatcher import Dispatcher
from hybridmind.core.engine import ExecutionEngine
from hybridmind.core.errors import (
    ErrorKind,
    HybridMindError,
    InvalidRequest,
)
from hybridmind.core.schema import (
    ExecutionRequest,
    ExecutionResult,
    Mode,
    Tier,
)
from hybridmind.core.selector import WORKFLOW_STRATEGIES

logger = logging.getLogger(__name__)

_STATUS_CODES: Dict[ErrorKind, int] = {
    ErrorKind.RATE_LIMITED: 429,
    ErrorKind.BUDGET_EXCEEDED: 429,
    ErrorKind.PAYLOAD_TOO_LARGE: 413,
    ErrorKind.TIER_RESTRICTED: 403,
    ErrorKind.MODEL_NOT_FOUND: 404,
    ErrorKind.INVALID_REQUEST: 400,
    ErrorKind.PLANNING_ERROR: 422,
    ErrorKind.VALIDATION_ERROR: 422,
    ErrorKind.SECURITY_VIOLATION: 422,
    ErrorKind.AUTH_ERROR: 502,
    ErrorKind.RATE_LIMITED_BY_PROVIDER: 502,
    ErrorKind.PROVIDER_UNAVAILABLE: 502,
    ErrorKind.PROVIDER_ERROR: 502,
    ErrorKind.MALFORMED_RESPONSE: 502,
    ErrorKind.TIMEOUT: 504,
    ErrorKind.CANCELLED: 499,
}

# Process-wide services.  Tests replace ``engine`` with one built on a fake dispatcher.
ledger = UsageLedger()
engine = ExecutionEngine(
    Dispatcher(provider_override=settings.PROVIDER_OVERRIDE),
    ledger,
    workspace_root=settings.WORKSPACE_ROOT,
)

# Agent sessions (in-memory, oldest evicted first)
sessions: "OrderedDict[str, AgentRun]" = OrderedDict()


@asynccontextmanager
async def lifespan(_: FastAPI) -> AsyncIterator[None]:
    yield
    await engine.dispatcher.aclose()


app = FastAPI(
    title="HybridMind API",
    version="0.1.0",
    description="Multi-model orchestration and agentic workflows",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[f"http://localhost:{settings.API_PORT}"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---------------------------------------------------------------------------
# Error envelope
# ---------------------------------------------------------------------------
def error_response(
    status_code: int,
    error: str,
    code: str,
    retry_after: float | None = None,
    data: Any = None,
) -> JSONResponse:
    body: Dict[str, Any] = {"success": False, "error": error, "code": code}
    if data is not None:
        body["data"] = data
    headers = {"Retry-After": str(max(1, round(retry_after)))} if retry_after else None
    return JSONResponse(status_code=status_code, content=body, headers=headers)


@app.exception_handler(HybridMindError)
async def hybridmind_error_handler(_: Request, exc: HybridMindError) -> JSONResponse:
    status_code = _STATUS_CODES.get(exc.kind, 500)
    logger.info("Request failed with %s (%d): %s", exc.kind.value, status_code, exc.reason)
    return error_response(status_code, exc.reason, exc.kind.value, exc.retry_after)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(_: Request, exc: RequestValidationError) -> JSONResponse:
    reason = "; ".join(
        f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in exc.errors()
    )
    return error_response(422, reason, ErrorKind.INVALID_REQUEST.value)


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(_: Request, exc: StarletteHTTPException) -> JSONResponse:
    return error_response(exc.status_code, str(exc.detail), "HTTPError")


# ---------------------------------------------------------------------------
# Helper functions
# ---------------------------------------------------------------------------
def caller_tier(x_hybridmind_tier: str = Header("free")) -> Tier:
    """Tier asserted by the licensing layer."""
    try:
        return Tier(x_hybridmind_tier.strip().lower())
    except ValueError as exc:
        raise InvalidRequest(f"Unknown tier '{x_hybridmind_tier}'") from exc


def envelope(data: Any, tier: Tier, result: ExecutionResult | None = None) -> ApiResponse:
    meta: Dict[str, Any] = {"tier": tier.value, "timestamp": time.time()}
    if result is not None:
        meta["usage"] = result.usage.model_dump(by_alias=True)
        meta["mode"] = result.mode.value
    return ApiResponse(data=data, meta=meta)


def remember(run: AgentRun) -> None:
    sessions[run.id] = run
    while len(sessions) > settings.AGENT_SESSION_LIMIT:
        evicted, _ = sessions.popitem(last=False)
        logger.info("Evicted agent session %s", evicted)


def get_session(session_id: str) -> AgentRun:
    run = sessions.get(session_id)
    if run is None:
        raise StarletteHTTPException(status_code=404, detail=f"Unknown session '{session_id}'")
    return run


def request_deadline() -> float:
    """Monotonic deadline for work done on behalf of one HTTP request."""
    return time.monotonic() + settings.REQUEST_TIMEOUT_SECONDS


def agent_request(req: AgentRequest, tier: Tier) -> ExecutionRequest:
    return ExecutionRequest(
        mode=Mode.AGENTIC,
        prompt=req.goal,
        code=req.code,
        models=req.models,
        temperature=req.temperature,
        max_tokens=req.max_tokens,
        tier=tier,
        options=req.options,
    )


async def run_mode(mode: Mode, req: RunRequest, tier: Tier) -> Any:
    request = ExecutionRequest(
        mode=mode,
        prompt=req.prompt,
        code=req.code,
        models=req.model_list(),
        temperature=req.temperature,
        max_tokens=req.max_tokens,
        tier=tier,
        options=req.options,
    )
    result = await engine.execute(request, timeout=settings.REQUEST_TIMEOUT_SECONDS)
    data = result.model_dump(by_alias=True, mode="json")
    if not result.success:
        # Parallel run where every model failed.
        first = result.data["error"]
        return error_response(
            _STATUS_CODES.get(ErrorKind(first["code"]), 502),
            first["error"],
            first["code"],
            first.get("retryAfter"),
            data=data,
        )
    return envelope(data, tier, result)


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------
@app.get("/health", summary="Health check")
async def health() -> dict[str, str]:
    """Return a simple liveness payload."""
    return {"status": "ok"}


@app.post("/run/single", summary="Run one model")
async def run_single(req: RunRequest, tier: Tier = Depends(caller_tier)) -> Any:
    return await run_mode(Mode.SINGLE, req, tier)


@app.post("/run/parallel", summary="Fan out to several models")
async def run_parallel(req: RunRequest, tier: Tier = Depends(caller_tier)) -> Any:
    return await run_mode(Mode.PARALLEL, req, tier)


@app.post("/run/chain", summary="Pipe each model's answer into the next")
async def run_chain(req: RunRequest, tier: Tier = Depends(caller_tier)) -> Any:
    return await run_mode(Mode.CHAIN, req, tier)


@app.post("/agent/plan", summary="Create an agent session and plan it")
async def agent_plan(req: AgentRequest, tier: Tier = Depends(caller_tier)) -> ApiResponse:
    run = engine.create_agent_run(agent_request(req, tier))
    plan = await run.start(deadline=request_deadline())
    remember(run)
    data = {
        "sessionId": run.id,
        "state": run.state.value,
        "models": run.roles.as_dict(),
        "plan": plan.model_dump(by_alias=True, mode="json"),
    }
    return envelope(data, tier)


@app.post("/agent/next", summary="Execute the next step of an agent session")
async def agent_next(req: NextStepRequest, tier: Tier = Depends(caller_tier)) -> ApiResponse:
    run = get_session(req.session_id)
    outcome = await run.advance(deadline=request_deadline())
    if outcome is None and run.state is AgentState.FAILED:
        raise run.error
    data = {
        "step": outcome.to_dict() if outcome is not None else None,
        "finished": run.finished,
        "session": run.to_dict(),
    }
    return envelope(data, tier)


@app.post("/agent/execute", summary="Run an agent to completion")
async def agent_execute(req: AgentRequest, tier: Tier = Depends(caller_tier)) -> ApiResponse:
    run = engine.create_agent_run(agent_request(req, tier), request_deadline())
    remember(run)
    await run.run()
    result = engine.agent_result(run)
    return envelope(result.model_dump(by_alias=True, mode="json"), tier, result)


@app.get("/agent/status/{session_id}", summary="Agent session state")
async def agent_status(session_id: str, tier: Tier = Depends(caller_tier)) -> ApiResponse:
    return envelope(get_session(session_id).to_dict(), tier)


@app.get("/models", summary="List catalogue models")
async def list_models(
    model_tier: Optional[Tier] = Query(None, alias="tier"),
    tier: Tier = Depends(caller_tier),
) -> ApiResponse:
    models: List[Dict[str, Any]] = [
        d.model_dump(by_alias=True, mode="json") for d in engine.registry.all(tier=model_tier)
    ]
    return envelope(models, tier)


@app.post("/models/recommend", summary="Recommend models for a task")
async def recommend_models(
    req: RecommendRequest, tier: Tier = Depends(caller_tier)
) -> ApiResponse:
    picks = engine.selector.recommend(req.task, req.cost_tier, req.count, caller_tier=tier)
    return envelope([d.model_dump(by_alias=True, mode="json") for d in picks], tier)


@app.get("/models/workflows", summary="Workflow strategy table")
async def list_workflows(tier: Tier = Depends(caller_tier)) -> ApiResponse:
    data = {name: roles.as_dict() for name, roles in WORKFLOW_STRATEGIES.items()}
    return envelope(data, tier)


@app.get("/", summary="API root")
async def root() -> dict[str, str]:
    """Return a simple welcome message."""
    return {"message": "Welcome to the HybridMind API! Use /docs for API documentation."}


# ---------------------------------------------------------------------------
# Public helper to launch the API (imported by main.py)
# ---------------------------------------------------------------------------
def run_api(
    host: str = "0.0.0.0", port: int = 8000, reload: bool = False, log_level: str | None = None
) -> None:
    """Start a uvicorn server hosting *app*.

    Parameters
    ----------
    host, port:
        Bind address for the HTTP server.
    reload:
        If *True*, enable auto-reload (useful in development).
    log_level:
        Logging level to use (default from settings if not provided).
    """

    # Lazy import - keeps uvicorn out of the import path of the library modules
    import uvicorn  # pylint: disable=import-outside-toplevel

    if log_level is None:
        log_level = settings.LOG_LEVEL

    logger.info(
        "Starting HybridMind API at %s:%d (reload=%s, log_level=%s)", host, port, reload, log_level
    )
    if settings.PROVIDER_OVERRIDE:
        logger.warning("Every model is routed through '%s'", settings.PROVIDER_OVERRIDE)
    elif not settings.OPENROUTER_API_KEY:
        logger.warning("OPENROUTER_API_KEY is not set; provider calls will fail with AuthError")

    colored_print(f"HybridMind API is running at http://localhost:{port}.", AnsiColors.GREEN)
    colored_print(f"Visit http://localhost:{port}/docs for API documentation.", AnsiColors.BLUE)
    uvicorn.run(
        "hybridmind.api.app:app",
        host=host,
        port=port,
        reload=reload,
        log_level=log_level,
    )


# ---------------------------------------------------------------------------
# `python -m hybridmind.api.app` helper
# ---------------------------------------------------------------------------
if __name__ == "__main__":
    run_api(reload=True)
