"""
Schema definitions for caller <-> engine <-> agent messages.

These data models serve as the contract between the HTTP layer, the execution engine and the agent
state machine.  We keep them separate from runtime logic so they can be imported anywhere without
side-effects.
"""

from enum import Enum
from typing import (
    Any,
    Dict,
    FrozenSet,
    List,
    Optional,
)

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
)
from pydantic.alias_generators import to_camel

from hybridmind.core.errors import (
    HybridMindError,
    PlanningError,
)


class _Schema(BaseModel):
    """Base model: camelCase on the wire, snake_case in Python."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class Tier(str, Enum):
    """Caller subscription level."""

    FREE = "free"
    PRO = "pro"


class Mode(str, Enum):
    """Execution strategy."""

    SINGLE = "single"
    PARALLEL = "parallel"
    CHAIN = "chain"
    AGENTIC = "agentic"


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------
class ModelDescriptor(_Schema):
    """One catalogue entry. Immutable."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    id: str
    provider: str
    wire_id: str
    display_name: str
    tier: Tier
    cost_per_million_in: float
    cost_per_million_out: float
    tags: FrozenSet[str] = frozenset()

    @property
    def blended_cost(self) -> float:
        """Average of input and output price per million tokens."""
        return (self.cost_per_million_in + self.cost_per_million_out) / 2

    def cost(self, prompt_tokens: int, completion_tokens: int) -> float:
        """Return the USD cost of a call with the given token counts."""
        return (
            prompt_tokens * self.cost_per_million_in
            + completion_tokens * self.cost_per_million_out
        ) / 1_000_000


# ---------------------------------------------------------------------------
# Requests / results
# ---------------------------------------------------------------------------
class Usage(_Schema):
    """Token accounting for one or more model calls."""

    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    def __add__(self, other: "Usage") -> "Usage":
        return Usage(
            prompt_tokens=self.prompt_tokens + other.prompt_tokens,
            completion_tokens=self.completion_tokens + other.completion_tokens,
            total_tokens=self.total_tokens + other.total_tokens,
        )


class ExecutionOptions(_Schema):
    """Mode-specific knobs."""

    workflow_type: Optional[str] = None
    autonomy_level: str = "autonomous"  # Options: manual, assisted, autonomous
    max_steps: Optional[int] = Field(None, ge=1)


class ExecutionRequest(_Schema):
    """A validated request for one of the four modes."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    mode: Mode
    prompt: str
    code: Optional[str] = None
    models: List[str] = Field(default_factory=list)
    temperature: Optional[float] = Field(None, ge=0.0, le=2.0)
    max_tokens: Optional[int] = Field(None, ge=1)
    tier: Tier = Tier.FREE
    options: ExecutionOptions = Field(default_factory=ExecutionOptions)

    @property
    def payload_chars(self) -> int:
        """Size of the caller-supplied text."""
        return len(self.prompt) + len(self.code or "")


class ErrorInfo(_Schema):
    """Serializable view of a :class:`HybridMindError`."""

    code: str
    error: str
    retry_after: Optional[float] = None

    @classmethod
    def from_exc(cls, exc: HybridMindError) -> "ErrorInfo":
        return cls(code=exc.kind.value, error=exc.reason, retry_after=exc.retry_after)


class DispatchResult(_Schema):
    """Normalized output of a single successful dispatch."""

    model: str
    content: str
    usage: Usage = Field(default_factory=Usage)
    attempts: int = 1
    cost_usd: float = 0.0


class ModelResult(_Schema):
    """Per-model entry of a parallel run."""

    model: str
    success: bool
    output: Optional[str] = None
    error: Optional[ErrorInfo] = None
    usage: Usage = Field(default_factory=Usage)


class StepTrace(_Schema):
    """One entry of the per-step trace of a chain or agent run."""

    index: int
    model: str
    role: str
    success: bool
    step_id: Optional[str] = None
    output: Optional[str] = None
    error: Optional[ErrorInfo] = None
    attempts: int = 1
    usage: Usage = Field(default_factory=Usage)
    tool_call: Optional[Dict[str, Any]] = None


class ExecutionResult(_Schema):
    """Result returned to the caller. Produced once."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    mode: Mode
    success: bool
    partial: bool = False
    output: Optional[str] = None
    results: List[ModelResult] = Field(default_factory=list)
    usage: Usage = Field(default_factory=Usage)
    trace: List[StepTrace] = Field(default_factory=list)
    failed_step: Optional[int] = None
    data: Dict[str, Any] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Agent plans
# ---------------------------------------------------------------------------
class StepAction(str, Enum):
    ANALYZE = "analyze"
    REFACTOR = "refactor"
    OPTIMIZE = "optimize"
    DOCUMENT = "document"
    TEST = "test"
    REVIEW = "review"
    FIX = "fix"


class StepStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class Step(_Schema):
    """A single unit of work in a :class:`WorkflowPlan`."""

    id: str
    name: str
    description: str = ""
    action: StepAction = StepAction.ANALYZE
    priority: str = "medium"  # Options: high, medium, low
    estimated_complexity: str = "moderate"  # Options: simple, moderate, complex
    depends_on: List[str] = Field(default_factory=list)
    status: StepStatus = StepStatus.PENDING


class WorkflowPlan(_Schema):
    """Ordered, dependency-aware decomposition of a goal."""

    goal: str
    strategy: str = ""
    steps: List[Step] = Field(default_factory=list)

    def step(self, step_id: str) -> Step:
        for step in self.steps:
            if step.id == step_id:
                return step
        raise KeyError(step_id)

    def topological_order(self) -> List[Step]:
        """
        Return the steps in an order that respects ``depends_on``.

        Ties keep declaration order.  Raises :class:`PlanningError` for an empty plan, duplicate
        ids, unknown dependencies or cycles.
        """
        if not self.steps:
            raise PlanningError("Plan contains no steps")

        ids = [step.id for step in self.steps]
        if len(set(ids)) != len(ids):
            dupes = sorted({i for i in ids if ids.count(i) > 1})
            raise PlanningError(f"Duplicate step ids: {', '.join(dupes)}")

        known = set(ids)
        for step in self.steps:
            missing = [dep for dep in step.depends_on if dep not in known]
            if missing:
                raise PlanningError(
                    f"Step '{step.id}' depends on unknown step(s): {', '.join(missing)}"
                )
            if step.id in step.depends_on:
                raise PlanningError(f"Step '{step.id}' depends on itself")

        ordered: List[Step] = []
        placed: set[str] = set()
        remaining = list(self.steps)
        while remaining:
            ready = [s for s in remaining if all(dep in placed for dep in s.depends_on)]
            if not ready:
                cycle = ", ".join(s.id for s in remaining)
                raise PlanningError(f"Plan has a dependency cycle among steps: {cycle}")
            for step in ready:
                ordered.append(step)
                placed.add(step.id)
            remaining = [s for s in remaining if s.id not in placed]
        return ordered

    def next_runnable(self) -> Optional[Step]:
        """First pending step whose dependencies are all completed."""
        for step in self.topological_order():
            if step.status is not StepStatus.PENDING:
                continue
            if all(self.step(dep).status is StepStatus.COMPLETED for dep in step.depends_on):
                return step
        return None

    def skip_blocked(self) -> List[Step]:
        """Mark pending steps whose prerequisites failed or were skipped. Returns them."""
        skipped: List[Step] = []
        for step in self.topological_order():
            if step.status is not StepStatus.PENDING:
                continue
            blocked = any(
                self.step(dep).status in (StepStatus.FAILED, StepStatus.SKIPPED)
                for dep in step.depends_on
            )
            if blocked:
                step.status = StepStatus.SKIPPED
                skipped.append(step)
        return skipped

    @property
    def pending(self) -> List[Step]:
        return [s for s in self.steps if s.status is StepStatus.PENDING]
