"""
Pydantic models for HybridMind API requests and responses.
This module defines the request bodies and the response envelope used by the HybridMind API.
"""

from typing import (
    Any,
    Dict,
    List,
    Optional,
)

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
)
from pydantic.alias_generators import to_camel

from hybridmind.core.schema import ExecutionOptions


class _Body(BaseModel):
    """camelCase on the wire, like every other HybridMind payload."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ---------------------------------------------------------------------------
# Pydantic request / response schema
# ---------------------------------------------------------------------------
class RunRequest(_Body):
    """Body of ``/run/single``, ``/run/parallel`` and ``/run/chain``."""

    prompt: str = Field(..., min_length=1, description="Instruction for the model(s)")
    code: Optional[str] = Field(None, description="Code context")
    model: Optional[str] = Field(None, description="Single model (shorthand for models=[model])")
    models: List[str] = Field(default_factory=list, description="Models, in order")
    temperature: Optional[float] = Field(None, ge=0.0, le=2.0)
    max_tokens: Optional[int] = Field(None, ge=1)
    options: ExecutionOptions = Field(default_factory=ExecutionOptions)

    def model_list(self) -> List[str]:
        if self.models:
            return list(self.models)
        return [self.model] if self.model else []


class AgentRequest(_Body):
    """Body of ``/agent/plan`` and ``/agent/execute``."""

    goal: str = Field(
        ...,
        min_length=1,
        validation_alias=AliasChoices("goal", "prompt"),
        description="What the agent should achieve",
    )
    code: Optional[str] = None
    models: List[str] = Field(default_factory=list, description="[planner, executor, reviewer]")
    temperature: Optional[float] = Field(None, ge=0.0, le=2.0)
    max_tokens: Optional[int] = Field(None, ge=1)
    options: ExecutionOptions = Field(default_factory=ExecutionOptions)


class NextStepRequest(_Body):
    """Body of ``/agent/next``."""

    session_id: str = Field(..., description="Session returned by /agent/plan")


class RecommendRequest(_Body):
    """Body of ``/models/recommend``."""

    task: str | List[str] = Field("coding", description="Task tag(s): coding, reasoning, fast")
    cost_tier: str = Field("premium", description="free, low, medium or premium")
    count: int = Field(1, ge=1)


class ApiResponse(BaseModel):
    """Success envelope returned by every endpoint."""

    success: bool = True
    data: Any = None
    meta: Dict[str, Any] = Field(default_factory=dict)
