"""
Automatic model selection.

Two entry points:

* :func:`ModelSelector.recommend` ranks catalogue entries for a task tag inside a cost band.
* :func:`ModelSelector.select_for_workflow` returns the planner / executor / reviewer triple for a
  named workflow strategy.
"""

import logging
from dataclasses import dataclass
from typing import (
    Dict,
    Iterable,
    List,
)

from hybridmind.core.errors import InvalidRequest
from hybridmind.core.registry import (
    ModelRegistry,
    default_registry,
)
from hybridmind.core.schema import (
    ModelDescriptor,
    Step,
    StepAction,
    Tier,
)

logger = logging.getLogger(__name__)

# Upper bound of the blended $/M price for each cost band.
COST_BANDS: Dict[str, float] = {
    "free": 0.0,
    "low": 1.0,
    "medium": 6.0,
    "premium": float("inf"),
}


@dataclass(frozen=True)
class RoleModels:
    """Models assigned to the three agent roles."""

    planner: str
    executor: str
    reviewer: str

    def as_dict(self) -> Dict[str, str]:
        return {"planner": self.planner, "executor": self.executor, "reviewer": self.reviewer}


WORKFLOW_STRATEGIES: Dict[str, RoleModels] = {
    "cost-optimized": RoleModels("llama-3.3-70b", "qwen3-coder", "deepseek-v3"),
    "balanced": RoleModels("llama-3.3-70b", "claude-sonnet-4", "gpt-4o"),
    "quality-optimized": RoleModels("o1", "claude-sonnet-4.5", "claude-opus-4"),
    "speed-optimized": RoleModels("gemini-flash", "gemini-2.0-flash", "llama-3.1-8b"),
    "reasoning-optimized": RoleModels("deepseek-r1", "o3-mini", "o1"),
    "coding-optimized": RoleModels("qwen3-coder", "claude-sonnet-4", "devstral"),
}
DEFAULT_WORKFLOW = "balanced"
FREE_TIER_WORKFLOW = "cost-optimized"

# Step action -> capability tag used to pick an executor model.
_ACTION_TAGS: Dict[StepAction, str] = {
    StepAction.ANALYZE: "reasoning",
    StepAction.REFACTOR: "coding",
    StepAction.OPTIMIZE: "reasoning",
    StepAction.DOCUMENT: "fast",
    StepAction.TEST: "coding",
    StepAction.REVIEW: "reasoning",
    StepAction.FIX: "coding",
}


class ModelSelector:
    """Pure functions over a :class:`ModelRegistry`."""

    def __init__(self, registry: ModelRegistry | None = None) -> None:
        self.registry = registry or default_registry

    def recommend(
        self,
        task_tags: str | Iterable[str],
        cost_tier: str = "premium",
        count: int = 1,
        caller_tier: Tier = Tier.PRO,
    ) -> List[ModelDescriptor]:
        """
        Rank models for *task_tags*.

        Candidates must share at least one tag and sit inside *cost_tier*.  Ordering is tag match
        count (desc), blended cost (asc), then declaration order.
        """
        if cost_tier not in COST_BANDS:
            raise InvalidRequest(
                f"Unknown cost tier '{cost_tier}'. Options: {', '.join(COST_BANDS)}"
            )
        if count < 1:
            raise InvalidRequest("count must be at least 1")

        wanted = {task_tags} if isinstance(task_tags, str) else set(task_tags)
        ceiling = COST_BANDS[cost_tier]

        scored = []
        for descriptor in self.registry.all(tier=caller_tier):
            matches = len(wanted & descriptor.tags)
            if matches == 0 or descriptor.blended_cost > ceiling:
                continue
            position = self.registry.position(descriptor.id)
            scored.append((-matches, descriptor.blended_cost, position, descriptor))
        scored.sort(key=lambda row: row[:3])
        return [row[3] for row in scored[:count]]

    def select_for_workflow(
        self, workflow_type: str | None = None, caller_tier: Tier = Tier.PRO
    ) -> RoleModels:
        """
        Return the role triple for *workflow_type*.

        Unknown types fall back to ``balanced``.  Free callers are moved to the cost-optimized
        table whenever the requested strategy uses a model above their tier.
        """
        name = workflow_type or DEFAULT_WORKFLOW
        roles = WORKFLOW_STRATEGIES.get(name)
        if roles is None:
            logger.info("Unknown workflow type '%s', using '%s'", name, DEFAULT_WORKFLOW)
            roles = WORKFLOW_STRATEGIES[DEFAULT_WORKFLOW]

        if caller_tier is Tier.FREE:
            tiers = {self.registry.resolve(m).tier for m in roles.as_dict().values()}
            if Tier.PRO in tiers:
                roles = WORKFLOW_STRATEGIES[FREE_TIER_WORKFLOW]
        return roles

    def select_for_step(self, step: Step, caller_tier: Tier = Tier.PRO) -> ModelDescriptor:
        """
        Pick an executor model for one plan step.

        High priority or complex steps get the best model for the action's tag, simple low
        priority steps the cheapest, everything else the runner-up.
        """
        tag = _ACTION_TAGS.get(step.action, "coding")
        candidates = self.recommend(
            tag, "premium", count=len(self.registry), caller_tier=caller_tier
        )
        if not candidates:
            raise InvalidRequest(f"No model available for action '{step.action.value}'")

        if step.priority == "high" or step.estimated_complexity == "complex":
            return max(candidates, key=lambda d: (d.blended_cost, -self.registry.position(d.id)))
        if step.priority == "low" and step.estimated_complexity == "simple":
            return candidates[0]
        return candidates[min(1, len(candidates) - 1)]
