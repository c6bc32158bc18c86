"""Shared fixtures: a scripted provider adapter and an engine built on it."""

import asyncio
import json
from typing import (
    Any,
    Dict,
    List,
    Mapping,
)

import pytest

from hybridmind.core.admission import (
    TierLimits,
    UsageLedger,
)
from hybridmind.core.dispatcher import (
    Dispatcher,
    RetryPolicy,
)
from hybridmind.core.engine import ExecutionEngine
from hybridmind.core.schema import (
    ModelDescriptor,
    Tier,
)
from hybridmind.providers import (
    Message,
    ProviderAdapter,
)


class Hang:
    """Script item: never answer (the dispatcher's timeout fires)."""


class ScriptedAdapter(ProviderAdapter):
    """
    Answer from a per-model script.

    Each script entry is consumed in order; the last one repeats.  Entries may be a string (the
    reply content), a mapping (returned as-is), an exception (raised) or :class:`Hang`.  Models
    without a script reply with ``default``.
    """

    name = "scripted"

    def __init__(self, default: Any = "ok") -> None:
        self.default = default
        self.scripts: Dict[str, List[Any]] = {}
        self.calls: List[Dict[str, Any]] = []

    def script(self, model_id: str, *items: Any) -> "ScriptedAdapter":
        self.scripts[model_id] = list(items)
        return self

    def calls_for(self, model_id: str) -> List[Dict[str, Any]]:
        return [c for c in self.calls if c["model"] == model_id]

    async def invoke(
        self,
        model: ModelDescriptor,
        messages: List[Message],
        options: Mapping[str, Any],
    ) -> Mapping[str, Any]:
        self.calls.append({"model": model.id, "messages": list(messages), "options": options})
        queue = self.scripts.get(model.id)
        if queue:
            item = queue.pop(0) if len(queue) > 1 else queue[0]
        else:
            item = self.default

        if isinstance(item, Hang):
            await asyncio.sleep(3600)
        if isinstance(item, BaseException):
            raise item
        if isinstance(item, Mapping):
            return item
        if not isinstance(item, str):
            item = json.dumps(item)
        return {
            "content": item,
            "usage": {"prompt_tokens": 10, "completion_tokens": 5, "total_tokens": 15},
        }


def make_limits(**overrides: Any) -> Dict[Tier, TierLimits]:
    base = {
        "requests_per_minute": 1000,
        "requests_per_hour": 10000,
        "daily_budget_usd": 100.0,
        "max_models": 2,
        "max_payload_chars": 50_000,
    }
    free = TierLimits(**{**base, **overrides})
    pro = TierLimits(**{**base, "max_models": 4})
    return {Tier.FREE: free, Tier.PRO: pro}


ZERO_DELAY = RetryPolicy(base_delay=0.0, max_delay=0.0)


@pytest.fixture
def adapter() -> ScriptedAdapter:
    return ScriptedAdapter()


@pytest.fixture
def dispatcher(adapter: ScriptedAdapter) -> Dispatcher:
    return Dispatcher(adapters={"openrouter": adapter}, timeout=0.2)


@pytest.fixture
def ledger() -> UsageLedger:
    return UsageLedger(limits=make_limits())


@pytest.fixture
def engine(dispatcher: Dispatcher, ledger: UsageLedger) -> ExecutionEngine:
    return ExecutionEngine(dispatcher, ledger, retry_policy=ZERO_DELAY)
