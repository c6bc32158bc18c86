"""
Static model catalogue.

Each entry maps a friendly model name to the provider that serves it, the wire-format id sent to
that provider, its price per million tokens and the capability tags the selector ranks on.  The
catalogue is loaded once at import time and never mutated.
"""

import logging
from typing import (
    Dict,
    Iterable,
    List,
    Tuple,
)

from hybridmind.core.errors import ModelNotFoundError
from hybridmind.core.schema import (
    ModelDescriptor,
    Tier,
)

logger = logging.getLogger(__name__)

# (id, wire id, display name, tier, $/M in, $/M out, tags)
_CATALOGUE: Tuple[Tuple[str, str, str, Tier, float, float, Tuple[str, ...]], ...] = (
    # Free tier
    ("llama-3.3-70b", "meta-llama/llama-3.3-70b-instruct:free", "Llama 3.3 70B",
     Tier.FREE, 0.0, 0.0, ("coding", "reasoning", "fast")),
    ("llama-3.1-8b", "meta-llama/llama-3.1-8b-instruct:free", "Llama 3.1 8B",
     Tier.FREE, 0.0, 0.0, ("fast",)),
    ("deepseek-r1", "deepseek/deepseek-r1-0528:free", "DeepSeek R1",
     Tier.FREE, 0.0, 0.0, ("reasoning",)),
    ("deepseek-v3", "deepseek/deepseek-chat:free", "DeepSeek V3",
     Tier.FREE, 0.0, 0.0, ("coding", "reasoning")),
    ("qwen3-coder", "qwen/qwen3-coder:free", "Qwen3 Coder 480B",
     Tier.FREE, 0.0, 0.0, ("coding",)),
    ("gemini-flash", "google/gemini-2.0-flash-exp:free", "Gemini 2.0 Flash",
     Tier.FREE, 0.0, 0.0, ("fast", "coding")),
    ("devstral", "mistralai/devstral-2512:free", "Mistral Devstral 2",
     Tier.FREE, 0.0, 0.0, ("coding",)),
    # Low cost
    ("llama-4-scout", "meta-llama/llama-4-scout", "Llama 4 Scout",
     Tier.FREE, 0.08, 0.30, ("fast",)),
    ("gemini-2.0-flash", "google/gemini-2.0-flash-001", "Gemini 2.0 Flash (paid)",
     Tier.FREE, 0.10, 0.40, ("fast", "coding")),
    ("llama-4-maverick", "meta-llama/llama-4-maverick", "Llama 4 Maverick",
     Tier.FREE, 0.15, 0.60, ("coding", "fast")),
    # Premium
    ("o3-mini", "openai/o3-mini", "o3-mini",
     Tier.PRO, 1.10, 4.40, ("reasoning", "coding")),
    ("gemini-2.5-pro", "google/gemini-2.5-pro-preview-06-05", "Gemini 2.5 Pro",
     Tier.PRO, 1.25, 10.00, ("reasoning", "coding")),
    ("gpt-4.1", "openai/gpt-4.1", "GPT-4.1",
     Tier.PRO, 2.00, 8.00, ("coding",)),
    ("gpt-4o", "openai/gpt-4o", "GPT-4o",
     Tier.PRO, 2.50, 10.00, ("coding", "reasoning", "fast")),
    ("claude-sonnet-4", "anthropic/claude-sonnet-4", "Claude Sonnet 4",
     Tier.PRO, 3.00, 15.00, ("coding", "reasoning")),
    ("claude-sonnet-4.5", "anthropic/claude-sonnet-4.5", "Claude Sonnet 4.5",
     Tier.PRO, 3.00, 15.00, ("coding", "reasoning")),
    ("grok-3", "x-ai/grok-3-beta", "Grok 3",
     Tier.PRO, 3.00, 15.00, ("reasoning",)),
    ("gpt-4-turbo", "openai/gpt-4-turbo", "GPT-4 Turbo",
     Tier.PRO, 10.00, 30.00, ("coding",)),
    ("claude-opus-4", "anthropic/claude-opus-4", "Claude Opus 4",
     Tier.PRO, 15.00, 75.00, ("coding", "reasoning")),
    ("o1", "openai/o1", "o1",
     Tier.PRO, 15.00, 60.00, ("reasoning",)),
)

DEFAULT_PROVIDER = "openrouter"


def _build(rows: Iterable[Tuple]) -> Dict[str, ModelDescriptor]:
    out: Dict[str, ModelDescriptor] = {}
    for model_id, wire_id, name, tier, cost_in, cost_out, tags in rows:
        out[model_id] = ModelDescriptor(
            id=model_id,
            provider=DEFAULT_PROVIDER,
            wire_id=wire_id,
            display_name=name,
            tier=tier,
            cost_per_million_in=cost_in,
            cost_per_million_out=cost_out,
            tags=frozenset(tags),
        )
    return out


class ModelRegistry:
    """Read-only lookup over a list of :class:`ModelDescriptor`."""

    def __init__(self, descriptors: Iterable[ModelDescriptor] | None = None) -> None:
        if descriptors is None:
            self._models = _build(_CATALOGUE)
        else:
            self._models = {d.id: d for d in descriptors}

    def __contains__(self, name: str) -> bool:
        try:
            self.resolve(name)
        except ModelNotFoundError:
            return False
        return True

    def __len__(self) -> int:
        return len(self._models)

    def resolve(self, name_or_id: str) -> ModelDescriptor:
        """
        Look a model up by friendly id, provider wire id or display name.

        Raises
        ------
        ModelNotFoundError
            If nothing in the catalogue matches.
        """
        if name_or_id in self._models:
            return self._models[name_or_id]

        needle = name_or_id.strip().lower()
        for descriptor in self._models.values():
            if needle in (
                descriptor.id.lower(),
                descriptor.wire_id.lower(),
                descriptor.display_name.lower(),
            ):
                return descriptor
        raise ModelNotFoundError(f"Unknown model '{name_or_id}'")

    def all(self, tier: Tier | None = None) -> List[ModelDescriptor]:
        """Every descriptor in declaration order, optionally only those *tier* may use."""
        models = list(self._models.values())
        if tier is Tier.FREE:
            models = [m for m in models if m.tier is Tier.FREE]
        return models

    def position(self, model_id: str) -> int:
        """Declaration index, used as the final ranking tie-break."""
        return list(self._models).index(model_id)

    def estimate_cost(self, name_or_id: str, prompt_chars: int, max_tokens: int) -> float:
        """
        Upper-bound cost estimate for one call.

        Prompt tokens are approximated at four characters per token; the completion is assumed to
        use the full *max_tokens* allowance.
        """
        descriptor = self.resolve(name_or_id)
        return descriptor.cost(prompt_chars // 4 + 1, max_tokens)


default_registry = ModelRegistry()
