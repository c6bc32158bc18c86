"""Deterministic offline adapter for local development (``PROVIDER_OVERRIDE=echo``)."""

import json
from typing import (
    Any,
    List,
    Mapping,
)

from hybridmind.core.schema import ModelDescriptor
from hybridmind.providers import (
    Message,
    ProviderAdapter,
    register_provider,
)


@register_provider("echo")
class EchoAdapter(ProviderAdapter):
    """
    Reply without touching the network.

    Answers are shaped by ``options["role"]`` so every agent role gets something it can parse:
    planners get a one-step plan, reviewers accept, everyone else receives a ``thought`` tool call
    quoting the last user message.
    """

    async def invoke(
        self,
        model: ModelDescriptor,
        messages: List[Message],
        options: Mapping[str, Any],
    ) -> Mapping[str, Any]:
        last = next((m["content"] for m in reversed(messages) if m.get("role") == "user"), "")
        role = options.get("role")

        if role == "planner":
            body: Any = {
                "strategy": "echo",
                "steps": [{"id": "step-1", "name": "echo", "action": "analyze", "dependsOn": []}],
            }
        elif role == "reviewer":
            body = {"verdict": "done", "summary": "echo review"}
        else:
            body = {"tool": "thought", "content": f"[{model.id}] {last[:500]}"}

        content = json.dumps(body)
        prompt_tokens = sum(len(m.get("content", "")) for m in messages) // 4
        completion_tokens = len(content) // 4
        return {
            "content": content,
            "usage": {
                "prompt_tokens": prompt_tokens,
                "completion_tokens": completion_tokens,
                "total_tokens": prompt_tokens + completion_tokens,
            },
        }
