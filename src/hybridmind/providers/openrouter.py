"""OpenRouter adapter: every catalogue model is reachable through its chat completions API."""

import logging
from typing import (
    Any,
    Dict,
    List,
    Mapping,
)

import httpx

from hybridmind.config import settings
from hybridmind.core.schema import ModelDescriptor
from hybridmind.providers import (
    Message,
    ProviderAdapter,
    ProviderConnectionError,
    ProviderHTTPError,
    ProviderTimeoutError,
    register_provider,
)

logger = logging.getLogger(__name__)

_USAGE_KEYS = ("prompt_tokens", "completion_tokens", "total_tokens")


def _retry_after(resp: httpx.Response) -> float | None:
    value = resp.headers.get("retry-after")
    if value is None:
        return None
    try:
        return float(value)
    except ValueError:
        return None


def _error_message(resp: httpx.Response) -> str:
    try:
        body = resp.json()
    except ValueError:
        return resp.text[:200] or resp.reason_phrase
    if isinstance(body, dict) and isinstance(body.get("error"), dict):
        return str(body["error"].get("message") or resp.reason_phrase)
    return resp.reason_phrase


@register_provider("openrouter")
class OpenRouterAdapter(ProviderAdapter):
    """httpx-based adapter for the OpenAI-compatible OpenRouter endpoint."""

    def __init__(self, client: httpx.AsyncClient | None = None) -> None:
        self._client = client

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=settings.OPENROUTER_BASE_URL,
                headers={
                    "Authorization": f"Bearer {settings.OPENROUTER_API_KEY or ''}",
                    "X-Title": "HybridMind",
                },
                # The dispatcher owns the real deadline; this only guards against leaks.
                timeout=httpx.Timeout(settings.DISPATCH_TIMEOUT_SECONDS * 2),
            )
        return self._client

    async def invoke(
        self,
        model: ModelDescriptor,
        messages: List[Message],
        options: Mapping[str, Any],
    ) -> Mapping[str, Any]:
        payload: Dict[str, Any] = {
            "model": model.wire_id,
            "messages": [dict(m) for m in messages],
            "temperature": options.get("temperature", settings.DEFAULT_TEMPERATURE),
            "max_tokens": options.get("max_tokens", settings.DEFAULT_MAX_TOKENS),
        }
        logger.debug("OpenRouter request for %s: %s", model.wire_id, payload)

        try:
            resp = await self._get_client().post("/chat/completions", json=payload)
        except httpx.TimeoutException as exc:
            raise ProviderTimeoutError(f"OpenRouter did not answer in time: {exc}") from exc
        except httpx.TransportError as exc:
            raise ProviderConnectionError(f"Could not reach OpenRouter: {exc}") from exc

        if resp.status_code >= 300:
            raise ProviderHTTPError(resp.status_code, _error_message(resp), _retry_after(resp))

        try:
            body = resp.json()
        except ValueError:
            return {}
        # Anything off-shape comes back without content; the dispatcher reports it as malformed.
        if not isinstance(body, dict):
            return {}

        choices = body.get("choices")
        first = choices[0] if isinstance(choices, list) and choices else {}
        message = first.get("message") if isinstance(first, dict) else None
        usage = body.get("usage") or {}
        if isinstance(usage, dict):
            usage = {key: usage.get(key, 0) for key in _USAGE_KEYS}
        return {
            "content": message.get("content") if isinstance(message, dict) else None,
            "usage": usage,
        }

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
