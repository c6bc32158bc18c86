"""
Dispatcher: one outbound call to one model.

This module is the only place that *directly* awaits a provider adapter.  It applies the fixed
dispatch timeout, classifies adapter failures into the core error taxonomy and validates the shape
of the adapter's answer.  :meth:`Dispatcher.dispatch` never retries; :meth:`dispatch_with_retry`
applies a :class:`RetryPolicy` on top of it for callers that decide retrying is worth it.
"""

import asyncio
import logging
import time
from dataclasses import (
    dataclass,
    field,
)
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    List,
    Mapping,
    Optional,
)

from hybridmind.config import settings
from hybridmind.core.errors import (
    AuthError,
    DispatchCancelled,
    DispatchError,
    DispatchTimeoutError,
    ErrorKind,
    MalformedResponseError,
    ProviderError,
    ProviderUnavailable,
    RateLimitedByProvider,
)
from hybridmind.core.registry import (
    ModelRegistry,
    default_registry,
)
from hybridmind.core.schema import (
    DispatchResult,
    ModelDescriptor,
    Usage,
)
from hybridmind.providers import (
    Message,
    ProviderAdapter,
    ProviderConnectionError,
    ProviderHTTPError,
    ProviderTimeoutError,
    load_provider,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Retry policy
# ---------------------------------------------------------------------------
def _default_attempts() -> Dict[ErrorKind, int]:
    return {
        ErrorKind.RATE_LIMITED_BY_PROVIDER: settings.PROVIDER_RATE_LIMIT_ATTEMPTS,
        ErrorKind.PROVIDER_UNAVAILABLE: 2,
        ErrorKind.TIMEOUT: 2,
    }


@dataclass(frozen=True)
class RetryPolicy:
    """
    Attempt budget per error kind plus exponential backoff.

    Kinds missing from *max_attempts* get a single attempt, i.e. are not retryable.
    """

    max_attempts: Mapping[ErrorKind, int] = field(default_factory=_default_attempts)
    base_delay: float = settings.RETRY_BASE_DELAY_SECONDS
    max_delay: float = settings.RETRY_MAX_DELAY_SECONDS

    @classmethod
    def no_retry(cls) -> "RetryPolicy":
        return cls(max_attempts={}, base_delay=0.0, max_delay=0.0)

    def attempts_for(self, kind: ErrorKind) -> int:
        return max(1, self.max_attempts.get(kind, 1))

    def retryable(self, kind: ErrorKind, attempt: int) -> bool:
        """True if a failure of *kind* on attempt number *attempt* (1-based) may be retried."""
        return attempt < self.attempts_for(kind)

    def backoff(self, attempt: int, retry_after: float | None = None) -> float:
        """Delay before attempt ``attempt + 1``; a provider's hint wins when it is longer."""
        delay = min(self.max_delay, self.base_delay * (2 ** (attempt - 1)))
        if retry_after is not None:
            delay = max(delay, min(retry_after, self.max_delay))
        return delay


# ---------------------------------------------------------------------------
# Error classification
# ---------------------------------------------------------------------------
def classify_http_error(model_id: str, exc: ProviderHTTPError) -> DispatchError:
    """Map an adapter HTTP failure to the core taxonomy."""
    status = exc.status_code
    reason = f"{model_id}: provider returned HTTP {status} ({exc.message})"
    if status == 401:
        return AuthError(reason)
    if status == 429:
        return RateLimitedByProvider(reason, retry_after=exc.retry_after)
    if status >= 500:
        return ProviderUnavailable(reason, retry_after=exc.retry_after)
    return ProviderError(reason)


def _as_int(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    return None


def normalize_response(model_id: str, raw: Any) -> tuple[str, Usage]:
    """
    Validate an adapter answer and extract ``(content, usage)``.

    Raises
    ------
    MalformedResponseError
        If ``content`` is missing or not a string, or ``usage`` is not a mapping of integers.
    """
    if not isinstance(raw, Mapping):
        raise MalformedResponseError(f"{model_id}: adapter returned {type(raw).__name__}")

    content = raw.get("content")
    if not isinstance(content, str):
        raise MalformedResponseError(f"{model_id}: response has no text content")

    usage_raw = raw.get("usage") or {}
    if not isinstance(usage_raw, Mapping):
        raise MalformedResponseError(f"{model_id}: response usage is not an object")

    counts: Dict[str, int] = {}
    for key in ("prompt_tokens", "completion_tokens", "total_tokens"):
        value = _as_int(usage_raw.get(key, 0))
        if value is None or value < 0:
            raise MalformedResponseError(f"{model_id}: usage.{key} is not a token count")
        counts[key] = value
    if not counts["total_tokens"]:
        counts["total_tokens"] = counts["prompt_tokens"] + counts["completion_tokens"]
    return content, Usage(**counts)


# ---------------------------------------------------------------------------
# Dispatcher
# ---------------------------------------------------------------------------
class Dispatcher:
    """
    Invoke provider adapters for catalogue models.

    Parameters
    ----------
    registry:
        Catalogue used to resolve model names.
    adapters:
        Adapter instances keyed by provider name.  Missing providers are loaded lazily from the
        provider registry.
    timeout:
        Per-dispatch timeout in seconds.
    provider_override:
        Route every model through this provider (``settings.PROVIDER_OVERRIDE``).
    """

    def __init__(
        self,
        registry: ModelRegistry | None = None,
        adapters: Mapping[str, ProviderAdapter] | None = None,
        timeout: float | None = None,
        provider_override: str | None = None,
    ) -> None:
        self.registry = registry or default_registry
        self._adapters: Dict[str, ProviderAdapter] = dict(adapters or {})
        self.timeout = timeout if timeout is not None else settings.DISPATCH_TIMEOUT_SECONDS
        self.provider_override = provider_override

    def _adapter_for(self, descriptor: ModelDescriptor) -> ProviderAdapter:
        provider = self.provider_override or descriptor.provider
        if provider not in self._adapters:
            self._adapters[provider] = load_provider(provider)
        return self._adapters[provider]

    async def dispatch(
        self,
        model_id: str,
        messages: List[Message],
        options: Mapping[str, Any] | None = None,
        deadline: float | None = None,
    ) -> DispatchResult:
        """
        Perform exactly one provider call.

        *deadline* is a :func:`time.monotonic` timestamp set by the caller.  If it is the binding
        limit and expires, the call reports :class:`DispatchCancelled` instead of a timeout.
        """
        descriptor = self.registry.resolve(model_id)
        adapter = self._adapter_for(descriptor)

        budget = self.timeout
        caller_bound = False
        if deadline is not None:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise DispatchCancelled(
                    f"{descriptor.id}: request deadline expired before dispatch"
                )
            if remaining < budget:
                budget = remaining
                caller_bound = True

        logger.info("Dispatching to %s via %s", descriptor.id, adapter.name)
        started = time.monotonic()
        try:
            raw = await asyncio.wait_for(
                adapter.invoke(descriptor, messages, dict(options or {})), timeout=budget
            )
        except asyncio.TimeoutError as exc:
            if caller_bound:
                raise DispatchCancelled(
                    f"{descriptor.id}: cancelled by the caller's request deadline"
                ) from exc
            raise DispatchTimeoutError(
                f"{descriptor.id}: no response within {self.timeout:g}s"
            ) from exc
        except ProviderHTTPError as exc:
            raise classify_http_error(descriptor.id, exc) from exc
        except ProviderTimeoutError as exc:
            raise DispatchTimeoutError(f"{descriptor.id}: {exc}") from exc
        except ProviderConnectionError as exc:
            raise ProviderUnavailable(f"{descriptor.id}: {exc}") from exc
        except asyncio.CancelledError:
            logger.info("Dispatch to %s cancelled", descriptor.id)
            raise
        except Exception as exc:  # noqa: BLE001
            logger.exception("Adapter %s failed on %s", adapter.name, descriptor.id)
            raise MalformedResponseError(
                f"{descriptor.id}: could not read the provider response ({exc})"
            ) from exc

        content, usage = normalize_response(descriptor.id, raw)
        logger.info(
            "%s answered in %.2fs (%d tokens)",
            descriptor.id,
            time.monotonic() - started,
            usage.total_tokens,
        )
        return DispatchResult(
            model=descriptor.id,
            content=content,
            usage=usage,
            cost_usd=descriptor.cost(usage.prompt_tokens, usage.completion_tokens),
        )

    async def dispatch_with_retry(
        self,
        model_id: str,
        messages: List[Message],
        options: Mapping[str, Any] | None = None,
        *,
        policy: RetryPolicy | None = None,
        deadline: float | None = None,
        before_attempt: Optional[Callable[[int], None]] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> DispatchResult:
        """
        :meth:`dispatch` with *policy* applied.

        *before_attempt* runs ahead of every attempt (the engine uses it for admission); an
        exception it raises aborts the loop unchanged.
        """
        policy = policy or RetryPolicy()
        attempt = 0
        while True:
            attempt += 1
            if before_attempt is not None:
                before_attempt(attempt)
            try:
                result = await self.dispatch(model_id, messages, options, deadline=deadline)
            except DispatchError as exc:
                if not policy.retryable(exc.kind, attempt):
                    raise
                delay = policy.backoff(attempt, exc.retry_after)
                if deadline is not None and time.monotonic() + delay >= deadline:
                    raise
                logger.warning(
                    "%s failed with %s (attempt %d/%d), retrying in %.2fs",
                    model_id,
                    exc.kind.value,
                    attempt,
                    policy.attempts_for(exc.kind),
                    delay,
                )
                await sleep(delay)
                continue
            return result.model_copy(update={"attempts": attempt})

    async def aclose(self) -> None:
        for adapter in self._adapters.values():
            await adapter.aclose()
