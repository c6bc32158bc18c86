"""
Provider adapter registry for HybridMind.

An adapter turns ``(model, messages, options)`` into ``{"content": str, "usage": {...}}`` for one
backend.  Adapters are registered by provider name with :func:`register_provider` and looked up by
the dispatcher through :func:`load_provider`.  They normalize vendor errors into
:class:`ProviderHTTPError` / :class:`ProviderConnectionError`; classification into the core error
taxonomy happens in the dispatcher.
"""

import logging
from abc import (
    ABC,
    abstractmethod,
)
from typing import (
    Any,
    Callable,
    Dict,
    List,
    Mapping,
    Type,
)

from hybridmind.core.schema import ModelDescriptor

logger = logging.getLogger(__name__)

Message = Mapping[str, str]

PROVIDER_REGISTRY: Dict[str, Type["ProviderAdapter"]] = {}
"""Global registry of adapter classes."""


class ProviderHTTPError(RuntimeError):
    """The backend answered with a non-2xx status."""

    def __init__(self, status_code: int, message: str, retry_after: float | None = None) -> None:
        super().__init__(f"HTTP {status_code}: {message}")
        self.status_code = status_code
        self.message = message
        self.retry_after = retry_after


class ProviderConnectionError(RuntimeError):
    """The backend could not be reached at all."""


class ProviderTimeoutError(RuntimeError):
    """The client gave up waiting for the backend."""


class ProviderAdapter(ABC):
    """Abstract adapter for one backend."""

    name: str = ""

    @abstractmethod
    async def invoke(
        self,
        model: ModelDescriptor,
        messages: List[Message],
        options: Mapping[str, Any],
    ) -> Mapping[str, Any]:
        """Return ``{"content": str, "usage": {"prompt_tokens", "completion_tokens", ...}}``."""

    async def aclose(self) -> None:
        """Release network resources. No-op by default."""


def register_provider(name: str) -> Callable:
    """
    Register an adapter class under *name*.

    Raises
    ------
    ValueError
        If an adapter with the same name is already registered.
    """
    if name in PROVIDER_REGISTRY:
        raise ValueError(f"Provider '{name}' is already registered.")
    logger.debug("Registering provider '%s'", name)

    def wrapper(cls: Type["ProviderAdapter"]) -> Type["ProviderAdapter"]:
        cls.name = name
        PROVIDER_REGISTRY[name] = cls
        return cls

    return wrapper


def load_provider(name: str) -> ProviderAdapter:
    """Instantiate the adapter registered under *name*."""
    cls = PROVIDER_REGISTRY.get(name.lower())
    if cls is None:
        raise ValueError(f"Provider '{name}' is not registered.")
    return cls()


# Register the built-in adapters.
from hybridmind.providers import (  # noqa: E402  pylint: disable=wrong-import-position
    echo,
    openrouter,
)

__all__ = [
    "PROVIDER_REGISTRY",
    "Message",
    "ProviderAdapter",
    "ProviderConnectionError",
    "ProviderHTTPError",
    "echo",
    "load_provider",
    "openrouter",
    "register_provider",
]
