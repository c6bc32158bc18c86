"""
Error taxonomy for the orchestration core.

Every failure that can reach a caller is a :class:`HybridMindError` carrying an :class:`ErrorKind`
and a human-readable reason.  The HTTP layer turns these into the ``{"success": false, ...}``
envelope; the engine uses the kind to decide whether a retry is allowed.
"""

from enum import Enum


class ErrorKind(str, Enum):
    """Stable error codes exposed to callers."""

    # Dispatcher / provider
    AUTH_ERROR = "AuthError"
    RATE_LIMITED_BY_PROVIDER = "RateLimitedByProvider"
    PROVIDER_UNAVAILABLE = "ProviderUnavailable"
    PROVIDER_ERROR = "ProviderError"
    TIMEOUT = "TimeoutError"
    CANCELLED = "Cancelled"
    MALFORMED_RESPONSE = "MalformedResponseError"

    # Agentic
    PLANNING_ERROR = "PlanningError"
    VALIDATION_ERROR = "ValidationError"
    SECURITY_VIOLATION = "SecurityViolation"

    # Admission
    RATE_LIMITED = "RateLimited"
    BUDGET_EXCEEDED = "BudgetExceeded"
    PAYLOAD_TOO_LARGE = "PayloadTooLarge"

    # Request level
    MODEL_NOT_FOUND = "ModelNotFound"
    TIER_RESTRICTED = "TierRestricted"
    INVALID_REQUEST = "InvalidRequest"


class HybridMindError(RuntimeError):
    """Base class for every error the core surfaces to a caller."""

    kind: ErrorKind = ErrorKind.PROVIDER_ERROR

    def __init__(self, reason: str, *, retry_after: float | None = None) -> None:
        super().__init__(reason)
        self.reason = reason
        self.retry_after = retry_after

    def to_dict(self) -> dict[str, object]:
        """Serialize for traces and API payloads."""
        data: dict[str, object] = {"code": self.kind.value, "error": self.reason}
        if self.retry_after is not None:
            data["retry_after"] = round(self.retry_after, 3)
        return data


# ---------------------------------------------------------------------------
# Dispatch errors
# ---------------------------------------------------------------------------
class DispatchError(HybridMindError):
    """Raised by the dispatcher for a single failed model invocation."""


class AuthError(DispatchError):
    kind = ErrorKind.AUTH_ERROR


class RateLimitedByProvider(DispatchError):
    kind = ErrorKind.RATE_LIMITED_BY_PROVIDER


class ProviderUnavailable(DispatchError):
    kind = ErrorKind.PROVIDER_UNAVAILABLE


class ProviderError(DispatchError):
    kind = ErrorKind.PROVIDER_ERROR


class DispatchTimeoutError(DispatchError):
    """The provider did not answer within the dispatch timeout."""

    kind = ErrorKind.TIMEOUT


class DispatchCancelled(DispatchError):
    """The caller's overall deadline expired before the dispatch finished."""

    kind = ErrorKind.CANCELLED


class MalformedResponseError(DispatchError):
    kind = ErrorKind.MALFORMED_RESPONSE


# ---------------------------------------------------------------------------
# Agentic errors
# ---------------------------------------------------------------------------
class PlanningError(HybridMindError):
    kind = ErrorKind.PLANNING_ERROR


class ToolCallValidationError(HybridMindError):
    """Model output does not conform to the tool-call schema."""

    kind = ErrorKind.VALIDATION_ERROR


class SecurityViolation(ToolCallValidationError):
    """A tool call references a path outside the workspace root."""

    kind = ErrorKind.SECURITY_VIOLATION


# ---------------------------------------------------------------------------
# Admission errors
# ---------------------------------------------------------------------------
class AdmissionDenied(HybridMindError):
    """Base for admission-control denials. Never retried automatically."""


class RateLimited(AdmissionDenied):
    kind = ErrorKind.RATE_LIMITED


class BudgetExceeded(AdmissionDenied):
    kind = ErrorKind.BUDGET_EXCEEDED


class PayloadTooLarge(AdmissionDenied):
    kind = ErrorKind.PAYLOAD_TOO_LARGE


# ---------------------------------------------------------------------------
# Request errors
# ---------------------------------------------------------------------------
class ModelNotFoundError(HybridMindError):
    kind = ErrorKind.MODEL_NOT_FOUND


class TierRestricted(HybridMindError):
    kind = ErrorKind.TIER_RESTRICTED


class InvalidRequest(HybridMindError):
    kind = ErrorKind.INVALID_REQUEST
