"""
Admission control: per-tier rate limiting and cost tracking.

The :class:`UsageLedger` is the only mutable state shared between concurrent dispatches.  All of
its check-and-increment work happens under one lock inside :meth:`UsageLedger.admit`, so two
concurrent requests can never both pass a check that only one of them should pass.
"""

import logging
import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import (
    Callable,
    Deque,
    Dict,
    Mapping,
    Protocol,
)

from hybridmind.config import settings
from hybridmind.core.errors import (
    AdmissionDenied,
    BudgetExceeded,
    PayloadTooLarge,
    RateLimited,
)
from hybridmind.core.schema import Tier

logger = logging.getLogger(__name__)

MINUTE = 60.0
HOUR = 3600.0
DAY = 86400.0


@dataclass(frozen=True)
class TierLimits:
    """Ceilings applied to one tier bucket."""

    requests_per_minute: int
    requests_per_hour: int
    daily_budget_usd: float
    max_models: int
    max_payload_chars: int


def default_tier_limits() -> Dict[Tier, TierLimits]:
    """Build the tier table from :data:`settings`."""
    return {
        Tier.FREE: TierLimits(
            requests_per_minute=settings.FREE_REQUESTS_PER_MINUTE,
            requests_per_hour=settings.FREE_REQUESTS_PER_HOUR,
            daily_budget_usd=settings.FREE_DAILY_BUDGET_USD,
            max_models=settings.FREE_MAX_MODELS,
            max_payload_chars=settings.MAX_PAYLOAD_CHARS,
        ),
        Tier.PRO: TierLimits(
            requests_per_minute=settings.PRO_REQUESTS_PER_MINUTE,
            requests_per_hour=settings.PRO_REQUESTS_PER_HOUR,
            daily_budget_usd=settings.PRO_DAILY_BUDGET_USD,
            max_models=settings.PRO_MAX_MODELS,
            max_payload_chars=settings.MAX_PAYLOAD_CHARS,
        ),
    }


@dataclass(eq=False)
class Booking:
    """One admitted request's charge; reconciled in place so it keeps its original timestamp."""

    ts: float
    amount: float


class Admission(Protocol):
    """Capability the execution engine depends on."""

    def admit(self, tier: Tier, estimated_cost: float, payload_chars: int = 0) -> Booking:
        ...

    def record_usage(self, tier: Tier, booking: Booking, actual_cost: float) -> None:
        ...

    def limits(self, tier: Tier) -> TierLimits:
        ...


class _Bucket:
    """Rolling-window counters for one tier."""

    def __init__(self) -> None:
        self.requests: Deque[float] = deque()
        self.costs: Deque[Booking] = deque()

    def prune(self, now: float) -> None:
        while self.requests and now - self.requests[0] >= HOUR:
            self.requests.popleft()
        while self.costs and now - self.costs[0].ts >= DAY:
            self.costs.popleft()

    def requests_since(self, since: float) -> int:
        return sum(1 for ts in self.requests if ts > since)

    @property
    def spent(self) -> float:
        return max(0.0, sum(c.amount for c in self.costs))


class UsageLedger:
    """
    Process-wide usage state with atomic admission.

    Parameters
    ----------
    limits:
        Per-tier ceilings.  Defaults to :func:`default_tier_limits`.
    clock:
        Monotonic seconds source; injectable so tests can move time forward.
    """

    def __init__(
        self,
        limits: Mapping[Tier, TierLimits] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._limits = dict(limits or default_tier_limits())
        self._clock = clock
        self._buckets: Dict[Tier, _Bucket] = {tier: _Bucket() for tier in self._limits}
        self._lock = threading.Lock()

    def limits(self, tier: Tier) -> TierLimits:
        return self._limits[tier]

    def admit(self, tier: Tier, estimated_cost: float, payload_chars: int = 0) -> Booking:
        """
        Check every ceiling for *tier* and, if all pass, count the request.

        Returns the :class:`Booking` holding the estimate; pass it to :meth:`record_usage`.

        Checks run in order: requests this minute, requests this hour, daily budget, payload size.
        The first failing check decides the error.

        Raises
        ------
        RateLimited, BudgetExceeded, PayloadTooLarge
        """
        limits = self._limits[tier]
        with self._lock:
            now = self._clock()
            bucket = self._buckets[tier]
            bucket.prune(now)

            minute_hits = [ts for ts in bucket.requests if now - ts < MINUTE]
            if len(minute_hits) >= limits.requests_per_minute:
                retry = MINUTE - (now - minute_hits[0])
                raise self._deny(
                    RateLimited(
                        f"Rate limit reached: {limits.requests_per_minute} requests per minute "
                        f"for the {tier.value} tier",
                        retry_after=retry,
                    )
                )

            if len(bucket.requests) >= limits.requests_per_hour:
                retry = HOUR - (now - bucket.requests[0])
                raise self._deny(
                    RateLimited(
                        f"Rate limit reached: {limits.requests_per_hour} requests per hour "
                        f"for the {tier.value} tier",
                        retry_after=retry,
                    )
                )

            spent = bucket.spent
            if spent + estimated_cost > limits.daily_budget_usd:
                oldest = next((c.ts for c in bucket.costs if c.amount > 0), now)
                retry = DAY - (now - oldest)
                raise self._deny(
                    BudgetExceeded(
                        f"Daily budget of ${limits.daily_budget_usd:.2f} exceeded: "
                        f"${spent:.4f} spent, request needs ${estimated_cost:.4f}",
                        retry_after=retry,
                    )
                )

            if payload_chars > limits.max_payload_chars:
                raise self._deny(
                    PayloadTooLarge(
                        f"Payload of {payload_chars} characters exceeds the "
                        f"{limits.max_payload_chars} character limit"
                    )
                )

            booking = Booking(ts=now, amount=estimated_cost)
            bucket.requests.append(now)
            bucket.costs.append(booking)
            return booking

    def record_usage(self, tier: Tier, booking: Booking, actual_cost: float) -> None:
        """
        Replace the estimate held by *booking* with the actual cost.

        The booking keeps its admission timestamp, so the correction leaves the daily window
        together with the charge it corrects.  A booking already outside the window is a no-op.
        """
        with self._lock:
            logger.debug(
                "Reconciled %s tier booking: $%.6f -> $%.6f",
                tier.value,
                booking.amount,
                actual_cost,
            )
            booking.amount = actual_cost

    def snapshot(self, tier: Tier) -> Dict[str, float]:
        """Current counters for *tier* (for status endpoints and logs)."""
        with self._lock:
            now = self._clock()
            bucket = self._buckets[tier]
            bucket.prune(now)
            return {
                "spent_today_usd": round(bucket.spent, 6),
                "requests_this_minute": bucket.requests_since(now - MINUTE),
                "requests_this_hour": len(bucket.requests),
            }

    @staticmethod
    def _deny(exc: AdmissionDenied) -> AdmissionDenied:
        logger.warning("Admission denied (%s): %s", exc.kind.value, exc.reason)
        return exc
