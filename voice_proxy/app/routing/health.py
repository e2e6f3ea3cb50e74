"""Provider health: circuit breakers and usage statistics."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Literal, Protocol

from ..errors import ErrorKind, ErrorRecord
from .circuit_breaker import BreakerState, CircuitBreaker

_LOGGER = logging.getLogger(__name__)

Outcome = Literal["success", "failure"]


def _utcnow() -> datetime:
    """Returns current UTC wall clock time."""
    return datetime.now(timezone.utc)


@dataclass(slots=True, frozen=True)
class UsageRecord:
    """Outcome of one provider attempt as observed by the router.

    Attributes:
        provider: Provider id the attempt ran against.
        outcome: ``success`` or ``failure``.
        latency_ms: Wall time spent in the attempt.
        error: Failure details, ``None`` on success.
        timestamp: When the attempt finished (UTC).
    """

    provider: str
    outcome: Outcome
    latency_ms: float
    error: ErrorRecord | None = None
    timestamp: datetime = field(default_factory=_utcnow)


class UsageSink(Protocol):
    """Write-only consumer of usage records."""

    async def record(self, usage: UsageRecord) -> None: ...


@dataclass(slots=True)
class UsageStats:
    """Running counters for one provider."""

    total_requests: int = 0
    total_errors: int = 0
    total_latency_ms: float = 0.0
    error_types: dict[str, int] = field(default_factory=dict)
    last_error: ErrorRecord | None = None
    last_used: datetime | None = None

    @property
    def error_rate(self) -> float:
        if not self.total_requests:
            return 0.0
        return self.total_errors / self.total_requests

    @property
    def avg_latency_ms(self) -> float:
        if not self.total_requests:
            return 0.0
        return self.total_latency_ms / self.total_requests

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_requests": self.total_requests,
            "total_errors": self.total_errors,
            "error_rate": round(self.error_rate, 4),
            "avg_latency_ms": round(self.avg_latency_ms, 2),
            "error_types": dict(self.error_types),
            "last_error": self.last_error.to_dict() if self.last_error else None,
            "last_used": self.last_used.isoformat() if self.last_used else None,
        }


class ProviderHealthRegistry:
    """Owns one circuit breaker and one usage counter per provider.

    Breakers are created lazily on first reference and shared by every
    session and router call in the process.
    """

    def __init__(
        self,
        *,
        failure_threshold: int = 5,
        cooldown_s: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._failure_threshold = failure_threshold
        self._cooldown_s = cooldown_s
        self._clock = clock
        self._lock = threading.Lock()
        self._breakers: dict[str, CircuitBreaker] = {}
        self._stats: dict[str, UsageStats] = {}

    def breaker(self, provider: str) -> CircuitBreaker:
        """Returns the breaker for ``provider``, creating it on first use."""
        with self._lock:
            breaker = self._breakers.get(provider)
            if breaker is None:
                breaker = CircuitBreaker(
                    provider,
                    failure_threshold=self._failure_threshold,
                    cooldown_s=self._cooldown_s,
                    clock=self._clock,
                )
                self._breakers[provider] = breaker
            return breaker

    def is_available(self, provider: str) -> bool:
        return self.breaker(provider).is_available()

    def reset_breaker(self, provider: str) -> dict[str, Any]:
        """Forces a provider's breaker back to CLOSED.

        Returns:
            The breaker snapshot after the reset.
        """
        breaker = self.breaker(provider)
        breaker.reset()
        return breaker.snapshot()

    async def record(self, usage: UsageRecord) -> None:
        """Applies one attempt outcome to the provider's counters."""
        with self._lock:
            stats = self._stats.setdefault(usage.provider, UsageStats())
            stats.total_requests += 1
            stats.total_latency_ms += usage.latency_ms
            stats.last_used = usage.timestamp
            if usage.outcome == "failure":
                stats.total_errors += 1
                kind = usage.error.kind.value if usage.error else ErrorKind.UNKNOWN.value
                stats.error_types[kind] = stats.error_types.get(kind, 0) + 1
                stats.last_error = usage.error

    def usage(self, provider: str | None = None) -> dict[str, Any]:
        """Returns usage counters for one provider or for all of them.

        Args:
            provider: Provider id, or ``None`` for every provider seen so far.

        Returns:
            A JSON-ready mapping. A provider with no recorded attempts yields
            zeroed counters.
        """
        with self._lock:
            if provider is not None:
                return self._stats.get(provider, UsageStats()).to_dict()
            return {name: stats.to_dict() for name, stats in sorted(self._stats.items())}

    def provider_health(self, provider: str) -> dict[str, Any]:
        """Classifies one provider as healthy, degraded, recovering or down."""
        breaker = self.breaker(provider)
        snapshot = breaker.snapshot()
        with self._lock:
            stats = self._stats.get(provider, UsageStats())
            error_rate = stats.error_rate

        state = snapshot["state"]
        if state == BreakerState.OPEN.value:
            status = "down"
        elif state == BreakerState.HALF_OPEN.value:
            status = "recovering"
        elif error_rate > 0.5:
            status = "degraded"
        else:
            status = "healthy"
        return {"status": status, "error_rate": round(error_rate, 4), "circuit_breaker": snapshot}

    def system_health(self) -> dict[str, Any]:
        """Rolls per-provider health into an overall status.

        ``critical`` when more than half the tracked providers are down,
        ``degraded`` when any is down or more than a third are degraded,
        otherwise ``healthy``.
        """
        with self._lock:
            names = sorted(set(self._breakers) | set(self._stats))
        providers = {name: self.provider_health(name) for name in names}

        total = len(providers)
        down = sum(1 for item in providers.values() if item["status"] == "down")
        degraded = sum(1 for item in providers.values() if item["status"] == "degraded")
        if total and down > total / 2:
            overall = "critical"
        elif down > 0 or (total and degraded > total / 3):
            overall = "degraded"
        else:
            overall = "healthy"
        return {"status": overall, "providers": providers, "timestamp": _utcnow().isoformat()}
