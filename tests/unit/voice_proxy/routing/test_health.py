from __future__ import annotations

import asyncio

from voice_proxy.app.errors import ErrorKind, ErrorRecord
from voice_proxy.app.routing.circuit_breaker import BreakerState
from voice_proxy.app.routing.health import ProviderHealthRegistry, UsageRecord


def run(coro):
    return asyncio.run(coro)


def _failure(provider: str, kind: ErrorKind = ErrorKind.SERVER_ERROR, latency_ms: float = 30.0) -> UsageRecord:
    error = ErrorRecord(kind=kind, provider=provider, attempt=0, retryable=kind.retryable, message="boom")
    return UsageRecord(provider=provider, outcome="failure", latency_ms=latency_ms, error=error)


def _success(provider: str, latency_ms: float = 10.0) -> UsageRecord:
    return UsageRecord(provider=provider, outcome="success", latency_ms=latency_ms)


def test_breakers_are_created_lazily_and_shared() -> None:
    health = ProviderHealthRegistry(failure_threshold=2, cooldown_s=5.0)

    breaker = health.breaker("deepgram")

    assert health.breaker("deepgram") is breaker
    assert breaker.failure_threshold == 2
    assert breaker.cooldown_s == 5.0


def test_usage_counters_track_requests_errors_and_latency() -> None:
    health = ProviderHealthRegistry()

    run(health.record(_success("whisper", latency_ms=10.0)))
    run(health.record(_failure("whisper", ErrorKind.TIMEOUT, latency_ms=50.0)))
    run(health.record(_failure("whisper", ErrorKind.TIMEOUT, latency_ms=30.0)))

    usage = health.usage("whisper")
    assert usage["total_requests"] == 3
    assert usage["total_errors"] == 2
    assert usage["error_rate"] == 0.6667
    assert usage["avg_latency_ms"] == 30.0
    assert usage["error_types"] == {"TIMEOUT": 2}
    assert usage["last_error"]["kind"] == "TIMEOUT"
    assert usage["last_used"] is not None


def test_usage_for_unseen_provider_is_zeroed() -> None:
    usage = ProviderHealthRegistry().usage("murf")

    assert usage["total_requests"] == 0
    assert usage["error_rate"] == 0.0
    assert usage["last_error"] is None


def test_usage_without_provider_lists_all_seen() -> None:
    health = ProviderHealthRegistry()
    run(health.record(_success("elevenlabs")))
    run(health.record(_success("whisper")))

    assert sorted(health.usage()) == ["elevenlabs", "whisper"]


def test_provider_health_classification() -> None:
    health = ProviderHealthRegistry(failure_threshold=1)
    run(health.record(_success("ok")))
    run(health.record(_failure("flaky")))
    run(health.record(_failure("flaky")))
    run(health.record(_success("flaky")))
    health.breaker("dead").record_failure()

    assert health.provider_health("ok")["status"] == "healthy"
    assert health.provider_health("flaky")["status"] == "degraded"
    assert health.provider_health("dead")["status"] == "down"


def test_half_open_provider_is_recovering() -> None:
    now = [0.0]
    health = ProviderHealthRegistry(failure_threshold=1, cooldown_s=1.0, clock=lambda: now[0])
    health.breaker("p1").record_failure()
    now[0] = 2.0
    health.breaker("p1").try_acquire()

    assert health.breaker("p1").state is BreakerState.HALF_OPEN
    assert health.provider_health("p1")["status"] == "recovering"


def test_system_health_is_degraded_when_any_provider_is_down() -> None:
    health = ProviderHealthRegistry(failure_threshold=1)
    health.breaker("p1").record_failure()
    health.breaker("p2")
    health.breaker("p3")

    summary = health.system_health()

    assert summary["status"] == "degraded"
    assert summary["providers"]["p1"]["status"] == "down"
    assert summary["providers"]["p2"]["status"] == "healthy"


def test_system_health_is_critical_when_most_providers_are_down() -> None:
    health = ProviderHealthRegistry(failure_threshold=1)
    health.breaker("p1").record_failure()
    health.breaker("p2").record_failure()
    health.breaker("p3")

    assert health.system_health()["status"] == "critical"


def test_system_health_is_healthy_without_providers() -> None:
    summary = ProviderHealthRegistry().system_health()

    assert summary["status"] == "healthy"
    assert summary["providers"] == {}


def test_reset_breaker_returns_closed_snapshot() -> None:
    health = ProviderHealthRegistry(failure_threshold=1)
    health.breaker("p1").record_failure()

    snapshot = health.reset_breaker("p1")

    assert snapshot["state"] == "CLOSED"
    assert health.is_available("p1") is True
