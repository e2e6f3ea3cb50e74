"""Retry, timeout and fallback orchestration across providers."""

from __future__ import annotations

import asyncio
import logging
import random
import time
from collections.abc import Awaitable, Callable, Sequence
from typing import TypeVar

from ..errors import AllProvidersFailedError, ErrorKind, ErrorRecord, ProviderError, classify_error
from .circuit_breaker import BreakerPermit
from .health import ProviderHealthRegistry, UsageRecord, UsageSink

_LOGGER = logging.getLogger(__name__)

T = TypeVar("T")
Operation = Callable[[str], Awaitable[T]]


class ResilientRouter:
    """Runs provider operations with retries, timeouts and fallbacks.

    The operation receives the provider id it is being attempted against so
    callers can build per-provider requests.
    """

    def __init__(
        self,
        health: ProviderHealthRegistry,
        *,
        usage_sinks: Sequence[UsageSink] = (),
        base_delay_ms: int = 1000,
        delay_cap_ms: int = 30000,
        max_retries: int = 3,
        timeout_ms: int = 30000,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        jitter: Callable[[], float] = random.random,
    ) -> None:
        self.health = health
        self._usage_sinks = tuple(usage_sinks)
        self._base_delay_ms = base_delay_ms
        self._delay_cap_ms = delay_cap_ms
        self._max_retries = max_retries
        self._timeout_ms = timeout_ms
        self._sleep = sleep
        self._jitter = jitter

    def retry_delay_ms(self, attempt: int) -> float:
        """Returns the backoff before retry ``attempt + 1``.

        ``min(base * 2**attempt + U[0, 1000), cap)`` in milliseconds.
        """
        return min(self._base_delay_ms * (2**attempt) + self._jitter() * 1000, self._delay_cap_ms)

    async def execute(
        self,
        operation: Operation[T],
        *,
        provider: str,
        fallback_providers: Sequence[str] = (),
        max_retries: int | None = None,
        timeout_ms: int | None = None,
    ) -> T:
        """Runs ``operation`` against the primary, then each fallback.

        Args:
            operation: Coroutine function called with a provider id.
            provider: Primary provider id.
            fallback_providers: Providers tried once each, in order, after the
                primary is exhausted or unavailable.
            max_retries: Retries on the primary after the first attempt.
            timeout_ms: Per-attempt timeout.

        Returns:
            The first successful operation result.

        Raises:
            AllProvidersFailedError: Every provider failed or was unavailable.
        """
        retries = self._max_retries if max_retries is None else max_retries
        timeout_s = (self._timeout_ms if timeout_ms is None else timeout_ms) / 1000
        attempts: list[ErrorRecord] = []
        skipped: list[str] = []

        primary = self.health.breaker(provider)
        for attempt in range(retries + 1):
            permit = primary.try_acquire()
            if permit is None:
                if attempt == 0:
                    skipped.append(provider)
                    _LOGGER.warning("Primary provider unavailable.", extra={"provider": provider})
                break
            try:
                return await self._attempt(operation, provider, attempt, timeout_s, permit)
            except ProviderError as error:
                attempts.append(error.to_record(provider=provider, attempt=attempt))
                if not error.retryable:
                    _LOGGER.warning(
                        "Non-retryable provider error.",
                        extra={"provider": provider, "kind": error.kind.value},
                    )
                    break
                if attempt >= retries or not primary.is_available():
                    break
                delay_ms = self.retry_delay_ms(attempt)
                _LOGGER.info(
                    "Retrying provider.",
                    extra={"provider": provider, "attempt": attempt + 1, "delay_ms": round(delay_ms)},
                )
                await self._sleep(delay_ms / 1000)

        for fallback in fallback_providers:
            permit = self.health.breaker(fallback).try_acquire()
            if permit is None:
                skipped.append(fallback)
                _LOGGER.info("Skipping unavailable fallback.", extra={"provider": fallback})
                continue
            _LOGGER.info("Trying fallback provider.", extra={"provider": fallback})
            try:
                return await self._attempt(operation, fallback, 0, timeout_s, permit)
            except ProviderError as error:
                attempts.append(error.to_record(provider=fallback, attempt=0))

        last_error = attempts[-1] if attempts else None
        if last_error is not None:
            message = f"All providers failed. Last error: {last_error.message}"
        else:
            message = f"No provider available: circuit open for {', '.join(skipped)}"
        _LOGGER.error(
            "All providers failed.",
            extra={"provider": provider, "attempts": len(attempts), "skipped": skipped},
        )
        raise AllProvidersFailedError(message, attempts=attempts, last_error=last_error)

    async def _attempt(
        self,
        operation: Operation[T],
        provider: str,
        attempt: int,
        timeout_s: float,
        permit: BreakerPermit,
    ) -> T:
        """Runs one attempt and charges its outcome to breaker and usage."""
        breaker = self.health.breaker(provider)
        started = time.monotonic()
        try:
            result = await asyncio.wait_for(operation(provider), timeout=timeout_s)
        except asyncio.CancelledError:
            breaker.release(permit)
            raise
        except asyncio.TimeoutError as exc:
            error = ProviderError(
                f"Operation timed out after {round(timeout_s * 1000)}ms",
                kind=ErrorKind.TIMEOUT,
                provider=provider,
                attempt=attempt,
            )
            await self._fail(breaker, permit, error, started)
            raise error from exc
        except Exception as exc:
            error = classify_error(exc, provider=provider, attempt=attempt)
            await self._fail(breaker, permit, error, started)
            if error is exc:
                raise
            raise error from exc

        breaker.record_success(permit)
        await self._emit(UsageRecord(provider=provider, outcome="success", latency_ms=_elapsed_ms(started)))
        return result

    async def _fail(self, breaker, permit: BreakerPermit, error: ProviderError, started: float) -> None:
        breaker.record_failure(permit)
        _LOGGER.warning(
            "Provider attempt failed.",
            extra={
                "provider": breaker.provider,
                "attempt": error.attempt,
                "kind": error.kind.value,
                "error": error.message,
            },
        )
        record = error.to_record(provider=breaker.provider)
        await self._emit(
            UsageRecord(provider=breaker.provider, outcome="failure", latency_ms=_elapsed_ms(started), error=record)
        )

    async def _emit(self, usage: UsageRecord) -> None:
        await self.health.record(usage)
        for sink in self._usage_sinks:
            try:
                await sink.record(usage)
            except Exception:
                _LOGGER.debug("Usage sink write failed.", exc_info=True, extra={"provider": usage.provider})


def _elapsed_ms(started: float) -> float:
    return (time.monotonic() - started) * 1000
