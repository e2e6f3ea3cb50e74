"""Provider routing: circuit breakers, health and resilient execution."""

from .circuit_breaker import BreakerPermit, BreakerState, CircuitBreaker
from .health import ProviderHealthRegistry, UsageRecord, UsageSink, UsageStats
from .router import ResilientRouter

__all__ = [
    "BreakerPermit",
    "BreakerState",
    "CircuitBreaker",
    "ProviderHealthRegistry",
    "ResilientRouter",
    "UsageRecord",
    "UsageSink",
    "UsageStats",
]
