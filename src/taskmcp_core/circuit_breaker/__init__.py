"""Async circuit breaker for remote task API dependencies.

This package implements the circuit breaker pattern from *Release It!*.

Key behavior notes:
  - ``CLOSED`` opens after ``failure_threshold`` consecutive failures.
  - ``OPEN`` rejects calls with ``CircuitOpenError`` until ``reset_timeout``
    has elapsed, then lets exactly one probe through (``HALF_OPEN``). Other
    callers arriving during the probe are rejected with ``retry_after=0``.
  - A successful probe closes the circuit; a failed one reopens it and
    restarts the cooldown.
  - Any exception raised by the guarded call counts as a failure. Deciding
    what is worth retrying is left to ``taskmcp_core.retry``.
"""

from taskmcp_core.circuit_breaker.breaker import CircuitBreaker, CircuitBreakerConfig
from taskmcp_core.circuit_breaker.exceptions import (
    CircuitBreakerError,
    CircuitOpenError,
)
from taskmcp_core.circuit_breaker.metrics import (
    BreakerListener,
    CallStats,
    CallStatsListener,
)
from taskmcp_core.circuit_breaker.registry import CircuitBreakerRegistry, HealthStatus
from taskmcp_core.circuit_breaker.state import CircuitMetrics, CircuitState

__all__ = [
    "BreakerListener",
    "CallStats",
    "CallStatsListener",
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CircuitBreakerError",
    "CircuitBreakerRegistry",
    "CircuitMetrics",
    "CircuitOpenError",
    "CircuitState",
    "HealthStatus",
]
