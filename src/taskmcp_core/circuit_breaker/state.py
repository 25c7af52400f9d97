"""Circuit breaker state primitives."""

from dataclasses import dataclass
from datetime import datetime
from enum import StrEnum


class CircuitState(StrEnum):
    """Circuit breaker state values."""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass(frozen=True)
class CircuitMetrics:
    """Point-in-time view of breaker counters useful for metrics/logging.

    Attributes:
        name: Breaker name.
        state: Current breaker state.
        failures: Failures counted since the last reset or close.
        successes: Successful calls since the last reset.
        requests: Calls observed since the last reset, rejected ones included.
        state_changes: State transitions since the breaker was created.
        last_failure_at: Timestamp of the last failed call, if any.
        last_success_at: Timestamp of the last successful call, if any.
        uptime: Seconds since creation or the last manual reset.
    """

    name: str
    state: CircuitState
    failures: int
    successes: int
    requests: int
    state_changes: int
    last_failure_at: datetime | None
    last_success_at: datetime | None
    uptime: float
