"""Circuit breaker exceptions.

Every rejection raised by a breaker derives from ``CircuitBreakerError``.
Failures of the guarded operation itself are re-raised unchanged and never
wrapped here.
"""


class CircuitBreakerError(Exception):
    """Base exception for the circuit breaker package."""


class CircuitOpenError(CircuitBreakerError):
    """A call was refused because the dependency's breaker is open.

    The wrapped operation was not invoked. ``retry_after`` is 0 when the
    cooldown has elapsed but another caller currently holds the probe slot.

    Attributes:
        breaker_name: Name of the breaker rejecting the call.
        retry_after: Seconds until a half-open probe may be attempted.
    """

    def __init__(self, breaker_name: str, retry_after: float) -> None:
        self.breaker_name = breaker_name
        self.retry_after = retry_after
        super().__init__(f"circuit_open: {breaker_name} retry_after={retry_after:g}s")

    def as_details(self) -> dict[str, object]:
        """Return a JSON-ready payload for tool responses."""
        return {
            "breaker": self.breaker_name,
            "retry_after_seconds": round(self.retry_after, 3),
        }
