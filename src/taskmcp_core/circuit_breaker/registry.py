"""Process-scoped registry of named circuit breakers."""

import threading
from collections.abc import Sequence
from dataclasses import dataclass

import structlog

from taskmcp_core.circuit_breaker.breaker import CircuitBreaker, CircuitBreakerConfig
from taskmcp_core.circuit_breaker.metrics import BreakerListener
from taskmcp_core.circuit_breaker.state import CircuitMetrics, CircuitState
from taskmcp_core.logging import log_info

_logger = structlog.stdlib.get_logger(__name__)


@dataclass(frozen=True)
class HealthStatus:
    """Breaker names split by whether their dependency is currently trusted."""

    healthy: tuple[str, ...]
    failed: tuple[str, ...]


class CircuitBreakerRegistry:
    """Lazily created breakers keyed by dependency name.

    Build one registry in the composition root and pass it to every caller
    that guards remote calls. Breakers are never removed once created.
    """

    def __init__(
        self,
        *,
        default_config: CircuitBreakerConfig | None = None,
        listeners: Sequence[BreakerListener] | None = None,
    ) -> None:
        """Create an empty registry.

        Args:
            default_config: Config for breakers requested without one.
            listeners: Listener hooks attached to every breaker created here.
        """
        self._default_config = (
            CircuitBreakerConfig() if default_config is None else default_config
        )
        self._listeners = tuple(listeners) if listeners is not None else ()
        self._breakers: dict[str, CircuitBreaker] = {}
        self._lock = threading.Lock()

    def __contains__(self, name: object) -> bool:
        return name in self._breakers

    def __len__(self) -> int:
        return len(self._breakers)

    def get_breaker(
        self,
        name: str,
        config: CircuitBreakerConfig | None = None,
    ) -> CircuitBreaker:
        """Return the breaker for ``name``, creating it on first use.

        ``config`` only applies when the breaker does not exist yet.
        """
        breaker = self._breakers.get(name)
        if breaker is not None:
            return breaker

        with self._lock:
            breaker = self._breakers.get(name)
            if breaker is None:
                breaker = CircuitBreaker(
                    name,
                    config=self._default_config if config is None else config,
                    listeners=self._listeners,
                )
                self._breakers[name] = breaker
                log_info(
                    _logger,
                    "circuit_breaker.created",
                    breaker=name,
                    failure_threshold=breaker.config.failure_threshold,
                    reset_timeout=breaker.config.reset_timeout,
                )
            return breaker

    def get_all_metrics(self) -> dict[str, CircuitMetrics]:
        """Return a metrics snapshot for every registered breaker."""
        return {name: breaker.get_metrics() for name, breaker in self._snapshot()}

    def get_health_status(self) -> HealthStatus:
        """Split breaker names into ``CLOSED`` and ``OPEN``/``HALF_OPEN``."""
        healthy: list[str] = []
        failed: list[str] = []
        for name, breaker in self._snapshot():
            if breaker.state == CircuitState.CLOSED:
                healthy.append(name)
            else:
                failed.append(name)
        return HealthStatus(healthy=tuple(healthy), failed=tuple(failed))

    async def reset_all(self) -> None:
        """Reset every registered breaker to ``CLOSED`` with zeroed counters."""
        for _, breaker in self._snapshot():
            await breaker.reset()
        log_info(_logger, "circuit_breaker.reset_all", count=len(self))

    def _snapshot(self) -> list[tuple[str, CircuitBreaker]]:
        with self._lock:
            return list(self._breakers.items())
