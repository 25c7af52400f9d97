"""Listener hooks and in-process call statistics for circuit breakers."""

from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Protocol

from taskmcp_core.circuit_breaker.state import CircuitState


class BreakerListener(Protocol):
    """Receiver of circuit breaker events.

    Listener errors never reach the guarded call. Per-call hooks are skipped
    for breakers built with ``enable_metrics=False``; ``on_state_change``
    always fires.
    """

    async def on_state_change(
        self, name: str, old: CircuitState, new: CircuitState
    ) -> None:
        """Handle a state transition of breaker ``name``."""

    async def on_call_rejected(self, name: str) -> None:
        """Handle a call turned away without invoking the dependency."""

    async def on_call_succeeded(self, name: str, elapsed: float) -> None:
        """Handle a guarded call that returned normally."""

    async def on_call_failed(self, name: str, exc: Exception, elapsed: float) -> None:
        """Handle a guarded call that raised."""


@dataclass(frozen=True)
class CallStats:
    """Aggregated call figures for one breaker.

    Attributes:
        succeeded: Calls that returned normally.
        failed: Calls that raised.
        rejected: Calls refused while the circuit was open or probing.
        average_latency: Mean seconds per attempted call, or 0 when none ran.
        last_error_type: Class name of the most recent failure.
        last_transition: Most recent ``(old, new)`` state pair, if any.
        last_transition_at: When ``last_transition`` happened.
    """

    succeeded: int = 0
    failed: int = 0
    rejected: int = 0
    average_latency: float = 0.0
    last_error_type: str | None = None
    last_transition: tuple[CircuitState, CircuitState] | None = None
    last_transition_at: datetime | None = None


@dataclass
class _MutableStats:
    succeeded: int = 0
    failed: int = 0
    rejected: int = 0
    total_latency: float = 0.0
    last_error_type: str | None = None
    last_transition: tuple[CircuitState, CircuitState] | None = None
    last_transition_at: datetime | None = None

    def freeze(self) -> CallStats:
        attempted = self.succeeded + self.failed
        return CallStats(
            succeeded=self.succeeded,
            failed=self.failed,
            rejected=self.rejected,
            average_latency=self.total_latency / attempted if attempted else 0.0,
            last_error_type=self.last_error_type,
            last_transition=self.last_transition,
            last_transition_at=self.last_transition_at,
        )


class CallStatsListener(BreakerListener):
    """Listener that keeps per-breaker call counts and latency totals.

    One instance is usually shared by every breaker of a registry, so the
    figures are keyed by breaker name.
    """

    def __init__(self, *, clock: Callable[[], datetime] | None = None) -> None:
        self._clock = clock if clock is not None else (lambda: datetime.now(UTC))
        self._stats: dict[str, _MutableStats] = {}

    def _entry(self, name: str) -> _MutableStats:
        entry = self._stats.get(name)
        if entry is None:
            entry = self._stats[name] = _MutableStats()
        return entry

    async def on_state_change(
        self,
        name: str,
        old: CircuitState,
        new: CircuitState,
    ) -> None:
        entry = self._entry(name)
        entry.last_transition = (old, new)
        entry.last_transition_at = self._clock()

    async def on_call_rejected(self, name: str) -> None:
        self._entry(name).rejected += 1

    async def on_call_succeeded(self, name: str, elapsed: float) -> None:
        entry = self._entry(name)
        entry.succeeded += 1
        entry.total_latency += elapsed

    async def on_call_failed(self, name: str, exc: Exception, elapsed: float) -> None:
        entry = self._entry(name)
        entry.failed += 1
        entry.total_latency += elapsed
        entry.last_error_type = type(exc).__name__

    def get(self, name: str) -> CallStats:
        """Return the figures for ``name``; unknown names report zeros."""
        entry = self._stats.get(name)
        return CallStats() if entry is None else entry.freeze()

    def snapshot(self) -> Mapping[str, CallStats]:
        return {name: entry.freeze() for name, entry in self._stats.items()}

    def clear(self) -> None:
        self._stats.clear()
