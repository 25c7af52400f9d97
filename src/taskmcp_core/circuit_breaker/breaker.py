"""Core circuit breaker implementation."""

import sys
import threading
import time
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import NoReturn, ParamSpec, TypeVar

import structlog

from taskmcp_core.circuit_breaker.exceptions import CircuitOpenError
from taskmcp_core.circuit_breaker.metrics import BreakerListener
from taskmcp_core.circuit_breaker.state import CircuitMetrics, CircuitState
from taskmcp_core.logging import log_info, log_warning

T = TypeVar("T")
P = ParamSpec("P")

_Transition = tuple[CircuitState, CircuitState]

_logger = structlog.stdlib.get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _monotonic() -> float:
    return time.monotonic()


class _ProbeGate:
    """Allow at most one in-flight half-open probe per breaker instance."""

    def __init__(self) -> None:
        is_gil_enabled = getattr(sys, "_is_gil_enabled", None)
        self._gil_enabled = True if is_gil_enabled is None else bool(is_gil_enabled())
        self._thread_lock: threading.Lock | None = None
        if not self._gil_enabled:
            self._thread_lock = threading.Lock()
        self._held = False

    def try_acquire(self) -> bool:
        if self._thread_lock is None:
            if self._held:
                return False
            self._held = True
            return True

        with self._thread_lock:
            if self._held:
                return False
            self._held = True
            return True

    def release(self) -> None:
        if self._thread_lock is None:
            self._held = False
            return
        with self._thread_lock:
            self._held = False


@dataclass(frozen=True, slots=True)
class CircuitBreakerConfig:
    """Circuit breaker configuration values.

    Attributes:
        failure_threshold: Consecutive failures while ``CLOSED`` before opening.
        reset_timeout: Seconds to stay ``OPEN`` before allowing a probe.
        enable_metrics: Emit per-call listener events.
    """

    failure_threshold: int = 5
    reset_timeout: float = 60.0
    enable_metrics: bool = True

    def __post_init__(self) -> None:
        if self.failure_threshold < 1:
            raise ValueError("failure_threshold must be >= 1")
        if self.reset_timeout < 0:
            raise ValueError("reset_timeout must be >= 0")


class CircuitBreaker:
    """Stateful proxy around calls to one logical remote dependency.

    Breaker state is mutated synchronously right after each outcome, so
    interleaved callers never act on a ``CLOSED`` state that another call has
    already tripped.
    """

    def __init__(
        self,
        name: str,
        *,
        config: CircuitBreakerConfig | None = None,
        listeners: Sequence[BreakerListener] | None = None,
    ) -> None:
        """Build a circuit breaker.

        Args:
            name: Dependency name used for metrics and logs.
            config: Breaker behavior configuration. Defaults to
                ``CircuitBreakerConfig()``.
            listeners: Optional listener hooks for breaker events.
        """
        self.name = name
        self.config = CircuitBreakerConfig() if config is None else config
        self._listeners = tuple(listeners) if listeners is not None else ()
        self._probe_gate = _ProbeGate()
        self._state = CircuitState.CLOSED
        self._consecutive_failures = 0
        self._failures = 0
        self._successes = 0
        self._requests = 0
        self._state_changes = 0
        self._last_failure_at: datetime | None = None
        self._last_success_at: datetime | None = None
        self._opened_at: float | None = None
        self._started_at = _monotonic()

    @property
    def state(self) -> CircuitState:
        return self._state

    def get_metrics(self) -> CircuitMetrics:
        """Return a snapshot of the breaker counters."""
        return CircuitMetrics(
            name=self.name,
            state=self._state,
            failures=self._failures,
            successes=self._successes,
            requests=self._requests,
            state_changes=self._state_changes,
            last_failure_at=self._last_failure_at,
            last_success_at=self._last_success_at,
            uptime=max(_monotonic() - self._started_at, 0.0),
        )

    def is_open(self) -> bool:
        """Return true while calls would be rejected without a probe."""
        return (
            self._state == CircuitState.OPEN and self._retry_after(_monotonic()) > 0
        )

    async def reset(self) -> None:
        """Force ``CLOSED`` and zero every counter except state changes.

        Listeners see the transition when the breaker was not already closed.
        """
        transition: _Transition | None = None
        if self._state != CircuitState.CLOSED:
            transition = self._state, CircuitState.CLOSED
            self._state_changes += 1
        self._state = CircuitState.CLOSED
        self._consecutive_failures = 0
        self._failures = 0
        self._successes = 0
        self._requests = 0
        self._last_failure_at = None
        self._last_success_at = None
        self._opened_at = None
        self._started_at = _monotonic()
        log_info(_logger, "circuit_breaker.reset", breaker=self.name)
        await self._emit_state_change(transition)

    async def force_open(self) -> None:
        """Open the circuit now and start a fresh cooldown."""
        transition: _Transition | None = None
        if self._state != CircuitState.OPEN:
            transition = self._state, CircuitState.OPEN
            self._state_changes += 1
        self._state = CircuitState.OPEN
        self._opened_at = _monotonic()
        log_warning(
            _logger,
            "circuit_breaker.forced_open",
            breaker=self.name,
            reset_timeout=self.config.reset_timeout,
        )
        await self._emit_state_change(transition)

    async def execute(self, operation: Callable[[], Awaitable[T]]) -> T:
        """Invoke a zero-argument async operation under breaker protection."""
        return await self.call(operation)

    async def call(
        self,
        func: Callable[P, Awaitable[T]],
        *args: P.args,
        **kwargs: P.kwargs,
    ) -> T:
        """Invoke an async callable under circuit breaker protection.

        Args:
            func: Async callable hitting the guarded dependency.
            *args: Positional arguments forwarded to ``func``.
            **kwargs: Keyword arguments forwarded to ``func``.

        Returns:
            The result of ``func`` when allowed and successful.

        Raises:
            CircuitOpenError: When the circuit is open and the call is rejected.
            Exception: The original exception from ``func`` when it is attempted
                and fails.
        """
        self._requests += 1
        is_probe = False
        probe_transition: _Transition | None = None

        if self._state == CircuitState.HALF_OPEN:
            await self._reject(retry_after=0.0)

        if self._state == CircuitState.OPEN:
            retry_after = self._retry_after(_monotonic())
            if retry_after > 0:
                await self._reject(retry_after=retry_after)
            if not self._probe_gate.try_acquire():
                await self._reject(retry_after=0.0)
            is_probe = True
            probe_transition = self._transition(CircuitState.HALF_OPEN)

        start = _monotonic()
        try:
            await self._emit_state_change(probe_transition)
            result = await func(*args, **kwargs)
        except Exception as exc:
            elapsed = max(_monotonic() - start, 0.0)
            transition = self._record_failure(is_probe)
            if self.config.enable_metrics:
                await self._emit_call_failed(exc, elapsed)
            await self._emit_state_change(transition)
            raise
        else:
            elapsed = max(_monotonic() - start, 0.0)
            transition = self._record_success(is_probe)
            if self.config.enable_metrics:
                await self._emit_call_succeeded(elapsed)
            await self._emit_state_change(transition)
            return result
        finally:
            if is_probe:
                abandoned: _Transition | None = None
                if self._state == CircuitState.HALF_OPEN:
                    # Probe abandoned (cancelled): back to OPEN, cooldown kept.
                    abandoned = self._transition(CircuitState.OPEN)
                self._probe_gate.release()
                await self._emit_state_change(abandoned)

    def _retry_after(self, now: float) -> float:
        opened_at = now if self._opened_at is None else self._opened_at
        return max(self.config.reset_timeout - (now - opened_at), 0.0)

    async def _reject(self, *, retry_after: float) -> NoReturn:
        if self.config.enable_metrics:
            await self._emit_call_rejected()
        raise CircuitOpenError(self.name, retry_after=retry_after)

    def _transition(self, new: CircuitState) -> _Transition:
        old = self._state
        self._state = new
        self._state_changes += 1
        fields: dict[str, object] = {
            "breaker": self.name,
            "old_state": str(old),
            "new_state": str(new),
            "failures": self._failures,
        }
        if new == CircuitState.OPEN:
            log_warning(
                _logger,
                "circuit_breaker.opened",
                threshold=self.config.failure_threshold,
                **fields,
            )
        else:
            log_info(_logger, "circuit_breaker.state_changed", **fields)
        return old, new

    def _record_failure(self, is_probe: bool) -> _Transition | None:
        self._failures += 1
        self._last_failure_at = _utcnow()
        if is_probe:
            if self._state != CircuitState.HALF_OPEN:
                return None
            self._opened_at = _monotonic()
            return self._transition(CircuitState.OPEN)
        if self._state != CircuitState.CLOSED:
            return None
        self._consecutive_failures += 1
        if self._consecutive_failures < self.config.failure_threshold:
            return None
        self._opened_at = _monotonic()
        return self._transition(CircuitState.OPEN)

    def _record_success(self, is_probe: bool) -> _Transition | None:
        self._successes += 1
        self._last_success_at = _utcnow()
        if is_probe:
            if self._state != CircuitState.HALF_OPEN:
                return None
            self._consecutive_failures = 0
            self._failures = 0
            self._opened_at = None
            return self._transition(CircuitState.CLOSED)
        if self._state == CircuitState.CLOSED:
            self._consecutive_failures = 0
        return None

    async def _emit_state_change(self, transition: _Transition | None) -> None:
        if transition is None:
            return
        old, new = transition
        for listener in self._listeners:
            try:
                await listener.on_state_change(self.name, old, new)
            except Exception:
                continue

    async def _emit_call_rejected(self) -> None:
        for listener in self._listeners:
            try:
                await listener.on_call_rejected(self.name)
            except Exception:
                continue

    async def _emit_call_succeeded(self, elapsed: float) -> None:
        for listener in self._listeners:
            try:
                await listener.on_call_succeeded(self.name, elapsed)
            except Exception:
                continue

    async def _emit_call_failed(self, exc: Exception, elapsed: float) -> None:
        for listener in self._listeners:
            try:
                await listener.on_call_failed(self.name, exc, elapsed)
            except Exception:
                continue
