import asyncio

import pytest

import taskmcp_core.circuit_breaker.breaker as breaker_mod
from taskmcp_core.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitOpenError,
    CircuitState,
)
from tests.taskmcp_core.support.fakes import (
    ExplodingListener,
    FakeClock,
    RecordingListener,
)

pytestmark = pytest.mark.asyncio


class _CountingOperation:
    def __init__(self, *, fail: bool) -> None:
        self.fail = fail
        self.calls = 0

    async def __call__(self) -> str:
        self.calls += 1
        if self.fail:
            raise RuntimeError("nope")
        return "ok"


async def _trip(breaker: CircuitBreaker, times: int) -> None:
    failing = _CountingOperation(fail=True)
    for _ in range(times):
        with pytest.raises(RuntimeError):
            await breaker.execute(failing)


async def test_closed_call_succeeds_and_stays_closed() -> None:
    breaker = CircuitBreaker("svc")

    assert await breaker.execute(_CountingOperation(fail=False)) == "ok"

    metrics = breaker.get_metrics()
    assert metrics.state == CircuitState.CLOSED
    assert metrics.successes == 1
    assert metrics.failures == 0
    assert metrics.requests == 1
    assert metrics.last_success_at is not None


async def test_call_forwards_arguments() -> None:
    breaker = CircuitBreaker("svc")

    async def _add(left: int, right: int, *, scale: int) -> int:
        return (left + right) * scale

    assert await breaker.call(_add, 1, 2, scale=3) == 9


async def test_threshold_opens_once_and_rejects_without_invoking(
    fake_clock: FakeClock,
) -> None:
    breaker = CircuitBreaker(
        "svc",
        config=CircuitBreakerConfig(failure_threshold=3, reset_timeout=10.0),
    )

    await _trip(breaker, 3)
    assert breaker.state == CircuitState.OPEN
    assert breaker.get_metrics().state_changes == 1

    operation = _CountingOperation(fail=False)
    with pytest.raises(CircuitOpenError) as excinfo:
        await breaker.execute(operation)

    assert operation.calls == 0
    assert excinfo.value.breaker_name == "svc"
    assert excinfo.value.retry_after == pytest.approx(10.0)
    assert breaker.is_open() is True
    metrics = breaker.get_metrics()
    assert metrics.state_changes == 1
    assert metrics.failures == 3
    assert metrics.requests == 4


async def test_success_resets_consecutive_failures() -> None:
    breaker = CircuitBreaker(
        "svc",
        config=CircuitBreakerConfig(failure_threshold=2, reset_timeout=10.0),
    )

    await _trip(breaker, 1)
    await breaker.execute(_CountingOperation(fail=False))
    await _trip(breaker, 1)

    assert breaker.state == CircuitState.CLOSED
    assert breaker.get_metrics().failures == 2


async def test_original_error_is_reraised() -> None:
    breaker = CircuitBreaker("svc")
    error = ValueError("specific")

    async def _fail() -> None:
        raise error

    with pytest.raises(ValueError) as excinfo:
        await breaker.execute(_fail)

    assert excinfo.value is error


async def test_cooldown_scenario_probe_success_closes(fake_clock: FakeClock) -> None:
    breaker = CircuitBreaker(
        "svc",
        config=CircuitBreakerConfig(failure_threshold=3, reset_timeout=1.0),
    )
    await _trip(breaker, 3)

    fake_clock.advance(0.5)
    operation = _CountingOperation(fail=False)
    with pytest.raises(CircuitOpenError) as excinfo:
        await breaker.execute(operation)
    assert operation.calls == 0
    assert excinfo.value.retry_after == pytest.approx(0.5)

    fake_clock.advance(0.6)
    assert breaker.is_open() is False
    assert await breaker.execute(operation) == "ok"
    assert operation.calls == 1
    assert breaker.state == CircuitState.CLOSED
    assert breaker.get_metrics().failures == 0

    assert await breaker.execute(operation) == "ok"
    assert operation.calls == 2


async def test_probe_failure_reopens_and_restarts_cooldown(
    fake_clock: FakeClock,
) -> None:
    breaker = CircuitBreaker(
        "svc",
        config=CircuitBreakerConfig(failure_threshold=1, reset_timeout=5.0),
    )
    await _trip(breaker, 1)

    fake_clock.advance(5.0)
    probe = _CountingOperation(fail=True)
    with pytest.raises(RuntimeError):
        await breaker.execute(probe)
    assert probe.calls == 1
    assert breaker.state == CircuitState.OPEN

    fake_clock.advance(4.0)
    with pytest.raises(CircuitOpenError) as excinfo:
        await breaker.execute(probe)
    assert excinfo.value.retry_after == pytest.approx(1.0)
    assert probe.calls == 1


async def test_half_open_allows_single_probe_and_rejects_concurrent(
    fake_clock: FakeClock,
) -> None:
    breaker = CircuitBreaker(
        "svc",
        config=CircuitBreakerConfig(failure_threshold=1, reset_timeout=1.0),
    )
    await _trip(breaker, 1)
    fake_clock.advance(1.0)

    started = asyncio.Event()
    release = asyncio.Event()

    async def _probe() -> str:
        started.set()
        await release.wait()
        return "probe"

    task = asyncio.create_task(breaker.execute(_probe))
    await started.wait()
    assert breaker.state == CircuitState.HALF_OPEN

    other = _CountingOperation(fail=False)
    with pytest.raises(CircuitOpenError) as excinfo:
        await breaker.execute(other)
    assert excinfo.value.retry_after == 0.0
    assert other.calls == 0

    release.set()
    assert await task == "probe"
    assert breaker.state == CircuitState.CLOSED
    assert await breaker.execute(other) == "ok"


async def test_cancelled_probe_returns_to_open(fake_clock: FakeClock) -> None:
    breaker = CircuitBreaker(
        "svc",
        config=CircuitBreakerConfig(failure_threshold=1, reset_timeout=1.0),
    )
    await _trip(breaker, 1)
    fake_clock.advance(1.0)

    started = asyncio.Event()

    async def _hang() -> None:
        started.set()
        await asyncio.Event().wait()

    task = asyncio.create_task(breaker.execute(_hang))
    await started.wait()
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert breaker.state == CircuitState.OPEN
    assert await breaker.execute(_CountingOperation(fail=False)) == "ok"
    assert breaker.state == CircuitState.CLOSED


async def test_interleaved_failures_do_not_double_open() -> None:
    breaker = CircuitBreaker(
        "svc",
        config=CircuitBreakerConfig(failure_threshold=2, reset_timeout=30.0),
    )

    async def _fail_after_yield() -> None:
        await asyncio.sleep(0)
        raise RuntimeError("nope")

    results = await asyncio.gather(
        *(breaker.execute(_fail_after_yield) for _ in range(4)),
        return_exceptions=True,
    )

    assert all(isinstance(result, RuntimeError) for result in results)
    metrics = breaker.get_metrics()
    assert metrics.state == CircuitState.OPEN
    assert metrics.state_changes == 1
    assert metrics.failures == 4


async def test_reset_closes_and_zeroes_counters(fake_clock: FakeClock) -> None:
    breaker = CircuitBreaker(
        "svc",
        config=CircuitBreakerConfig(failure_threshold=1, reset_timeout=30.0),
    )
    await breaker.execute(_CountingOperation(fail=False))
    await _trip(breaker, 1)
    fake_clock.advance(3.0)

    await breaker.reset()

    metrics = breaker.get_metrics()
    assert metrics.state == CircuitState.CLOSED
    assert metrics.failures == 0
    assert metrics.successes == 0
    assert metrics.requests == 0
    assert metrics.last_failure_at is None
    assert metrics.last_success_at is None
    assert metrics.uptime == 0.0
    assert metrics.state_changes == 2
    assert await breaker.execute(_CountingOperation(fail=False)) == "ok"


async def test_force_open_rejects_until_cooldown(fake_clock: FakeClock) -> None:
    breaker = CircuitBreaker(
        "svc",
        config=CircuitBreakerConfig(failure_threshold=5, reset_timeout=2.0),
    )

    await breaker.force_open()

    operation = _CountingOperation(fail=False)
    with pytest.raises(CircuitOpenError):
        await breaker.execute(operation)
    assert operation.calls == 0

    fake_clock.advance(2.0)
    assert await breaker.execute(operation) == "ok"
    assert breaker.state == CircuitState.CLOSED


async def test_manual_transitions_notify_listeners() -> None:
    listener = RecordingListener()
    breaker = CircuitBreaker("svc", listeners=[listener])

    await breaker.force_open()
    await breaker.force_open()
    await breaker.reset()
    await breaker.reset()

    assert listener.events == [
        ("state", ("svc", CircuitState.CLOSED, CircuitState.OPEN)),
        ("state", ("svc", CircuitState.OPEN, CircuitState.CLOSED)),
    ]
    assert breaker.get_metrics().state_changes == 2


async def test_cancelled_half_open_call_notifies_reopen(
    fake_clock: FakeClock,
) -> None:
    listener = RecordingListener()
    breaker = CircuitBreaker(
        "svc",
        config=CircuitBreakerConfig(failure_threshold=1, reset_timeout=1.0),
        listeners=[listener],
    )
    await _trip(breaker, 1)
    fake_clock.advance(1.0)
    started = asyncio.Event()

    async def _hang() -> None:
        started.set()
        await asyncio.Event().wait()

    task = asyncio.create_task(breaker.execute(_hang))
    await started.wait()
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    state_events = [event for kind, event in listener.events if kind == "state"]
    assert state_events[-2:] == [
        ("svc", CircuitState.OPEN, CircuitState.HALF_OPEN),
        ("svc", CircuitState.HALF_OPEN, CircuitState.OPEN),
    ]
    assert breaker.state == CircuitState.OPEN


async def test_uptime_tracks_clock(fake_clock: FakeClock) -> None:
    breaker = CircuitBreaker("svc")

    fake_clock.advance(12.5)

    assert breaker.get_metrics().uptime == pytest.approx(12.5)


async def test_listeners_receive_call_and_state_events(fake_clock: FakeClock) -> None:
    listener = RecordingListener()
    breaker = CircuitBreaker(
        "svc",
        config=CircuitBreakerConfig(failure_threshold=1, reset_timeout=1.0),
        listeners=[listener],
    )

    await _trip(breaker, 1)
    with pytest.raises(CircuitOpenError):
        await breaker.execute(_CountingOperation(fail=False))
    fake_clock.advance(1.0)
    await breaker.execute(_CountingOperation(fail=False))

    assert listener.events == [
        ("failed", ("svc", "RuntimeError")),
        ("state", ("svc", CircuitState.CLOSED, CircuitState.OPEN)),
        ("rejected", "svc"),
        ("state", ("svc", CircuitState.OPEN, CircuitState.HALF_OPEN)),
        ("succeeded", "svc"),
        ("state", ("svc", CircuitState.HALF_OPEN, CircuitState.CLOSED)),
    ]


async def test_disabled_metrics_skip_call_events() -> None:
    listener = RecordingListener()
    breaker = CircuitBreaker(
        "svc",
        config=CircuitBreakerConfig(
            failure_threshold=1, reset_timeout=30.0, enable_metrics=False
        ),
        listeners=[listener],
    )

    await _trip(breaker, 1)
    with pytest.raises(CircuitOpenError):
        await breaker.execute(_CountingOperation(fail=False))

    assert listener.events == [
        ("state", ("svc", CircuitState.CLOSED, CircuitState.OPEN)),
    ]


async def test_listener_exceptions_are_swallowed() -> None:
    recording = RecordingListener()
    breaker = CircuitBreaker(
        "svc",
        config=CircuitBreakerConfig(failure_threshold=1, reset_timeout=10.0),
        listeners=[ExplodingListener(), recording],
    )

    await breaker.execute(_CountingOperation(fail=False))
    await _trip(breaker, 1)
    with pytest.raises(CircuitOpenError):
        await breaker.execute(_CountingOperation(fail=False))

    assert ("succeeded", "svc") in recording.events
    assert ("failed", ("svc", "RuntimeError")) in recording.events
    assert ("rejected", "svc") in recording.events


async def test_config_rejects_invalid_threshold_and_timeout() -> None:
    with pytest.raises(ValueError, match="failure_threshold"):
        CircuitBreakerConfig(failure_threshold=0)
    with pytest.raises(ValueError, match="reset_timeout"):
        CircuitBreakerConfig(reset_timeout=-1.0)


async def test_probe_gate_uses_thread_lock_when_gil_disabled(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setattr(
        "taskmcp_core.circuit_breaker.breaker.sys._is_gil_enabled",
        lambda: False,
        raising=False,
    )
    gate = breaker_mod._ProbeGate()

    assert gate.try_acquire() is True
    assert gate.try_acquire() is False
    gate.release()
    assert gate.try_acquire() is True
    gate.release()
