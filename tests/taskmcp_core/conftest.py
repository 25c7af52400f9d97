from __future__ import annotations

import pytest

import taskmcp_core.circuit_breaker.breaker as breaker_mod
from taskmcp_core.circuit_breaker import CircuitBreakerRegistry
from tests.taskmcp_core.support.fakes import FakeClock, FakeTaskApi


@pytest.fixture
def fake_clock(monkeypatch: pytest.MonkeyPatch) -> FakeClock:
    """Drive breaker cooldowns from a manually advanced clock."""
    clock = FakeClock()
    monkeypatch.setattr(breaker_mod, "_monotonic", clock.now)
    return clock


@pytest.fixture
def registry() -> CircuitBreakerRegistry:
    """Provide a fresh breaker registry per test."""
    return CircuitBreakerRegistry()


@pytest.fixture
def fake_task_api() -> FakeTaskApi:
    """Provide a fresh in-memory task API per test."""
    return FakeTaskApi()
