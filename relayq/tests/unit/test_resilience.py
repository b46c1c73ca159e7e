from __future__ import annotations

import pytest

from relayq.core.errors import IntegrationUnavailableError
from relayq.services.resilience import (
    CircuitBreaker,
    CircuitBreakerConfig,
    RetryPolicy,
    breaker_for,
    retry_async,
)
from relayq.services.telemetry import counters_snapshot


async def _no_sleep(_seconds: float) -> None:
    return None


@pytest.mark.asyncio
async def test_retry_async_retries_transient() -> None:
    calls = {"count": 0}

    async def flaky() -> str:
        calls["count"] += 1
        if calls["count"] < 2:
            raise TimeoutError("timeout")
        return "ok"

    result = await retry_async(
        flaky,
        policy=RetryPolicy(timeout_ms=100, max_attempts=2, backoff_ms=1),
        sleep=_no_sleep,
    )
    assert result == "ok"
    assert calls["count"] == 2
    assert counters_snapshot()["external_retries_total"] == 1


@pytest.mark.asyncio
async def test_retry_async_does_not_retry_permanent_errors() -> None:
    calls = {"count": 0}

    async def broken() -> str:
        calls["count"] += 1
        raise ValueError("bad request")

    with pytest.raises(ValueError):
        await retry_async(
            broken,
            policy=RetryPolicy(timeout_ms=100, max_attempts=3, backoff_ms=1),
            sleep=_no_sleep,
        )
    assert calls["count"] == 1


@pytest.mark.asyncio
async def test_circuit_breaker_transitions() -> None:
    now = {"t": 0.0}

    def time_source() -> float:
        return now["t"]

    transitions: list[str] = []

    async def on_transition(_name: str, target: str) -> None:
        transitions.append(target)

    breaker = CircuitBreaker(
        "messaging.test",
        redis=None,
        config=CircuitBreakerConfig(failure_threshold=2, open_seconds=10, half_open_trials=1),
        time_source=time_source,
        on_transition=on_transition,
    )
    await breaker.before_call()
    await breaker.record_failure()
    await breaker.record_failure()
    with pytest.raises(IntegrationUnavailableError):
        await breaker.before_call()

    now["t"] = 11.0
    await breaker.before_call()
    # Only one trial call is allowed while half-open.
    with pytest.raises(IntegrationUnavailableError):
        await breaker.before_call()
    await breaker.record_success()
    await breaker.before_call()
    assert transitions == ["open", "half_open", "closed"]


@pytest.mark.asyncio
async def test_half_open_failure_reopens_breaker() -> None:
    now = {"t": 0.0}
    breaker = CircuitBreaker(
        "messaging.reopen",
        redis=None,
        config=CircuitBreakerConfig(failure_threshold=1, open_seconds=5, half_open_trials=1),
        time_source=lambda: now["t"],
    )
    await breaker.record_failure()
    now["t"] = 6.0
    await breaker.before_call()
    await breaker.record_failure()
    with pytest.raises(IntegrationUnavailableError):
        await breaker.before_call()


@pytest.mark.asyncio
async def test_breaker_for_reuses_one_breaker_per_integration() -> None:
    first = await breaker_for("messaging.registry")
    second = await breaker_for("messaging.registry")
    other = await breaker_for("messaging.registry.other")
    assert first is second
    assert other is not first
