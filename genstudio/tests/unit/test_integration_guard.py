from __future__ import annotations

import pytest

from genstudio.core.errors import IntegrationUnavailableError
from genstudio.services.resilience import (
    BreakerSnapshot,
    CircuitBreaker,
    RetryPolicy,
    breaker_states,
    guarded_call,
    retry_async,
)
from genstudio.services.telemetry import external_call_summary


@pytest.mark.asyncio
async def test_retry_async_retries_transient_only() -> None:
    calls = {"flaky": 0, "fatal": 0}

    async def flaky() -> str:
        calls["flaky"] += 1
        if calls["flaky"] < 2:
            raise TimeoutError("timeout")
        return "ok"

    async def fatal() -> str:
        calls["fatal"] += 1
        raise ValueError("bad input")

    policy = RetryPolicy(timeout_ms=100, max_attempts=3, backoff_ms=1)
    assert await retry_async(flaky, policy=policy) == "ok"
    with pytest.raises(ValueError):
        await retry_async(fatal, policy=policy)
    assert calls == {"flaky": 2, "fatal": 1}


@pytest.mark.asyncio
async def test_breaker_opens_then_probes_after_window() -> None:
    now = {"t": 1000.0}
    breaker = CircuitBreaker(
        name="test.integration",
        failure_threshold=2,
        open_seconds=10,
        half_open_trials=1,
        clock=lambda: now["t"],
    )
    await breaker.before_call()
    await breaker.record_failure()
    await breaker.record_failure()
    assert breaker.local_state == "open"
    with pytest.raises(IntegrationUnavailableError):
        await breaker.before_call()

    now["t"] += 11
    await breaker.before_call()
    assert breaker.local_state == "half_open"
    with pytest.raises(IntegrationUnavailableError):
        await breaker.before_call()
    await breaker.record_success()
    assert breaker.local_state == "closed"
    await breaker.before_call()


@pytest.mark.asyncio
async def test_failed_probe_reopens_breaker() -> None:
    now = {"t": 0.0}
    breaker = CircuitBreaker(
        name="test.reopen",
        failure_threshold=1,
        open_seconds=5,
        half_open_trials=2,
        clock=lambda: now["t"],
    )
    await breaker.record_failure()
    now["t"] = 6.0
    await breaker.before_call()
    await breaker.record_failure()
    assert breaker.local_state == "open"
    with pytest.raises(IntegrationUnavailableError):
        await breaker.before_call()


def test_snapshot_mapping_preserves_fields() -> None:
    snapshot = BreakerSnapshot(state="open", failures=0, opened_at=1712.5, trials=0)
    assert BreakerSnapshot.from_mapping(snapshot.to_mapping()) == snapshot
    assert BreakerSnapshot.from_mapping({}) == BreakerSnapshot()


@pytest.mark.asyncio
async def test_guarded_call_wraps_listed_failures() -> None:
    class UpstreamDown(Exception):
        pass

    async def down() -> str:
        raise UpstreamDown("503")

    async def misconfigured() -> str:
        raise KeyError("token")

    async def healthy() -> str:
        return "ok"

    with pytest.raises(IntegrationUnavailableError) as excinfo:
        await guarded_call("test.guarded", down, failures=(UpstreamDown,))
    assert isinstance(excinfo.value.__cause__, UpstreamDown)
    with pytest.raises(KeyError):
        await guarded_call("test.guarded", misconfigured, failures=(UpstreamDown,))
    assert await guarded_call("test.guarded", healthy, failures=(UpstreamDown,)) == "ok"

    summary = external_call_summary()["test.guarded"]
    assert summary["calls"] == 2
    assert summary["failures"] == 1
    assert breaker_states() == {"test.guarded": "closed"}
