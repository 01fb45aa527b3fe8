from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
import logging
import random
import time
from typing import Any, Awaitable, Callable, Mapping, TypeVar

from redis.asyncio import Redis
from redis.exceptions import RedisError

from genstudio.core.config import get_settings
from genstudio.core.errors import IntegrationUnavailableError
from genstudio.services.telemetry import increment_counter, record_external_call, set_gauge


logger = logging.getLogger(__name__)

T = TypeVar("T")

CLOSED = "closed"
OPEN = "open"
HALF_OPEN = "half_open"

_STATE_GAUGE = {CLOSED: 0.0, HALF_OPEN: 0.5, OPEN: 1.0}

_shared_redis: tuple[asyncio.AbstractEventLoop, Redis] | None = None


def _redis_for_loop() -> Redis | None:
    # Redis clients are bound to the loop that created them; tests run one loop per test.
    global _shared_redis
    settings = get_settings()
    if not settings.cb_shared_state:
        return None
    url = settings.redis_url
    loop = asyncio.get_running_loop()
    if _shared_redis is not None and _shared_redis[0] is loop:
        return _shared_redis[1]
    try:
        client = Redis.from_url(url, encoding="utf-8", decode_responses=True)
    except (ValueError, RedisError) as exc:
        logger.warning("breaker_redis_unavailable url=%s", url, exc_info=exc)
        return None
    _shared_redis = (loop, client)
    return client


@dataclass(frozen=True)
class RetryPolicy:
    timeout_ms: int
    max_attempts: int
    backoff_ms: int

    @classmethod
    def from_settings(cls) -> RetryPolicy:
        settings = get_settings()
        return cls(
            timeout_ms=settings.ext_call_timeout_ms,
            max_attempts=settings.ext_retry_max_attempts,
            backoff_ms=settings.ext_retry_backoff_ms,
        )

    def delay_s(self, attempt: int) -> float:
        # Exponential backoff with +/-50% jitter.
        return (self.backoff_ms / 1000.0) * (2 ** (attempt - 1)) * random.uniform(0.5, 1.5)


def _transient(exc: Exception) -> bool:
    if isinstance(exc, (TimeoutError, OSError)):
        return True
    status = getattr(exc, "status_code", None)
    return isinstance(status, int) and status >= 500


async def retry_async(
    func: Callable[[], Awaitable[T]],
    *,
    policy: RetryPolicy | None = None,
    retryable: Callable[[Exception], bool] | None = None,
) -> T:
    """Run ``func`` with a per-attempt timeout, retrying transient failures only."""
    policy = policy or RetryPolicy.from_settings()
    retryable = retryable or _transient
    attempts = max(policy.max_attempts, 1)
    for attempt in range(1, attempts + 1):
        try:
            return await asyncio.wait_for(func(), timeout=policy.timeout_ms / 1000.0)
        except Exception as exc:  # noqa: BLE001 - non-retryable errors are re-raised unchanged
            if attempt == attempts or not retryable(exc):
                raise
            increment_counter("external_retries_total")
            await asyncio.sleep(policy.delay_s(attempt))
    raise AssertionError("unreachable")


@dataclass
class BreakerSnapshot:
    state: str = CLOSED
    failures: int = 0
    # Wall-clock seconds so instances sharing redis agree on the open window.
    opened_at: float | None = None
    trials: int = 0

    def to_mapping(self) -> dict[str, str]:
        return {
            "state": self.state,
            "failures": str(self.failures),
            "opened_at": "" if self.opened_at is None else repr(self.opened_at),
            "trials": str(self.trials),
        }

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any]) -> BreakerSnapshot:
        opened_at = raw.get("opened_at")
        return cls(
            state=str(raw.get("state") or CLOSED),
            failures=int(raw.get("failures") or 0),
            opened_at=float(opened_at) if opened_at else None,
            trials=int(raw.get("trials") or 0),
        )


@dataclass
class CircuitBreaker:
    """Per-integration breaker; state lives in redis when reachable, else in-process."""

    name: str
    failure_threshold: int
    open_seconds: int
    half_open_trials: int
    redis: Redis | None = None
    clock: Callable[[], float] = time.time
    _local: BreakerSnapshot = field(default_factory=BreakerSnapshot)

    @classmethod
    def from_settings(cls, name: str, *, redis: Redis | None = None) -> CircuitBreaker:
        settings = get_settings()
        return cls(
            name=name,
            failure_threshold=settings.cb_failure_threshold,
            open_seconds=settings.cb_open_seconds,
            half_open_trials=settings.cb_half_open_trials,
            redis=redis,
        )

    @property
    def key(self) -> str:
        return f"{get_settings().cb_redis_prefix}:{self.name}"

    @property
    def local_state(self) -> str:
        return self._local.state

    async def _read(self) -> BreakerSnapshot:
        if self.redis is not None:
            try:
                raw = await self.redis.hgetall(self.key)
            except (RedisError, OSError) as exc:
                logger.warning("breaker_read_failed name=%s", self.name, exc_info=exc)
            else:
                if raw:
                    return BreakerSnapshot.from_mapping(raw)
        return BreakerSnapshot(**vars(self._local))

    async def _write(self, snapshot: BreakerSnapshot) -> None:
        self._local = snapshot
        if self.redis is None:
            return
        try:
            await self.redis.hset(self.key, mapping=snapshot.to_mapping())
            await self.redis.expire(self.key, max(self.open_seconds * 4, 60))
        except (RedisError, OSError) as exc:
            logger.warning("breaker_write_failed name=%s", self.name, exc_info=exc)

    def _enter(self, current: BreakerSnapshot, target: str) -> BreakerSnapshot:
        if current.state != target:
            logger.warning("breaker_transition name=%s from=%s to=%s", self.name, current.state, target)
            increment_counter(f"breaker_transitions_total.{self.name}.{target}")
            set_gauge(f"breaker_state.{self.name}", _STATE_GAUGE[target])
        return BreakerSnapshot(state=target, opened_at=self.clock() if target == OPEN else None)

    async def before_call(self) -> None:
        snapshot = await self._read()
        if snapshot.state == OPEN:
            elapsed = self.clock() - (snapshot.opened_at or 0.0)
            if elapsed < self.open_seconds:
                raise IntegrationUnavailableError(f"{self.name} is temporarily unavailable")
            snapshot = self._enter(snapshot, HALF_OPEN)
        if snapshot.state == HALF_OPEN:
            # Only a bounded number of probes may run until one succeeds.
            if snapshot.trials >= self.half_open_trials:
                raise IntegrationUnavailableError(f"{self.name} is temporarily unavailable")
            snapshot.trials += 1
            await self._write(snapshot)

    async def record_success(self) -> None:
        snapshot = await self._read()
        if snapshot.state == CLOSED and snapshot.failures == 0:
            return
        await self._write(self._enter(snapshot, CLOSED))

    async def record_failure(self) -> None:
        snapshot = await self._read()
        if snapshot.state == HALF_OPEN or snapshot.failures + 1 >= self.failure_threshold:
            await self._write(self._enter(snapshot, OPEN))
            return
        snapshot.failures += 1
        await self._write(snapshot)


_breakers: dict[str, CircuitBreaker] = {}


def get_circuit_breaker(name: str) -> CircuitBreaker:
    breaker = _breakers.get(name)
    if breaker is None:
        breaker = CircuitBreaker.from_settings(name, redis=_redis_for_loop())
        _breakers[name] = breaker
    return breaker


def breaker_states() -> dict[str, str]:
    # Process-local view; redis may hold a newer state written by another instance.
    return {name: breaker.local_state for name, breaker in _breakers.items()}


def reset_circuit_breakers() -> None:
    global _shared_redis
    _breakers.clear()
    _shared_redis = None


async def guarded_call(
    integration: str,
    func: Callable[[], Awaitable[T]],
    *,
    failures: tuple[type[BaseException], ...],
    retryable: Callable[[Exception], bool] | None = None,
    policy: RetryPolicy | None = None,
) -> T:
    """Call an external integration behind its breaker with retries and latency telemetry.

    Exceptions listed in ``failures`` (after retries) and an open breaker both
    surface as ``IntegrationUnavailableError``; callers translate that into their
    own domain error. Anything else propagates untouched.
    """
    breaker = get_circuit_breaker(integration)
    await breaker.before_call()
    start = time.monotonic()
    try:
        result = await retry_async(func, policy=policy, retryable=retryable)
    except (asyncio.TimeoutError, *failures) as exc:
        await breaker.record_failure()
        record_external_call(
            integration=integration,
            latency_ms=(time.monotonic() - start) * 1000.0,
            success=False,
        )
        logger.warning("integration_call_failed integration=%s", integration, exc_info=exc)
        raise IntegrationUnavailableError(f"{integration} call failed") from exc
    await breaker.record_success()
    record_external_call(
        integration=integration,
        latency_ms=(time.monotonic() - start) * 1000.0,
        success=True,
    )
    return result
