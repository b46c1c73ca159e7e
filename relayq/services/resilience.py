from __future__ import annotations

import asyncio
from dataclasses import dataclass, replace
import logging
import random
import time
from typing import Any, Awaitable, Callable

from redis.asyncio import Redis
from redis.exceptions import RedisError

from relayq.core.config import get_settings
from relayq.core.errors import IntegrationUnavailableError
from relayq.services.telemetry import increment_counter, set_gauge


logger = logging.getLogger(__name__)

CLOSED = "closed"
OPEN = "open"
HALF_OPEN = "half_open"

_STATE_GAUGE = {CLOSED: 0.0, HALF_OPEN: 0.5, OPEN: 1.0}

_redis_client: Redis | None = None
_redis_loop: asyncio.AbstractEventLoop | None = None
_breakers: dict[str, CircuitBreaker] = {}


async def get_resilience_redis() -> Redis | None:
    """Redis client bound to the running loop, or None when none is configured."""
    global _redis_client, _redis_loop
    settings = get_settings()
    if not settings.redis_url:
        return None
    loop = asyncio.get_running_loop()
    if _redis_client is None or _redis_loop is not loop:
        try:
            _redis_client = Redis.from_url(settings.redis_url, encoding="utf-8", decode_responses=True)
        except (RedisError, ValueError) as exc:
            logger.warning("resilience_redis_unavailable url=%s", settings.redis_url, exc_info=exc)
            return None
        _redis_loop = loop
    return _redis_client


async def breaker_for(integration: str) -> CircuitBreaker:
    """One breaker per provider integration for the life of the process.

    Provider objects are rebuilt on every processor pass; keeping the breaker
    here lets failures accumulate across passes even without Redis.
    """
    redis = await get_resilience_redis()
    breaker = _breakers.get(integration)
    if breaker is None:
        breaker = CircuitBreaker(integration, redis=redis)
        _breakers[integration] = breaker
    else:
        # The client is rebound when the event loop changes.
        breaker._redis = redis
    return breaker


@dataclass(frozen=True)
class RetryPolicy:
    timeout_ms: int
    max_attempts: int
    backoff_ms: int

    def delay_for(self, attempt: int) -> float:
        # Exponential from backoff_ms, jittered +/-50%.
        base = (self.backoff_ms / 1000.0) * (2 ** (attempt - 1))
        return base * random.uniform(0.5, 1.5)


def default_retry_policy() -> RetryPolicy:
    settings = get_settings()
    return RetryPolicy(
        timeout_ms=settings.ext_call_timeout_ms,
        max_attempts=settings.ext_retry_max_attempts,
        backoff_ms=settings.ext_retry_backoff_ms,
    )


def is_transient(exc: Exception) -> bool:
    if isinstance(exc, (TimeoutError, OSError)):
        return True
    status = getattr(exc, "status_code", None)
    return isinstance(status, int) and status >= 500


async def retry_async(
    func: Callable[[], Awaitable[Any]],
    *,
    policy: RetryPolicy | None = None,
    retryable: Callable[[Exception], bool] | None = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> Any:
    """Run a single provider request with a timeout, retrying transient errors inline.

    This covers one gateway call only. Rescheduling a failed queue entry is
    the retry cycle's job and happens minutes later, not here.
    """
    policy = policy or default_retry_policy()
    should_retry = retryable or is_transient
    attempts = max(policy.max_attempts, 1)
    for attempt in range(1, attempts + 1):
        try:
            return await asyncio.wait_for(func(), timeout=policy.timeout_ms / 1000.0)
        except Exception as exc:  # noqa: BLE001 - re-raised unless transient
            if attempt == attempts or not should_retry(exc):
                raise
            increment_counter("external_retries_total")
            await sleep(policy.delay_for(attempt))


@dataclass(frozen=True)
class CircuitBreakerConfig:
    failure_threshold: int
    open_seconds: int
    half_open_trials: int

    @classmethod
    def from_settings(cls) -> CircuitBreakerConfig:
        settings = get_settings()
        return cls(
            failure_threshold=settings.cb_failure_threshold,
            open_seconds=settings.cb_open_seconds,
            half_open_trials=settings.cb_half_open_trials,
        )


@dataclass(frozen=True)
class BreakerSnapshot:
    state: str = CLOSED
    failures: int = 0
    opened_at: float | None = None
    trials: int = 0

    def to_redis(self) -> dict[str, str]:
        return {
            "state": self.state,
            "failures": str(self.failures),
            "opened_at": "" if self.opened_at is None else repr(self.opened_at),
            "trials": str(self.trials),
        }

    @classmethod
    def from_redis(cls, raw: dict[str, str]) -> BreakerSnapshot:
        opened_at = raw.get("opened_at") or None
        return cls(
            state=raw.get("state", CLOSED),
            failures=int(raw.get("failures", 0)),
            opened_at=float(opened_at) if opened_at else None,
            trials=int(raw.get("trials", 0)),
        )


class CircuitBreaker:
    """Guards one provider integration (for example ``messaging.twilio``).

    When a sender gateway keeps failing, the breaker opens and sends fail fast
    with IntegrationUnavailableError; the processor releases its claims so the
    entries are picked up again once the gateway recovers. With a Redis client
    every worker shares the snapshot; otherwise it is held in memory.
    """

    def __init__(
        self,
        name: str,
        *,
        redis: Redis | None = None,
        config: CircuitBreakerConfig | None = None,
        time_source: Callable[[], float] | None = None,
        on_transition: Callable[[str, str], Awaitable[None]] | None = None,
    ) -> None:
        self.name = name
        self._redis = redis
        self._config = config or CircuitBreakerConfig.from_settings()
        # Wall clock: opened_at is compared across workers when shared in Redis.
        self._clock = time_source or time.time
        self._on_transition = on_transition
        self._snapshot = BreakerSnapshot()

    @property
    def _redis_key(self) -> str:
        return f"{get_settings().cb_redis_prefix}:{self.name}"

    async def _read(self) -> BreakerSnapshot:
        if self._redis is not None:
            try:
                raw = await self._redis.hgetall(self._redis_key)
            except RedisError as exc:
                logger.warning("circuit_breaker_redis_unavailable integration=%s", self.name, exc_info=exc)
            else:
                if raw:
                    self._snapshot = BreakerSnapshot.from_redis(raw)
        return self._snapshot

    async def _write(self, snapshot: BreakerSnapshot) -> None:
        self._snapshot = snapshot
        if self._redis is None:
            return
        try:
            await self._redis.hset(self._redis_key, mapping=snapshot.to_redis())
            await self._redis.expire(self._redis_key, max(self._config.open_seconds * 4, 60))
        except RedisError as exc:
            logger.warning("circuit_breaker_redis_unavailable integration=%s", self.name, exc_info=exc)

    async def _move_to(self, current: BreakerSnapshot, target: str) -> BreakerSnapshot:
        if current.state != target:
            logger.warning(
                "circuit_breaker_transition integration=%s from=%s to=%s", self.name, current.state, target
            )
            increment_counter(f"circuit_breaker_transition_total.{self.name}.{target}")
            set_gauge(f"circuit_breaker_state.{self.name}", _STATE_GAUGE[target])
            if self._on_transition is not None:
                await self._on_transition(self.name, target)
        return BreakerSnapshot(state=target, opened_at=self._clock() if target == OPEN else None)

    def _unavailable(self) -> IntegrationUnavailableError:
        return IntegrationUnavailableError(f"{self.name} is temporarily unavailable")

    async def before_call(self) -> BreakerSnapshot:
        """Admit a send or raise IntegrationUnavailableError."""
        snapshot = await self._read()
        if snapshot.state == OPEN:
            cooled = snapshot.opened_at is not None and self._clock() - snapshot.opened_at >= self._config.open_seconds
            if not cooled:
                raise self._unavailable()
            snapshot = await self._move_to(snapshot, HALF_OPEN)
        if snapshot.state == HALF_OPEN:
            if snapshot.trials >= self._config.half_open_trials:
                raise self._unavailable()
            snapshot = replace(snapshot, trials=snapshot.trials + 1)
            await self._write(snapshot)
        return snapshot

    async def record_success(self) -> None:
        snapshot = await self._read()
        await self._write(await self._move_to(snapshot, CLOSED))

    async def record_failure(self) -> None:
        snapshot = await self._read()
        if snapshot.state == HALF_OPEN or snapshot.failures + 1 >= self._config.failure_threshold:
            await self._write(await self._move_to(snapshot, OPEN))
            return
        await self._write(replace(snapshot, failures=snapshot.failures + 1))
