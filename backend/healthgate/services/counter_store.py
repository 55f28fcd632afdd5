"""
HealthGate Backend — Counter Store
====================================

What:  The only shared mutable state in the security pipeline: rate-limit
       counters, brute-force counters, the IP blocklist, suspicious-event
       logs and issued refresh-token ids.
Why:   Every stage that needs state receives a CounterStore, so the same code
       runs against process memory in development and Redis in production.
How:   A small async interface with two implementations:
       - InMemoryCounterStore: dicts guarded by an asyncio.Lock
       - RedisCounterStore: redis.asyncio, atomic MULTI/EXEC round trips
Who:   Used by the rate limiter, brute-force tracker, activity monitor,
       IP blocklist and token service.
When:  Selected once at startup (REDIS_URL set → Redis, otherwise memory).

Fixed-window semantics:
    increment_and_get() sets the expiry only when the key is created.
    Later increments never extend it, so a window always ends exactly
    `ttl_ms` after its first hit:

        t=0      INCR → 1, expiry set to t+ttl
        t=10s    INCR → 2, expiry unchanged
        t=ttl    key expires → next INCR starts a fresh window at 1

Time is measured in integer milliseconds from an injectable clock so tests
can move time without sleeping.
"""

import asyncio
import functools
import logging
import time
import uuid
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Protocol, Tuple

from redis import asyncio as aioredis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError
from redis.exceptions import TimeoutError as RedisTimeoutError
from tenacity import (
    before_sleep_log,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
    wait_random,
)

from healthgate.config import settings
from healthgate.exceptions import StoreError

logger = logging.getLogger(__name__)

Clock = Callable[[], int]


def system_clock_ms() -> int:
    """Wall-clock time in integer milliseconds."""
    return int(time.time() * 1000)


@dataclass(frozen=True)
class WindowCounter:
    """
    Snapshot of a fixed-window counter right after an increment.

    Attributes:
        count:         Requests counted in the current window (including this one)
        window_start:  Epoch ms when the window opened
        expires_at:    Epoch ms when the window closes and the counter resets
    """

    count: int
    window_start: int
    expires_at: int

    def reset_in(self, now_ms: int) -> int:
        """Milliseconds until the window resets (never negative)."""
        return max(0, self.expires_at - now_ms)


class CounterStore(Protocol):
    """Async key/counter store used by every stateful security component."""

    async def get(self, key: str) -> Optional[str]: ...

    async def increment_and_get(self, key: str, ttl_ms: int) -> WindowCounter: ...

    async def decrement(self, key: str) -> int: ...

    async def set_with_expiry(self, key: str, value: str, ttl_ms: Optional[int]) -> None: ...

    async def delete(self, key: str) -> bool: ...

    async def record_event(self, key: str, timestamp_ms: int, window_ms: int) -> int: ...

    async def ping(self) -> bool: ...

    async def close(self) -> None: ...


# ══════════════════════════════════════════════════════════════════════════
# In-Memory Implementation
# ══════════════════════════════════════════════════════════════════════════


class InMemoryCounterStore:
    """
    Process-local CounterStore.

    Thread Safety:
        Safe for single-process async (uvicorn). Every mutation runs under one
        asyncio.Lock, so increments are atomic with respect to other requests
        on the same event loop. NOT shared across workers: use
        RedisCounterStore for multi-process deployments.

    Memory:
        Expired keys are dropped lazily on access, and a full purge runs every
        `purge_interval` mutations so abandoned keys (one-off IPs) do not
        accumulate.
    """

    def __init__(self, clock: Optional[Clock] = None, purge_interval: int = 1000):
        self._clock = clock or system_clock_ms
        self._purge_interval = purge_interval
        self._lock = asyncio.Lock()
        # key → (value, expires_at | None)
        self._values: Dict[str, Tuple[str, Optional[int]]] = {}
        # key → (sorted event timestamps, expires_at)
        self._events: Dict[str, Tuple[List[int], int]] = {}
        self._mutations = 0

    def _live_value(self, key: str, now: int) -> Optional[Tuple[str, Optional[int]]]:
        entry = self._values.get(key)
        if entry is None:
            return None
        _, expires_at = entry
        if expires_at is not None and expires_at <= now:
            del self._values[key]
            return None
        return entry

    def _after_mutation(self, now: int) -> None:
        self._mutations += 1
        if self._mutations % self._purge_interval == 0:
            self._purge(now)

    def _purge(self, now: int) -> None:
        expired = [
            k for k, (_, exp) in self._values.items() if exp is not None and exp <= now
        ]
        for k in expired:
            del self._values[k]
        stale = [k for k, (_, exp) in self._events.items() if exp <= now]
        for k in stale:
            del self._events[k]
        if expired or stale:
            logger.debug("Purged %d expired counters and %d event logs", len(expired), len(stale))

    async def get(self, key: str) -> Optional[str]:
        async with self._lock:
            entry = self._live_value(key, self._clock())
            return entry[0] if entry else None

    async def increment_and_get(self, key: str, ttl_ms: int) -> WindowCounter:
        async with self._lock:
            now = self._clock()
            entry = self._live_value(key, now)
            if entry is None or entry[1] is None:
                count = int(entry[0]) + 1 if entry else 1
                expires_at = now + ttl_ms
            else:
                count = int(entry[0]) + 1
                expires_at = entry[1]
            self._values[key] = (str(count), expires_at)
            self._after_mutation(now)
            return WindowCounter(count=count, window_start=expires_at - ttl_ms, expires_at=expires_at)

    async def decrement(self, key: str) -> int:
        async with self._lock:
            now = self._clock()
            entry = self._live_value(key, now)
            if entry is None:
                return 0
            count = max(0, int(entry[0]) - 1)
            self._values[key] = (str(count), entry[1])
            return count

    async def set_with_expiry(self, key: str, value: str, ttl_ms: Optional[int]) -> None:
        async with self._lock:
            now = self._clock()
            expires_at = now + ttl_ms if ttl_ms is not None else None
            self._values[key] = (value, expires_at)
            self._after_mutation(now)

    async def delete(self, key: str) -> bool:
        async with self._lock:
            now = self._clock()
            existed = self._live_value(key, now) is not None
            self._values.pop(key, None)
            had_events = self._events.pop(key, None) is not None
            return existed or had_events

    async def record_event(self, key: str, timestamp_ms: int, window_ms: int) -> int:
        async with self._lock:
            cutoff = timestamp_ms - window_ms
            events, _ = self._events.get(key, ([], 0))
            events = [ts for ts in events if ts > cutoff]
            events.append(timestamp_ms)
            self._events[key] = (events, timestamp_ms + window_ms)
            self._after_mutation(self._clock())
            return len(events)

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        async with self._lock:
            self._values.clear()
            self._events.clear()


# ══════════════════════════════════════════════════════════════════════════
# Redis Implementation
# ══════════════════════════════════════════════════════════════════════════

# Conditional decrement: never creates a key, never goes below zero,
# DECR keeps the existing TTL.
_DECREMENT_SCRIPT = """
local v = redis.call('GET', KEYS[1])
if not v then return 0 end
if tonumber(v) <= 0 then return 0 end
return redis.call('DECR', KEYS[1])
"""

# What: Retry transient Redis failures (dropped connection, socket timeout)
# Only for idempotent commands: a connection dropped after EXEC may already
# have applied INCR or ZADD, and replaying it would count the request twice.
# Why jitter: replicas reconnecting after a Redis failover should not stampede
_store_retry = retry(
    retry=retry_if_exception_type((RedisConnectionError, RedisTimeoutError)),
    stop=stop_after_attempt(settings.store_retry_attempts),
    wait=wait_exponential(multiplier=0.05, max=0.5) + wait_random(0, 0.05),
    before_sleep=before_sleep_log(logger, logging.WARNING),
    reraise=True,
)


def _translate_errors(func):
    """Re-raise Redis failures (after retries) as StoreError."""

    @functools.wraps(func)
    async def wrapper(self, *args, **kwargs):
        try:
            return await func(self, *args, **kwargs)
        except RedisError as e:
            raise StoreError(
                context={"operation": func.__name__, "error_type": type(e).__name__},
            ) from e

    return wrapper


class RedisCounterStore:
    """
    CounterStore backed by Redis, shared across workers and replicas.

    Atomicity:
        increment_and_get: INCR + PEXPIRE NX + PTTL inside MULTI/EXEC
        record_event:      ZADD + ZREMRANGEBYSCORE + ZCARD + PEXPIRE inside MULTI/EXEC
        decrement:         Lua script (check and decrement in one step)

    Retries:
        get, set_with_expiry and delete are retried on connection errors.
        increment_and_get, decrement and record_event are not; a failure
        surfaces as StoreError and the pipeline fails open. A retried delete
        whose first attempt was applied reports False, so a refresh token
        lost that way is rejected rather than accepted twice.

    All keys are namespaced with `prefix` so the store can share a Redis
    database with other applications.
    """

    def __init__(
        self,
        client: "aioredis.Redis",
        prefix: str = "hg:",
        clock: Optional[Clock] = None,
    ):
        self._client = client
        self._prefix = prefix
        self._clock = clock or system_clock_ms
        self._decrement_script = client.register_script(_DECREMENT_SCRIPT)

    @classmethod
    def from_url(cls, url: str, prefix: str = "hg:") -> "RedisCounterStore":
        client = aioredis.from_url(
            url,
            decode_responses=True,
            socket_timeout=2.0,
            socket_connect_timeout=2.0,
        )
        return cls(client, prefix=prefix)

    def _k(self, key: str) -> str:
        return f"{self._prefix}{key}"

    @_translate_errors
    @_store_retry
    async def get(self, key: str) -> Optional[str]:
        return await self._client.get(self._k(key))

    @_translate_errors
    async def increment_and_get(self, key: str, ttl_ms: int) -> WindowCounter:
        k = self._k(key)
        async with self._client.pipeline(transaction=True) as pipe:
            pipe.incr(k)
            pipe.pexpire(k, ttl_ms, nx=True)
            pipe.pttl(k)
            count, _, pttl = await pipe.execute()
        now = self._clock()
        # PTTL is -1 only if something else stripped the expiry; treat as a fresh window
        remaining = pttl if pttl and pttl > 0 else ttl_ms
        expires_at = now + remaining
        return WindowCounter(count=int(count), window_start=expires_at - ttl_ms, expires_at=expires_at)

    @_translate_errors
    async def decrement(self, key: str) -> int:
        result = await self._decrement_script(keys=[self._k(key)])
        return int(result)

    @_translate_errors
    @_store_retry
    async def set_with_expiry(self, key: str, value: str, ttl_ms: Optional[int]) -> None:
        if ttl_ms is not None:
            await self._client.set(self._k(key), value, px=ttl_ms)
        else:
            await self._client.set(self._k(key), value)

    @_translate_errors
    @_store_retry
    async def delete(self, key: str) -> bool:
        return bool(await self._client.delete(self._k(key)))

    @_translate_errors
    async def record_event(self, key: str, timestamp_ms: int, window_ms: int) -> int:
        k = self._k(key)
        # Unique member so two events in the same millisecond are both counted
        member = f"{timestamp_ms}:{uuid.uuid4().hex[:8]}"
        async with self._client.pipeline(transaction=True) as pipe:
            pipe.zadd(k, {member: timestamp_ms})
            pipe.zremrangebyscore(k, "-inf", timestamp_ms - window_ms)
            pipe.zcard(k)
            pipe.pexpire(k, window_ms)
            _, _, count, _ = await pipe.execute()
        return int(count)

    async def ping(self) -> bool:
        try:
            return bool(await self._client.ping())
        except RedisError as e:
            logger.warning("Redis ping failed: %s", e)
            return False

    async def close(self) -> None:
        await self._client.aclose()


def build_counter_store(redis_url: Optional[str] = None, prefix: str = "hg:") -> CounterStore:
    """
    Startup selection: Redis when a URL is configured, otherwise process memory.
    """
    if redis_url:
        logger.info("Counter store: Redis (%s)", redis_url.split("@")[-1])
        return RedisCounterStore.from_url(redis_url, prefix=prefix)
    logger.warning("Counter store: in-memory (limits are per process, not shared across replicas)")
    return InMemoryCounterStore()
