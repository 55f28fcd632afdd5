"""
HealthGate Backend — Fixed-Window Rate Limiter & Brute-Force Tracker
======================================================================

What:  Named rate-limit policies evaluated against counters in the
       CounterStore, and a long-window failed-login counter that escalates
       to an IP block.
Why:   Credential stuffing and password-reset abuse are the main threats to
       a patient portal's public endpoints; generic API traffic needs a
       coarse per-IP ceiling.
How:   One atomic increment per check: the first hit opens a window with a
       fixed expiry, later hits only increment. Over the limit → Denied with
       the time left until the window resets.
Who:   Used by the rate-limit pipeline stage and the login route.

Algorithm: Fixed Window Counter
    State per key: Idle → Counting → Exceeded → Idle (window expiry)

    Why fixed window (not sliding):
    - One INCR per request, O(1) memory per key, trivially atomic in Redis
    - Tradeoff: a client can send `limit` requests at the end of one window
      and `limit` more at the start of the next (up to 2× burst at the
      boundary). Accepted for these limits.

Default Policies:
    ┌────────────────┬────────┬─────────┬─────────────┬──────────────────┐
    │ Policy         │ Limit  │ Window  │ Key         │ Skip successful  │
    ├────────────────┼────────┼─────────┼─────────────┼──────────────────┤
    │ api            │ 100    │ 15 min  │ ip          │ no               │
    │ auth           │ 5      │ 15 min  │ ip + email  │ yes              │
    │ password_reset │ 3      │ 1 h     │ ip + email  │ no               │
    │ otp            │ 3      │ 5 min   │ ip          │ no               │
    └────────────────┴────────┴─────────┴─────────────┴──────────────────┘

Privacy:
    Keys are fingerprinted (`<scope>:<sha256>`), so emails never appear in
    Redis key names or in `KEYS`/`SCAN` output.
"""

import hashlib
import logging
import math
from dataclasses import dataclass
from typing import Callable, Dict, Literal, Optional, Union

from pydantic import BaseModel, Field

from healthgate.config import Settings, settings as default_settings
from healthgate.services.counter_store import CounterStore, system_clock_ms
from healthgate.services.input_guard import IpBlocklist

logger = logging.getLogger(__name__)
security_logger = logging.getLogger("healthgate.security")


class RateLimitPolicy(BaseModel):
    """Configuration for one named, independently counted limit."""

    name: str
    limit: int = Field(ge=1)
    window_seconds: int = Field(ge=1)
    key_strategy: Literal["ip", "ip_email"] = "ip"
    skip_successful: bool = False
    message: str = "Too many requests, please try again later."

    model_config = {"frozen": True}

    @property
    def window_ms(self) -> int:
        return self.window_seconds * 1000


def build_policies(config: Optional[Settings] = None) -> Dict[str, RateLimitPolicy]:
    cfg = config or default_settings
    return {
        "api": RateLimitPolicy(
            name="api",
            limit=cfg.rate_limit_api_requests,
            window_seconds=cfg.rate_limit_api_window,
        ),
        "auth": RateLimitPolicy(
            name="auth",
            limit=cfg.rate_limit_auth_requests,
            window_seconds=cfg.rate_limit_auth_window,
            key_strategy="ip_email",
            skip_successful=True,
            message="Too many authentication attempts, please try again later.",
        ),
        "password_reset": RateLimitPolicy(
            name="password_reset",
            limit=cfg.rate_limit_password_reset_requests,
            window_seconds=cfg.rate_limit_password_reset_window,
            key_strategy="ip_email",
            message="Too many password reset attempts, please try again later.",
        ),
        "otp": RateLimitPolicy(
            name="otp",
            limit=cfg.rate_limit_otp_requests,
            window_seconds=cfg.rate_limit_otp_window,
            message="Too many OTP requests, please try again later.",
        ),
    }


@dataclass(frozen=True)
class RateLimitKey:
    scope: str
    ip: str
    user_id: Optional[str] = None
    discriminator: Optional[str] = None

    def fingerprint(self) -> str:
        identity = "|".join(
            [self.ip, self.user_id or "", (self.discriminator or "").strip().lower()]
        )
        return f"{self.scope}:{hashlib.sha256(identity.encode('utf-8')).hexdigest()}"


@dataclass(frozen=True)
class Allowed:
    remaining: int
    reset_ms: int
    limit: int


@dataclass(frozen=True)
class Denied:
    retry_after_ms: int
    limit: int

    @property
    def retry_after_seconds(self) -> int:
        """Whole seconds for the Retry-After header (at least 1)."""
        return max(1, math.ceil(self.retry_after_ms / 1000))


RateLimitDecision = Union[Allowed, Denied]


class FixedWindowRateLimiter:
    """
    Evaluates policies against fixed-window counters.

    Each policy counts independently: the same request may be checked
    against several policies without them sharing a counter, because the
    policy name is the key scope.
    """

    def __init__(self, store: CounterStore, clock: Optional[Callable[[], int]] = None):
        self._store = store
        self._clock = clock or system_clock_ms

    def key_for(self, policy: RateLimitPolicy, ip: str, email: Optional[str] = None) -> RateLimitKey:
        if policy.key_strategy == "ip_email":
            return RateLimitKey(scope=policy.name, ip=ip, discriminator=email or "")
        return RateLimitKey(scope=policy.name, ip=ip)

    async def check(self, key: RateLimitKey, policy: RateLimitPolicy) -> RateLimitDecision:
        counter = await self._store.increment_and_get(key.fingerprint(), policy.window_ms)
        now = self._clock()
        if counter.count > policy.limit:
            logger.debug(
                "Policy %s exceeded for %s (%d/%d)", policy.name, key.ip, counter.count, policy.limit
            )
            return Denied(retry_after_ms=counter.reset_in(now), limit=policy.limit)
        return Allowed(
            remaining=policy.limit - counter.count,
            reset_ms=counter.reset_in(now),
            limit=policy.limit,
        )

    async def release(self, key: RateLimitKey, policy: RateLimitPolicy) -> None:
        """Un-count a successful request for policies that only count failures."""
        if policy.skip_successful:
            await self._store.decrement(key.fingerprint())


class BruteForceTracker:
    """
    Long-window failed-login counter per (IP, email).

    Unlike the `auth` policy, successful logins never reset this counter.
    Crossing the threshold blocks the source IP for a fixed duration.
    """

    def __init__(
        self,
        store: CounterStore,
        blocklist: IpBlocklist,
        config: Optional[Settings] = None,
    ):
        cfg = config or default_settings
        self._store = store
        self._blocklist = blocklist
        self._threshold = cfg.brute_force_threshold
        self._window_ms = cfg.brute_force_window * 1000
        self._block_seconds = cfg.brute_force_block_seconds

    async def track_failed_attempt(self, ip: str, email: str) -> bool:
        """Count one failure. Returns True when this failure caused a block."""
        key = RateLimitKey(scope="bruteforce", ip=ip, discriminator=email)
        counter = await self._store.increment_and_get(key.fingerprint(), self._window_ms)
        if counter.count > self._threshold:
            security_logger.warning(
                "Brute force detected from %s: %d failed logins, blocking for %ds",
                ip,
                counter.count,
                self._block_seconds,
            )
            await self._blocklist.block(ip, self._block_seconds, reason="brute_force")
            return True
        return False
