"""
HealthGate Backend — Rate-Limit Stage
=======================================

What:  Applies the route's named rate-limit policy (api, auth,
       password_reset, otp) before any credential or payload work.
How:   One atomic increment in the CounterStore per request. Over the
       limit → 429 RATE_LIMIT_EXCEEDED with `retryAfter` (seconds),
       `retryAfterMs` and a Retry-After header.

Response headers on every limited route:
    X-RateLimit-Limit:      Policy limit
    X-RateLimit-Remaining:  Requests left in the current window
    X-RateLimit-Reset:      Seconds until the window resets

Excluded routes:
    Rules with rate_limit=None (health checks, API docs) skip this stage.

Skip-successful policies (auth):
    The request is counted here like any other; SecurityPipeline.finalize()
    releases the count when the response status is below 400, so only
    failed attempts consume the budget.
"""

import logging
import math
from typing import Dict, Optional

from starlette.responses import Response

from healthgate.exceptions import RateLimitExceededError
from healthgate.middleware.context import RequestContext
from healthgate.schemas.envelope import error_response
from healthgate.services.audit_service import AuditAction
from healthgate.services.rate_limiter import Denied, FixedWindowRateLimiter, RateLimitPolicy

logger = logging.getLogger(__name__)


class RateLimitStage:
    name = "rate_limit"

    def __init__(self, limiter: FixedWindowRateLimiter, policies: Dict[str, RateLimitPolicy]):
        self._limiter = limiter
        self._policies = policies

    async def __call__(self, ctx: RequestContext) -> Optional[Response]:
        if ctx.rule.rate_limit is None:
            return None
        policy = self._policies[ctx.rule.rate_limit]
        key = self._limiter.key_for(policy, ctx.ip, ctx.email_hint)
        decision = await self._limiter.check(key, policy)
        ctx.rate_limit_key = key
        ctx.rate_limit_policy = policy
        ctx.rate_limit_decision = decision

        if isinstance(decision, Denied):
            logger.warning(
                "Rate limit exceeded: policy=%s ip=%s path=%s retry_after=%dms",
                policy.name,
                ctx.ip,
                ctx.path,
                decision.retry_after_ms,
            )
            ctx.audit_action = AuditAction.RATE_LIMIT_EXCEEDED.value
            ctx.audit_details.update({"code": RateLimitExceededError.code, "policy": policy.name})
            exc = RateLimitExceededError(
                retry_after=decision.retry_after_seconds,
                retry_after_ms=decision.retry_after_ms,
                message=policy.message,
            )
            return error_response(
                exc,
                headers={
                    "X-RateLimit-Limit": str(policy.limit),
                    "X-RateLimit-Remaining": "0",
                    "X-RateLimit-Reset": str(decision.retry_after_seconds),
                },
            )

        ctx.response_headers.update(
            {
                "X-RateLimit-Limit": str(policy.limit),
                "X-RateLimit-Remaining": str(decision.remaining),
                "X-RateLimit-Reset": str(max(0, math.ceil(decision.reset_ms / 1000))),
            }
        )
        return None
