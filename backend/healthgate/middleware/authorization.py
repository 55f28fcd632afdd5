"""
HealthGate Backend — Authorization Stage
==========================================

What:  Runs the policy evaluator over the route's gates and maps a Deny to
       the matching HTTP error.

Deny mapping:
    unauthenticated → 401 AUTH_REQUIRED
    forbidden       → 403 INSUFFICIENT_PERMISSIONS
    not_verified    → 403 EMAIL_NOT_VERIFIED

Owner resolution:
    The rule's owner_lookup coroutine wins; otherwise the owner is the value
    of the rule's owner_param path parameter. Lookups only run for
    authenticated requests.
"""

import logging
from typing import Optional

from starlette.responses import Response

from healthgate.exceptions import AuthRequiredError, ForbiddenError, HealthGateError, NotVerifiedError
from healthgate.middleware.context import RequestContext
from healthgate.schemas.envelope import error_response
from healthgate.services.audit_service import AuditAction
from healthgate.services.authorization import DenyReason, evaluate

logger = logging.getLogger(__name__)

_DENIALS = {
    DenyReason.UNAUTHENTICATED: AuthRequiredError,
    DenyReason.FORBIDDEN: ForbiddenError,
    DenyReason.NOT_VERIFIED: NotVerifiedError,
}


class AuthorizationStage:
    name = "authorization"

    async def _owner_of(self, ctx: RequestContext) -> Optional[str]:
        if ctx.principal is None:
            return None
        if ctx.rule.owner_lookup is not None:
            return await ctx.rule.owner_lookup(ctx)
        if ctx.rule.owner_param is not None:
            value = ctx.path_params.get(ctx.rule.owner_param)
            return str(value) if value is not None else None
        return None

    async def __call__(self, ctx: RequestContext) -> Optional[Response]:
        owner_id = await self._owner_of(ctx)
        decision = evaluate(ctx.principal, ctx.rule.gates, owner_id)
        if decision.allowed:
            return None

        exc: HealthGateError = _DENIALS[decision.reason]()
        logger.info(
            "Access denied (%s): %s %s principal=%s role=%s",
            decision.reason.value,
            ctx.method,
            ctx.path,
            ctx.principal.subject_id if ctx.principal else "-",
            ctx.principal.role.value if ctx.principal else "-",
        )
        ctx.audit_action = AuditAction.ACCESS_DENIED.value
        ctx.audit_details.update({"code": exc.code, "reason": decision.reason.value})
        return error_response(exc)
