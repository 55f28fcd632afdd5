"""
HealthGate Backend — Credential Resolution Stage
==================================================

What:  Turns the `Authorization: Bearer <token>` header into a Principal.
Why:   Downstream code (authorization stage, handlers) only ever sees a
       Principal built from a verified, unexpired token whose subject still
       exists.

Credential mode (derived from the route's gates):
    none      Public routes. The header is never read.
    optional  Invalid or missing token → continue anonymously.
    required  Invalid token → 401 AUTH_FAILED here. Missing token →
              continue without a principal; the authorization stage then
              answers 401 AUTH_REQUIRED.

Information leakage:
    Expired, malformed, forged and orphaned tokens all produce the same
    401 AUTH_FAILED body. The specific kind is logged and audited only.
"""

import logging
from typing import Mapping, Optional

from starlette.responses import Response

from healthgate.exceptions import AuthenticationError
from healthgate.middleware.context import RequestContext
from healthgate.schemas.envelope import error_response
from healthgate.services.audit_service import AuditAction
from healthgate.services.token_service import TokenService
from healthgate.services.user_directory import UserDirectory

logger = logging.getLogger(__name__)


def extract_bearer(headers: Mapping[str, str]) -> Optional[str]:
    value = headers.get("authorization", "")
    scheme, _, token = value.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


class AuthenticationStage:
    name = "authentication"

    def __init__(self, tokens: TokenService, directory: UserDirectory):
        self._tokens = tokens
        self._directory = directory

    async def __call__(self, ctx: RequestContext) -> Optional[Response]:
        mode = ctx.rule.credential_mode
        if mode == "none":
            return None

        token = extract_bearer(ctx.headers)
        if token is None:
            return None

        try:
            principal = await self._tokens.resolve(token, self._directory)
        except AuthenticationError as e:
            logger.warning(
                "Token rejected (%s) for %s %s from %s",
                e.reason,
                ctx.method,
                ctx.path,
                ctx.ip,
            )
            ctx.audit_details["auth_failure"] = e.reason
            if mode == "optional":
                return None
            ctx.audit_action = AuditAction.ACCESS_DENIED.value
            ctx.audit_details["code"] = AuthenticationError.code
            return error_response(AuthenticationError())

        ctx.principal = principal
        ctx.state["principal"] = principal
        return None
