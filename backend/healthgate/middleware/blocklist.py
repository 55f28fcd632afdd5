"""
HealthGate Backend — Blocked-IP Stage
=======================================

What:  Rejects requests from IPs on the blocklist with 403 IP_BLOCKED.
Why:   Runs before every other policy so a blocked client costs one store
       lookup and nothing else: no rate-limit increments, no token
       verification, no payload scan.
"""

import logging
from typing import Optional

from starlette.responses import Response

from healthgate.exceptions import IpBlockedError
from healthgate.middleware.context import RequestContext
from healthgate.schemas.envelope import error_response
from healthgate.services.audit_service import AuditAction
from healthgate.services.input_guard import IpBlocklist

security_logger = logging.getLogger("healthgate.security")


class BlocklistStage:
    name = "blocklist"

    def __init__(self, blocklist: IpBlocklist):
        self._blocklist = blocklist

    async def __call__(self, ctx: RequestContext) -> Optional[Response]:
        if not await self._blocklist.is_blocked(ctx.ip):
            return None
        security_logger.warning("Rejected request from blocked IP %s: %s %s", ctx.ip, ctx.method, ctx.path)
        ctx.audit_action = AuditAction.IP_BLOCKED.value
        ctx.audit_details["code"] = IpBlockedError.code
        return error_response(IpBlockedError())
