"""
HealthGate Backend — Security Administration Routes
=====================================================

What:  Manual IP blocklist management (admin only) and the browser's
       Content-Security-Policy violation report endpoint (public).
Why:   Automatic blocks come from the suspicious-activity monitor and the
       brute-force tracker; these endpoints let an admin add or lift a block
       during an incident without touching Redis by hand.

Endpoints:
    POST   /api/v1/security/blocked-ips         {ip, seconds?, reason?} → 201
    DELETE /api/v1/security/blocked-ips/{ip}                            → 200 / 404
    POST   /api/v1/security/csp-violation       browser CSP report      → 204
"""

import json
import logging
from typing import Any, Dict

from fastapi import APIRouter, Depends, Request, Response, status

from healthgate.exceptions import NotFoundError, ValidationError
from healthgate.routes.deps import audit, client_ip, get_principal
from healthgate.schemas.auth import BlockIpRequest, BlocklistResponse
from healthgate.schemas.envelope import build_envelope
from healthgate.services.token_service import Principal

logger = logging.getLogger("healthgate.security")

router = APIRouter(prefix="/api/v1/security", tags=["Security"])

# Report fields kept in the audit record; values are truncated
_CSP_FIELDS = ("document-uri", "violated-directive", "effective-directive", "blocked-uri")
_CSP_VALUE_LENGTH = 200


@router.post("/blocked-ips", status_code=status.HTTP_201_CREATED, summary="Block an IP address")
async def block_ip(
    payload: BlockIpRequest,
    request: Request,
    principal: Principal = Depends(get_principal),
):
    if payload.ip == client_ip(request):
        raise ValidationError("Refusing to block the address this request came from", field="ip")

    await request.app.state.blocklist.block(payload.ip, payload.seconds, reason=payload.reason)
    audit(request, resource_id=payload.ip, details={"seconds": payload.seconds, "reason": payload.reason})
    logger.warning("IP %s blocked by admin %s", payload.ip, principal.subject_id)

    data = BlocklistResponse(ip=payload.ip, blocked=True, seconds=payload.seconds)
    return build_envelope(request, data.model_dump())


@router.delete("/blocked-ips/{ip}", summary="Lift a block")
async def unblock_ip(ip: str, request: Request, principal: Principal = Depends(get_principal)):
    audit(request, resource_id=ip)
    if not await request.app.state.blocklist.unblock(ip):
        raise NotFoundError("Blocked IP", ip)
    logger.warning("IP %s unblocked by admin %s", ip, principal.subject_id)
    return build_envelope(request, BlocklistResponse(ip=ip, blocked=False).model_dump())


@router.post(
    "/csp-violation",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Receive a Content-Security-Policy violation report",
)
async def csp_violation(request: Request) -> Response:
    """
    Browsers post `application/csp-report` bodies shaped
    {"csp-report": {...}}; anything unparseable is acknowledged and dropped.
    """
    try:
        body = json.loads(await request.body() or b"{}")
    except ValueError:
        body = {}
    report: Dict[str, Any] = body.get("csp-report", body) if isinstance(body, dict) else {}
    if not isinstance(report, dict):
        report = {}

    details = {
        field: str(report[field])[:_CSP_VALUE_LENGTH]
        for field in _CSP_FIELDS
        if report.get(field) is not None
    }
    logger.warning("CSP violation from %s: %s", client_ip(request), details)
    audit(request, details=details)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
