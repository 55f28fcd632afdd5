"""
HealthGate Backend — Health Check Route
=========================================

What:  Health check endpoint for monitoring and load balancer probes.
Why:   Load balancers route away from instances that cannot enforce the
       security pipeline properly.
How:   Pings the counter store and the audit sink; both checks are
       lightweight (PING / SELECT 1 / directory check).
Who:   Called by Docker health checks, load balancers and monitoring.

Health Check Philosophy:
    The counter store backs rate limiting, the blocklist and refresh tokens.
    Without it the pipeline fails open, which keeps patients served but
    removes abuse protection, so the instance reports itself unhealthy.
    A lost audit sink only degrades the instance: requests are still
    authorized correctly, but their audit records are dropped.

    Status levels:
    - healthy:   store and audit sink reachable (HTTP 200)
    - degraded:  audit sink unreachable (HTTP 200, flag for monitoring)
    - unhealthy: counter store unreachable (HTTP 503)
"""

import logging
import time

from fastapi import APIRouter, Request, Response, status

from healthgate import __version__
from healthgate.schemas.auth import HealthResponse

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Health"])

# Module-level: initialized once when the module loads
_start_time = time.time()


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Service health check",
    description=(
        "Returns the status of the counter store and audit sink. Used by Docker "
        "health checks and load balancers."
    ),
)
async def health_check(request: Request, response: Response) -> HealthResponse:
    services = request.app.state
    overall = "healthy"

    # ── Check Counter Store ───────────────────────────────────────────────
    store_status = "connected"
    if not await services.store.ping():
        store_status = "disconnected"
        overall = "unhealthy"
        logger.warning("Health check: counter store unreachable")

    # ── Check Audit Sink ──────────────────────────────────────────────────
    sink = services.audit_trail.sink
    audit_status = sink.kind
    if not await sink.ping():
        audit_status = f"{sink.kind}:unavailable"
        overall = "degraded" if overall != "unhealthy" else overall
        logger.warning("Health check: audit sink %s unreachable", sink.kind)

    if overall == "unhealthy":
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE

    return HealthResponse(
        status=overall,
        version=__version__,
        counter_store=store_status,
        audit_sink=audit_status,
        uptime_seconds=round(time.time() - _start_time, 2),
    )
