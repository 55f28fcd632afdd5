"""
HealthGate Backend — Access Log Middleware
============================================

What:  One structured log line per HTTP request.
Why:   Operational view of traffic (status, latency, caller) that is cheaper
       to grep than the audit trail and carries no PHI.
How:   Sits outside the security pipeline, so short-circuited requests
       (403 IP_BLOCKED, 429, 401) are logged too. The request ID and
       principal are read from request.state, which the pipeline fills in;
       context variables set inside the pipeline are not visible here
       because BaseHTTPMiddleware runs the inner app in another task.

What we log vs what we DON'T log (privacy):
    ✅ Log: method, path, status, duration, IP, request ID, principal ID
    ❌ Don't log: request body, query values, Authorization header
"""

import logging
import time

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

logger = logging.getLogger("healthgate.access")

QUIET_PATHS = frozenset({"/health"})


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    Log level follows the status class:
        5xx → ERROR, 4xx → WARNING, everything else → INFO
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        start_time = time.perf_counter()
        path = request.url.path

        # Health checks run every few seconds and would drown everything else
        if path in QUIET_PATHS:
            return await call_next(request)

        response = await call_next(request)
        duration_ms = (time.perf_counter() - start_time) * 1000

        status = response.status_code
        if status >= 500:
            log_level = logging.ERROR
        elif status >= 400:
            log_level = logging.WARNING
        else:
            log_level = logging.INFO

        client_ip = request.client.host if request.client else "unknown"
        rid = getattr(request.state, "request_id", "")
        principal = getattr(request.state, "principal", None)
        principal_id = principal.subject_id if principal is not None else "-"

        logger.log(
            log_level,
            "%s %s %d %.1fms [%s] from %s as %s",
            request.method,
            path,
            status,
            duration_ms,
            rid,
            client_ip,
            principal_id,
            extra={
                "request_id": rid,
                "method": request.method,
                "path": path,
                "status": status,
                "duration_ms": round(duration_ms, 2),
                "client_ip": client_ip,
                "principal_id": principal_id,
            },
        )
        return response
