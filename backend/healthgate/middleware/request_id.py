"""
HealthGate Backend — Request ID Stage
=======================================

What:  Assigns a unique ID to each request and exposes it to loggers.
Why:   Every log line, audit record and error body from one request shares
       the same ID, so support can go from a client-reported ID straight to
       the matching log entries.
How:   Accepts the client's X-Request-ID when it is well-formed, otherwise
       generates a UUID. Stores it in a ContextVar for loggers and in the
       request state for handlers.
When:  First pipeline stage. Never fails.

Why validate client-provided IDs:
    The ID is written into logs and response headers. Restricting it to
    a short token of safe characters prevents log injection (newlines) and
    oversized headers.
"""

import re
import uuid
from contextvars import ContextVar
from typing import Optional

from starlette.responses import Response

from healthgate.middleware.context import RequestContext

# Coroutine-local storage for the current request ID (safe under asyncio,
# where many requests share one thread)
request_id_var: ContextVar[str] = ContextVar("request_id", default="")

_VALID_REQUEST_ID = re.compile(r"^[A-Za-z0-9._\-]{8,64}$")


def resolve_request_id(candidate: Optional[str]) -> str:
    if candidate and _VALID_REQUEST_ID.match(candidate):
        return candidate
    return str(uuid.uuid4())


class RequestIdStage:
    name = "request_id"

    async def __call__(self, ctx: RequestContext) -> Optional[Response]:
        ctx.request_id = resolve_request_id(ctx.headers.get("x-request-id"))
        request_id_var.set(ctx.request_id)
        ctx.state["request_id"] = ctx.request_id
        return None
