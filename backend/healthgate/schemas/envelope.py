"""
HealthGate Backend — Response Envelopes
=========================================

What:  The two JSON shapes every endpoint returns.
Why:   Clients branch on `success` first, then read `data` or `code`,
       regardless of whether the response came from a handler, a global
       exception handler or a pipeline short-circuit.

Success:
    {"success": true, "data": ..., "meta": {"timestamp", "requestId", "responseTime"}}

Failure:
    {"success": false, "message": "...", "code": "RATE_LIMIT_EXCEEDED", "retryAfter": 42}
"""

import time
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional

from pydantic import BaseModel
from starlette.requests import Request
from starlette.responses import JSONResponse

from healthgate.exceptions import HealthGateError, RateLimitExceededError


class ResponseMeta(BaseModel):
    timestamp: str
    requestId: str
    responseTime: float


def build_envelope(request: Request, data: Any) -> Dict[str, Any]:
    """Wrap handler output in the success envelope."""
    state = request.scope.get("state", {})
    started = state.get("started_at")
    elapsed_ms = (time.perf_counter() - started) * 1000 if started is not None else 0.0
    meta = ResponseMeta(
        timestamp=datetime.now(timezone.utc).isoformat(),
        requestId=state.get("request_id", ""),
        responseTime=round(elapsed_ms, 2),
    )
    return {"success": True, "data": data, "meta": meta.model_dump()}


def error_response(
    exc: HealthGateError,
    headers: Optional[Mapping[str, str]] = None,
) -> JSONResponse:
    """Render a HealthGateError as its public JSON body and status."""
    merged = dict(headers or {})
    if isinstance(exc, RateLimitExceededError):
        merged["Retry-After"] = str(exc.retry_after)
    return JSONResponse(status_code=exc.status_code, content=exc.to_body(), headers=merged)
