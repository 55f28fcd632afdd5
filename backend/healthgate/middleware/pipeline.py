"""
HealthGate Backend — Request Pipeline Orchestrator
====================================================

What:  Runs the ordered security stages for every HTTP request and
       guarantees one finalization step on every exit path.
Why:   Each stage is a small object returning "continue" (None) or
       "short-circuit with this response". The orchestrator owns ordering,
       store-outage handling and finalization, so no stage needs to know
       about any other.
How:   SecurityPipelineMiddleware is a pure ASGI middleware (not
       BaseHTTPMiddleware) because it must buffer and possibly rewrite the
       request body and query string before the application sees them.

Stage Order:
    ┌────────────┐  ┌───────────┐  ┌────────────┐  ┌────────────┐  ┌────────────┐  ┌─────────────┐
    │ Request ID │─▶│ Blocked IP│─▶│ Rate Limit │─▶│ Input Scan │─▶│ Credentials│─▶│ Authorization│─▶ handler
    └────────────┘  └───────────┘  └────────────┘  └────────────┘  └────────────┘  └─────────────┘
         never         403            429             400/413          401              401/403
         fails      IP_BLOCKED   RATE_LIMIT_EXCEEDED INPUT_REJECTED  AUTH_FAILED    AUTH_REQUIRED ...

    Finalization (try/finally, runs on success, short-circuit, handler
    exception and cancellation):
        1. Release the rate-limit count for skip-successful policies (status < 400)
        2. Submit the audit record (fire-and-forget)
        X-Request-ID, X-Response-Time and rate-limit headers are added to the
        response start message as it is sent.

Store outages (fail open):
    A StoreError raised by any stage is logged and reported to the ErrorSink,
    and the request continues with the next stage. Losing rate limiting for
    the length of a Redis outage is preferred over refusing all patients.
"""

import asyncio
import email.message
import json
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple
from urllib.parse import parse_qsl, urlencode

from starlette.datastructures import Headers, MutableHeaders
from starlette.responses import Response
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from healthgate.exceptions import StoreError
from healthgate.middleware.context import RequestContext
from healthgate.middleware.routing import RouteTable
from healthgate.services.audit_service import AuditAction, AuditRecord, AuditTrail
from healthgate.services.error_sink import ErrorSink, NullErrorSink
from healthgate.services.rate_limiter import Allowed, FixedWindowRateLimiter

logger = logging.getLogger(__name__)

Stage = Callable[[RequestContext], Awaitable[Optional[Response]]]


# ══════════════════════════════════════════════════════════════════════════
# Request parsing helpers
# ══════════════════════════════════════════════════════════════════════════


def _collapse(pairs: List[Tuple[str, str]]) -> Dict[str, Any]:
    """Repeated keys become lists; single keys stay plain strings."""
    result: Dict[str, Any] = {}
    for key, value in pairs:
        if key in result:
            existing = result[key]
            result[key] = existing + [value] if isinstance(existing, list) else [existing, value]
        else:
            result[key] = value
    return result


def _body_format(content_type: str) -> Optional[str]:
    """
    "json", "form" or None, decided the way FastAPI decides how to parse a
    body: a missing Content-Type and any application/json or
    application/*+json media type are JSON.
    """
    if not content_type:
        return "json"
    message = email.message.Message()
    message["content-type"] = content_type
    if message.get_content_maintype() != "application":
        return None
    subtype = message.get_content_subtype()
    if subtype == "json" or subtype.endswith("+json"):
        return "json"
    if subtype == "x-www-form-urlencoded":
        return "form"
    return None


def _parse_body(raw: bytes, content_type: str) -> Any:
    if not raw:
        return None
    body_format = _body_format(content_type)
    if body_format == "json":
        try:
            return json.loads(raw)
        except ValueError:
            # Left to the handler's request validation (422)
            return None
    if body_format == "form":
        return _collapse(parse_qsl(raw.decode("utf-8", errors="replace"), keep_blank_values=True))
    return None


def _encode_body(body: Any, content_type: str) -> Optional[bytes]:
    body_format = _body_format(content_type)
    if body_format == "json":
        return json.dumps(body).encode("utf-8")
    if body_format == "form" and isinstance(body, dict):
        return urlencode(body, doseq=True).encode("utf-8")
    return None


def client_ip(scope: Scope, trust_proxy_headers: bool = False) -> str:
    """
    Source IP for blocklist and rate-limit keys.

    X-Forwarded-For is honoured only when the deployment says a trusted
    proxy sets it; otherwise any client could pick its own rate-limit key.
    """
    if trust_proxy_headers:
        forwarded = Headers(scope=scope).get("x-forwarded-for")
        if forwarded:
            return forwarded.split(",")[0].strip()
    client = scope.get("client")
    return client[0] if client else "unknown"


# ══════════════════════════════════════════════════════════════════════════
# Orchestrator
# ══════════════════════════════════════════════════════════════════════════


class SecurityPipeline:
    """
    Ordered stage runner plus the finalization hook.

    Args:
        routes:       RouteTable selecting the policy for each request
        stages:       Stages in execution order
        limiter:      Used by finalize() to release skip-successful counts
        audit_trail:  Receives one record per audited request
        error_sink:   Receives store outages
    """

    def __init__(
        self,
        routes: RouteTable,
        stages: Sequence[Stage],
        limiter: FixedWindowRateLimiter,
        audit_trail: AuditTrail,
        error_sink: Optional[ErrorSink] = None,
        trust_proxy_headers: bool = False,
    ):
        self.routes = routes
        self.stages = list(stages)
        self._limiter = limiter
        self._audit_trail = audit_trail
        self._error_sink = error_sink or NullErrorSink()
        self._trust_proxy_headers = trust_proxy_headers

    def create_context(self, scope: Scope, raw_body: bytes) -> RequestContext:
        headers = Headers(scope=scope)
        method = scope.get("method", "GET")
        path = scope.get("path", "/")
        rule, params = self.routes.match(method, path)
        content_type = headers.get("content-type", "").lower()
        query_string = scope.get("query_string", b"").decode("latin-1")
        return RequestContext(
            method=method,
            path=path,
            ip=client_ip(scope, self._trust_proxy_headers),
            headers=headers,
            rule=rule,
            path_params=params,
            query=_collapse(parse_qsl(query_string, keep_blank_values=True)),
            body=_parse_body(raw_body, content_type),
            raw_body=raw_body,
            content_type=content_type,
            user_agent=headers.get("user-agent"),
            state=scope.setdefault("state", {}),
        )

    async def run(self, ctx: RequestContext) -> Optional[Response]:
        """Run stages in order. Returns the short-circuit response, or None to continue."""
        ctx.state["started_at"] = ctx.started_at
        ctx.state["client_ip"] = ctx.ip
        for stage in self.stages:
            name = getattr(stage, "name", type(stage).__name__)
            try:
                response = await stage(ctx)
            except StoreError as e:
                self._fail_open(name, ctx, e)
                continue
            if response is not None:
                ctx.halted_by = name
                return response
        return None

    def _fail_open(self, stage: str, ctx: RequestContext, exc: StoreError) -> None:
        logger.error(
            "Counter store unavailable in %s stage, continuing without it: %s %s (%s)",
            stage,
            ctx.method,
            ctx.path,
            exc.context,
        )
        ctx.audit_details.setdefault("store_unavailable", []).append(stage)
        self._error_sink.report(exc, {"request_id": ctx.request_id, "stage": stage})

    async def finalize(self, ctx: RequestContext, status: int) -> None:
        """Release skip-successful counts and submit the audit record."""
        try:
            if (
                status < 400
                and isinstance(ctx.rate_limit_decision, Allowed)
                and ctx.rate_limit_policy is not None
                and ctx.rate_limit_key is not None
            ):
                await self._limiter.release(ctx.rate_limit_key, ctx.rate_limit_policy)
        except StoreError as e:
            self._fail_open("finalize", ctx, e)
        finally:
            if ctx.rule.audit:
                self._audit_trail.submit(self.build_audit_record(ctx, status))

    def build_audit_record(self, ctx: RequestContext, status: int) -> AuditRecord:
        # Handlers refine the record through request.state.audit
        overrides: Dict[str, Any] = ctx.state.get("audit", {})
        action = overrides.get("action") or ctx.audit_action
        if action is None:
            action = AuditAction.ACCESS_DENIED.value if status in (401, 403) else ctx.rule.audit_action

        principal_id = overrides.get("principal_id")
        if principal_id is None and ctx.principal is not None:
            principal_id = ctx.principal.subject_id

        resource_id = overrides.get("resource_id")
        if resource_id is None and ctx.rule.owner_param:
            value = ctx.path_params.get(ctx.rule.owner_param)
            resource_id = str(value) if value is not None else None

        details = dict(ctx.audit_details)
        details.update(overrides.get("details", {}))
        if ctx.halted_by:
            details["halted_by"] = ctx.halted_by

        return AuditRecord(
            action=str(action),
            resource=ctx.rule.resource,
            outcome="success" if status < 400 else "failure",
            http_status=status,
            duration_ms=round(ctx.elapsed_ms(), 2),
            request_id=ctx.request_id,
            method=ctx.method,
            path=ctx.path,
            ip=ctx.ip,
            principal_id=principal_id,
            resource_id=resource_id,
            user_agent=ctx.user_agent,
            details=details,
        )


# ══════════════════════════════════════════════════════════════════════════
# ASGI Middleware
# ══════════════════════════════════════════════════════════════════════════


class SecurityPipelineMiddleware:
    """
    Pure ASGI middleware wrapping the application with a SecurityPipeline.

    Body handling:
        The body is buffered (up to max_body_bytes) so the stages can scan it,
        then replayed to the application. In sanitize mode the cleaned query
        string and body replace the originals, and Content-Length is updated.
        Bodies over the cap are not read further; the input-scan stage
        answers 413.
    """

    def __init__(self, app: ASGIApp, pipeline: SecurityPipeline, max_body_bytes: int = 1_048_576):
        self.app = app
        self.pipeline = pipeline
        self.max_body_bytes = max_body_bytes

    async def _read_body(self, receive: Receive) -> Tuple[bytes, bool, bool]:
        """Returns (body, oversized, disconnected)."""
        body = bytearray()
        while True:
            message = await receive()
            if message["type"] == "http.disconnect":
                return bytes(body), False, True
            body.extend(message.get("body", b""))
            if len(body) > self.max_body_bytes:
                return b"", True, False
            if not message.get("more_body", False):
                return bytes(body), False, False

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        raw_body, oversized, disconnected = await self._read_body(receive)
        if disconnected:
            logger.debug("Client disconnected before the request body was read: %s", scope.get("path"))
            return

        ctx = self.pipeline.create_context(scope, raw_body)
        ctx.oversized_body = oversized
        status = 500

        async def send_wrapper(message: Message) -> None:
            nonlocal status
            if message["type"] == "http.response.start":
                status = message["status"]
                headers = MutableHeaders(scope=message)
                headers["X-Request-ID"] = ctx.request_id
                headers["X-Response-Time"] = f"{ctx.elapsed_ms():.2f}ms"
                for key, value in ctx.response_headers.items():
                    if key not in headers:
                        headers[key] = value
            await send(message)

        try:
            response = await self.pipeline.run(ctx)
            if response is not None:
                await response(scope, receive, send_wrapper)
                return
            body = self._apply_sanitized_input(scope, ctx)
            await self.app(scope, self._replay(body, receive), send_wrapper)
        except asyncio.CancelledError:
            ctx.audit_details["abandoned"] = True
            status = 499
            raise
        finally:
            await self.pipeline.finalize(ctx, status)

    @staticmethod
    def _replay(body: bytes, receive: Receive) -> Receive:
        sent = False

        async def replay() -> Message:
            nonlocal sent
            if not sent:
                sent = True
                return {"type": "http.request", "body": body, "more_body": False}
            return await receive()

        return replay

    @staticmethod
    def _apply_sanitized_input(scope: Scope, ctx: RequestContext) -> bytes:
        if not ctx.input_modified:
            return ctx.raw_body

        scope["query_string"] = urlencode(ctx.query, doseq=True).encode("latin-1")
        body = ctx.raw_body
        if ctx.body is not None:
            encoded = _encode_body(ctx.body, ctx.content_type)
            if encoded is not None:
                body = encoded
                headers = MutableHeaders(scope=scope)
                headers["content-length"] = str(len(body))
        return body
