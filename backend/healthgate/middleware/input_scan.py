"""
HealthGate Backend — Suspicious-Input Stage
=============================================

What:  Scans query parameters, route parameters and the parsed body for
       injection patterns, then blocks or sanitizes per INPUT_GUARD_MODE.
Why:   Both modes record a SuspiciousEvent, so an IP that keeps probing is
       escalated to the blocklist whichever mode is deployed.

Modes:
    block     → 400 INPUT_REJECTED
    sanitize  → offending substrings are stripped from query and body, and
                the request continues with the cleaned values

    Route parameters cannot be rewritten without changing which route
    matches, so a finding in a route parameter is rejected in both modes.

Store outages:
    A failure to record the event is logged and reported; it never turns a
    rejection into an acceptance or the other way round.
"""

import logging
from typing import Optional

from starlette.responses import Response

from healthgate.exceptions import InputRejectedError, PayloadTooLargeError, StoreError
from healthgate.middleware.context import RequestContext
from healthgate.schemas.envelope import error_response
from healthgate.services.audit_service import AuditAction
from healthgate.services.error_sink import ErrorSink, NullErrorSink
from healthgate.services.input_guard import (
    SuspiciousActivityMonitor,
    SuspiciousEvent,
    SuspiciousInputDetector,
)

logger = logging.getLogger(__name__)


class InputScanStage:
    name = "input_scan"

    def __init__(
        self,
        detector: SuspiciousInputDetector,
        monitor: SuspiciousActivityMonitor,
        mode: str = "block",
        error_sink: Optional[ErrorSink] = None,
    ):
        self._detector = detector
        self._monitor = monitor
        self._mode = mode
        self._error_sink = error_sink or NullErrorSink()

    async def __call__(self, ctx: RequestContext) -> Optional[Response]:
        if ctx.oversized_body:
            ctx.audit_details["code"] = PayloadTooLargeError.code
            return error_response(PayloadTooLargeError())

        payload = {"query": ctx.query, "params": ctx.path_params, "body": ctx.body}
        finding = self._detector.scan(payload)
        if finding is None:
            return None

        principal_id = ctx.principal.subject_id if ctx.principal else None
        event = SuspiciousEvent(
            source_ip=ctx.ip,
            kind=finding.kind,
            path=ctx.path,
            timestamp=self._monitor.now_ms(),
            principal_id=principal_id,
        )
        try:
            await self._monitor.record_and_maybe_block(event)
        except StoreError as e:
            logger.error("Could not record suspicious event from %s: %s", ctx.ip, e.message)
            self._error_sink.report(e, {"request_id": ctx.request_id, "stage": self.name})

        ctx.audit_details.update({"threat": finding.kind.value, "location": finding.location})

        params_clean = self._detector.scan(ctx.path_params, "params") is None
        if self._mode == "sanitize" and params_clean:
            ctx.query = self._detector.sanitize(ctx.query)
            ctx.body = self._detector.sanitize(ctx.body)
            ctx.input_modified = True
            ctx.audit_details["sanitized"] = True
            logger.info("Sanitized %s in %s %s", finding.kind.value, ctx.method, ctx.path)
            return None

        ctx.audit_action = AuditAction.SUSPICIOUS_ACTIVITY.value
        ctx.audit_details["code"] = InputRejectedError.code
        return error_response(InputRejectedError(kind=finding.kind.value))
