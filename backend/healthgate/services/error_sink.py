"""
HealthGate Backend — Error Telemetry Sink
===========================================

What:  Where unexpected failures are reported besides the application log.
Why:   Error tracking is optional per deployment. Code that reports errors
       depends on this small interface instead of checking whether a tracker
       is configured at every call site.
How:   ErrorSink protocol with two implementations selected at startup:
       - LoggingErrorSink: logs with full traceback on `healthgate.errors`
       - NullErrorSink: discards reports
Who:   Called by the catch-all exception handler, the pipeline (store outages)
       and the audit trail (failed writes).
"""

import logging
from typing import Any, Dict, Optional, Protocol

logger = logging.getLogger("healthgate.errors")


class ErrorSink(Protocol):
    def report(self, exc: BaseException, context: Optional[Dict[str, Any]] = None) -> None: ...


class NullErrorSink:
    def report(self, exc: BaseException, context: Optional[Dict[str, Any]] = None) -> None:
        return None


class LoggingErrorSink:
    """Reports errors as ERROR log records carrying the traceback and context."""

    def report(self, exc: BaseException, context: Optional[Dict[str, Any]] = None) -> None:
        logger.error(
            "%s: %s | Context: %s",
            type(exc).__name__,
            exc,
            context or {},
            exc_info=(type(exc), exc, exc.__traceback__),
        )


def build_error_sink(kind: str) -> ErrorSink:
    if kind == "none":
        return NullErrorSink()
    return LoggingErrorSink()
