"""
HealthGate Backend — Audit Trail
==================================

What:  Write-once audit records for every request that passes through the
       security pipeline, delivered to a configurable sink.
Why:   Healthcare access must be attributable after the fact, but a slow or
       broken audit backend must never delay or fail the patient's request.
How:   AuditTrail.submit() schedules the sink write as a tracked background
       task (fire-and-forget). Failures are logged and reported to the
       ErrorSink, never raised to the caller. drain() awaits in-flight
       writes during shutdown.
Who:   The pipeline's finalization hook submits one record per request.

Sinks (AUDIT_SINK):
    database → audit_logs table via SQLAlchemy (retries transient DB errors)
    file     → JSON lines appended with aiofiles
    log      → one INFO record per event on the `healthgate.audit` logger
    none     → discarded
"""

import asyncio
import enum
import json
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional, Protocol, Set

import aiofiles
from sqlalchemy import text
from sqlalchemy.exc import InterfaceError, OperationalError, SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
    wait_random,
)

from healthgate.exceptions import DatabaseError
from healthgate.models.audit_log import AuditLog
from healthgate.services.error_sink import ErrorSink, NullErrorSink

logger = logging.getLogger(__name__)
audit_logger = logging.getLogger("healthgate.audit")


class AuditAction(str, enum.Enum):
    ACCESS = "ACCESS"
    ACCESS_DENIED = "ACCESS_DENIED"
    LOGIN = "LOGIN"
    FAILED_LOGIN = "FAILED_LOGIN"
    LOGOUT = "LOGOUT"
    TOKEN_REFRESH = "TOKEN_REFRESH"
    PASSWORD_RESET_REQUEST = "PASSWORD_RESET_REQUEST"
    SUSPICIOUS_ACTIVITY = "SUSPICIOUS_ACTIVITY"
    RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"
    IP_BLOCKED = "IP_BLOCKED"
    IP_UNBLOCKED = "IP_UNBLOCKED"
    CSP_VIOLATION = "CSP_VIOLATION"


@dataclass(frozen=True)
class AuditRecord:
    """One audited request. Frozen: records are never modified after creation."""

    action: str
    resource: str
    outcome: str
    http_status: int
    duration_ms: float
    request_id: str
    method: str
    path: str
    ip: str
    principal_id: Optional[str] = None
    resource_id: Optional[str] = None
    user_agent: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["timestamp"] = self.timestamp.isoformat()
        return data


class AuditSink(Protocol):
    kind: str

    async def write(self, record: AuditRecord) -> None: ...

    async def ping(self) -> bool: ...


# ══════════════════════════════════════════════════════════════════════════
# Sinks
# ══════════════════════════════════════════════════════════════════════════


class NullAuditSink:
    kind = "none"

    async def write(self, record: AuditRecord) -> None:
        return None

    async def ping(self) -> bool:
        return True


class LoggingAuditSink:
    kind = "log"

    async def write(self, record: AuditRecord) -> None:
        audit_logger.info("%s", json.dumps(record.to_dict(), default=str, sort_keys=True))

    async def ping(self) -> bool:
        return True


class FileAuditSink:
    """
    Appends one JSON object per line.

    A lock serializes writers so concurrent records never interleave within
    a line. The parent directory is created on first write.
    """

    kind = "file"

    def __init__(self, path: str):
        self._path = Path(path)
        self._lock = asyncio.Lock()

    async def write(self, record: AuditRecord) -> None:
        line = json.dumps(record.to_dict(), default=str, sort_keys=True) + "\n"
        async with self._lock:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            async with aiofiles.open(self._path, "a", encoding="utf-8") as f:
                await f.write(line)

    async def ping(self) -> bool:
        parent = self._path.parent
        return parent.is_dir() or not parent.exists()


class DatabaseAuditSink:
    """
    Inserts into `audit_logs`.

    Retries:
        OperationalError / InterfaceError (dropped connection, failover) are
        retried with exponential backoff + jitter. Anything else, or a
        failure after the last attempt, raises DatabaseError.
    """

    kind = "database"

    def __init__(self, session_factory: async_sessionmaker, retry_attempts: int = 3):
        self._session_factory = session_factory
        self._retry_attempts = retry_attempts

    async def write(self, record: AuditRecord) -> None:
        try:
            async for attempt in AsyncRetrying(
                retry=retry_if_exception_type((OperationalError, InterfaceError)),
                stop=stop_after_attempt(self._retry_attempts),
                wait=wait_exponential(multiplier=0.1, max=2.0) + wait_random(0, 0.1),
                before_sleep=before_sleep_log(logger, logging.WARNING),
                reraise=True,
            ):
                with attempt:
                    await self._insert(record)
        except SQLAlchemyError as e:
            raise DatabaseError(
                context={"operation": "audit_insert", "error_type": type(e).__name__},
            ) from e

    async def _insert(self, record: AuditRecord) -> None:
        async with self._session_factory() as session:
            session.add(
                AuditLog(
                    timestamp=record.timestamp,
                    request_id=record.request_id,
                    principal_id=record.principal_id,
                    action=record.action,
                    resource=record.resource,
                    resource_id=record.resource_id,
                    outcome=record.outcome,
                    http_status=record.http_status,
                    duration_ms=record.duration_ms,
                    method=record.method,
                    path=record.path[:512],
                    ip=record.ip,
                    user_agent=(record.user_agent or "")[:512] or None,
                    details=record.details or None,
                )
            )
            await session.commit()

    async def ping(self) -> bool:
        try:
            async with self._session_factory() as session:
                await session.execute(text("SELECT 1"))
            return True
        except SQLAlchemyError as e:
            logger.warning("Audit database ping failed: %s", e)
            return False


def build_audit_sink(
    kind: str,
    file_path: str = "./audit/audit.jsonl",
    session_factory: Optional[async_sessionmaker] = None,
    retry_attempts: int = 3,
) -> AuditSink:
    if kind == "database":
        if session_factory is None:
            raise ValueError("The database audit sink needs a session factory")
        return DatabaseAuditSink(session_factory, retry_attempts=retry_attempts)
    if kind == "file":
        return FileAuditSink(file_path)
    if kind == "none":
        return NullAuditSink()
    return LoggingAuditSink()


# ══════════════════════════════════════════════════════════════════════════
# Trail (fire-and-forget delivery)
# ══════════════════════════════════════════════════════════════════════════


class AuditTrail:
    """
    Schedules sink writes without making the request wait for them.

    Every task is kept in `_pending` until it finishes, which both prevents
    it from being garbage-collected mid-flight and lets drain() wait for
    outstanding writes on shutdown.
    """

    def __init__(self, sink: AuditSink, error_sink: Optional[ErrorSink] = None):
        self.sink = sink
        self._error_sink = error_sink or NullErrorSink()
        self._pending: Set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        return len(self._pending)

    def submit(self, record: AuditRecord) -> asyncio.Task:
        task = asyncio.create_task(self.sink.write(record), name=f"audit-{record.request_id}")
        self._pending.add(task)
        task.add_done_callback(lambda t: self._on_done(t, record))
        return task

    def _on_done(self, task: asyncio.Task, record: AuditRecord) -> None:
        self._pending.discard(task)
        if task.cancelled():
            logger.warning("Audit write cancelled for request %s", record.request_id)
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                "Audit write failed for request %s (%s %s): %s",
                record.request_id,
                record.action,
                record.path,
                exc,
            )
            self._error_sink.report(exc, {"request_id": record.request_id, "action": record.action})

    async def drain(self, timeout: float = 5.0) -> None:
        """Wait up to `timeout` seconds for in-flight writes."""
        if not self._pending:
            return
        logger.info("Draining %d pending audit writes", len(self._pending))
        _, not_done = await asyncio.wait(set(self._pending), timeout=timeout)
        if not_done:
            logger.warning("%d audit writes did not finish before shutdown", len(not_done))
            for task in not_done:
                task.cancel()
