"""
HealthGate Backend — Audit Log SQLAlchemy Model
=================================================

What:  ORM model for the `audit_logs` table: one immutable row per audited
       request (logins, denials, blocks, admin actions, data access).
Why:   Security-relevant events in a healthcare system must be reconstructable
       after the fact: who did what, to which resource, from where, and
       whether it succeeded.
How:   Inherits from DeclarativeBase; Alembic migration 001 creates the table.
Who:   Written by DatabaseAuditSink; read by operators and compliance tooling.
When:  Rows are inserted in the background after the response is sent.

Table Design Rationale:
    - Portable column types (sa.Uuid, DateTime(timezone=True), JSON) so the
      same model runs on PostgreSQL in production and SQLite in tests
    - principal_id is nullable: anonymous requests (failed logins, probes)
      are audited too
    - Rows are never updated or deleted by the application

    Indexes (all composite with timestamp, matching "recent X" queries):
        (principal_id, timestamp)  "what did this user do"
        (action, timestamp)        "recent failed logins"
        (resource, timestamp)      "who touched users"
        (outcome, timestamp)       "recent denials"
        (ip, timestamp)            "what did this IP do before it was blocked"
"""

import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from sqlalchemy import JSON, DateTime, Float, Index, Integer, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from healthgate.database import Base


class AuditLog(Base):
    __tablename__ = "audit_logs"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    timestamp: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        comment="When the request finished (UTC)",
    )

    request_id: Mapped[str] = mapped_column(String(64), nullable=False)

    principal_id: Mapped[Optional[str]] = mapped_column(
        String(64), nullable=True, comment="Subject id, NULL for anonymous requests"
    )

    # What: Audit action, e.g. LOGIN, FAILED_LOGIN, ACCESS_DENIED, IP_BLOCKED
    action: Mapped[str] = mapped_column(String(64), nullable=False)
    resource: Mapped[str] = mapped_column(String(64), nullable=False)
    resource_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)

    # 'success' | 'failure' (failure = any status >= 400)
    outcome: Mapped[str] = mapped_column(String(16), nullable=False)
    http_status: Mapped[int] = mapped_column(Integer, nullable=False)
    duration_ms: Mapped[float] = mapped_column(Float, nullable=False)

    method: Mapped[str] = mapped_column(String(10), nullable=False)
    path: Mapped[str] = mapped_column(String(512), nullable=False)
    ip: Mapped[str] = mapped_column(String(64), nullable=False)
    user_agent: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)

    # Extra context: deny reason, threat kind, rate-limit policy
    details: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON, nullable=True)

    __table_args__ = (
        Index("idx_audit_logs_principal_ts", "principal_id", "timestamp"),
        Index("idx_audit_logs_action_ts", "action", "timestamp"),
        Index("idx_audit_logs_resource_ts", "resource", "timestamp"),
        Index("idx_audit_logs_outcome_ts", "outcome", "timestamp"),
        Index("idx_audit_logs_ip_ts", "ip", "timestamp"),
    )

    def __repr__(self) -> str:
        return (
            f"<AuditLog(id={self.id}, action='{self.action}', "
            f"outcome='{self.outcome}', status={self.http_status})>"
        )
