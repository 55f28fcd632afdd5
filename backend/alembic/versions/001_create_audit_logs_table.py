"""Create audit_logs table

Revision ID: 001
Revises: None
Create Date: 2026-10-19 00:00:00.000000+00:00

What:  Creates the append-only `audit_logs` table written by DatabaseAuditSink.
How:   Portable types (sa.Uuid, timezone-aware DateTime, JSON) matching
       healthgate/models/audit_log.py; five (column, timestamp) indexes for
       the usual "recent events by X" queries.

Rollback: downgrade() drops the table. Audit history is a compliance record;
          archive it before downgrading a production database.
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

# revision identifiers
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

_INDEXES = {
    "idx_audit_logs_principal_ts": "principal_id",
    "idx_audit_logs_action_ts": "action",
    "idx_audit_logs_resource_ts": "resource",
    "idx_audit_logs_outcome_ts": "outcome",
    "idx_audit_logs_ip_ts": "ip",
}


def upgrade() -> None:
    op.create_table(
        "audit_logs",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column(
            "timestamp",
            sa.DateTime(timezone=True),
            nullable=False,
            comment="When the request finished (UTC)",
        ),
        sa.Column("request_id", sa.String(64), nullable=False),
        sa.Column(
            "principal_id",
            sa.String(64),
            nullable=True,
            comment="Subject id, NULL for anonymous requests",
        ),
        sa.Column("action", sa.String(64), nullable=False),
        sa.Column("resource", sa.String(64), nullable=False),
        sa.Column("resource_id", sa.String(128), nullable=True),
        sa.Column("outcome", sa.String(16), nullable=False),
        sa.Column("http_status", sa.Integer(), nullable=False),
        sa.Column("duration_ms", sa.Float(), nullable=False),
        sa.Column("method", sa.String(10), nullable=False),
        sa.Column("path", sa.String(512), nullable=False),
        sa.Column("ip", sa.String(64), nullable=False),
        sa.Column("user_agent", sa.String(512), nullable=True),
        sa.Column("details", sa.JSON(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    for name, column in _INDEXES.items():
        op.create_index(name, "audit_logs", [column, "timestamp"])


def downgrade() -> None:
    for name in _INDEXES:
        op.drop_index(name, table_name="audit_logs")
    op.drop_table("audit_logs")
