"""add app.audit_log

Revision ID: 0002_audit_log
Revises: 0001_cash_out_requests
Create Date: 2026-10-18 00:10:00.000000

"""

from __future__ import annotations

from alembic import op


revision = "0002_audit_log"
down_revision = "0001_cash_out_requests"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.execute(
        """
        CREATE TABLE IF NOT EXISTS app.audit_log (
            id uuid PRIMARY KEY DEFAULT gen_random_uuid(),
            action text NOT NULL,
            resource_type text NOT NULL,
            resource_id text,
            description text NOT NULL DEFAULT '',
            metadata jsonb NOT NULL DEFAULT '{}'::jsonb,
            status text NOT NULL DEFAULT 'success',
            severity text NOT NULL DEFAULT 'info',
            request_id text,
            created_at timestamptz NOT NULL DEFAULT now()
        );
        """
    )
    op.execute(
        """
        CREATE INDEX IF NOT EXISTS ix_audit_log_resource
        ON app.audit_log (resource_type, resource_id, created_at);
        """
    )


def downgrade() -> None:
    op.execute("DROP TABLE IF EXISTS app.audit_log;")
