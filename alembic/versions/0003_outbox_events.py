"""add app.outbox_events

Revision ID: 0003_outbox_events
Revises: 0002_audit_log
Create Date: 2026-10-18 00:20:00.000000

"""

from __future__ import annotations

from alembic import op


revision = "0003_outbox_events"
down_revision = "0002_audit_log"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.execute(
        """
        CREATE TABLE IF NOT EXISTS app.outbox_events (
            id bigserial PRIMARY KEY,
            event_name text NOT NULL,
            aggregate_id text,
            payload jsonb NOT NULL,
            created_at timestamptz NOT NULL DEFAULT now(),
            published_at timestamptz
        );
        """
    )
    op.execute(
        """
        CREATE INDEX IF NOT EXISTS ix_outbox_events_unpublished
        ON app.outbox_events (created_at)
        WHERE published_at IS NULL;
        """
    )


def downgrade() -> None:
    op.execute("DROP TABLE IF EXISTS app.outbox_events;")
