"""create app.cash_out_requests

Revision ID: 0001_cash_out_requests
Revises:
Create Date: 2026-10-18 00:00:00.000000

"""

from __future__ import annotations

from alembic import op


revision = "0001_cash_out_requests"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.execute("CREATE SCHEMA IF NOT EXISTS app;")
    op.execute("CREATE EXTENSION IF NOT EXISTS pgcrypto;")
    op.execute(
        """
        CREATE TABLE IF NOT EXISTS app.cash_out_requests (
            id uuid PRIMARY KEY DEFAULT gen_random_uuid(),
            user_id text NOT NULL,
            wallet_id text NOT NULL,
            amount numeric(18, 2) NOT NULL CHECK (amount >= 0),
            currency text NOT NULL,
            fee numeric(18, 2) NOT NULL DEFAULT 0 CHECK (fee >= 0),
            provider text NOT NULL,
            provider_account_id text NOT NULL,
            provider_account_name text NOT NULL DEFAULT '',
            provider_transaction_id text,
            reference text NOT NULL,
            status text NOT NULL DEFAULT 'pending'
                CHECK (status IN ('pending', 'processing', 'completed', 'failed', 'cancelled')),
            provider_response jsonb NOT NULL DEFAULT '{}'::jsonb,
            failure_reason text,
            retry_count integer NOT NULL DEFAULT 0 CHECK (retry_count >= 0),
            last_retry_at timestamptz,
            next_retry_at timestamptz,
            completed_at timestamptz,
            created_at timestamptz NOT NULL DEFAULT now(),
            updated_at timestamptz NOT NULL DEFAULT now(),
            version integer NOT NULL DEFAULT 1 CHECK (version >= 1),
            CONSTRAINT cash_out_requests_reference_key UNIQUE (reference),
            CONSTRAINT cash_out_requests_completed_at_chk
                CHECK ((status = 'completed') = (completed_at IS NOT NULL))
        );
        """
    )
    op.execute(
        """
        CREATE INDEX IF NOT EXISTS ix_cash_out_requests_inflight
        ON app.cash_out_requests (status, provider, created_at)
        WHERE status IN ('pending', 'processing');
        """
    )
    op.execute(
        """
        CREATE INDEX IF NOT EXISTS ix_cash_out_requests_retry_due
        ON app.cash_out_requests (next_retry_at)
        WHERE status = 'processing' AND next_retry_at IS NOT NULL;
        """
    )


def downgrade() -> None:
    op.execute("DROP TABLE IF EXISTS app.cash_out_requests;")
