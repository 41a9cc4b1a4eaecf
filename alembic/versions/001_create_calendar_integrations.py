"""create_calendar_integrations

Revision ID: calbridge_001
Revises:
Create Date: 2026-10-19 00:00:00.000000

"""

from __future__ import annotations

from alembic import op

# revision identifiers, used by Alembic.
revision = "calbridge_001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # Token columns hold ciphertext only.
    op.execute("""
        CREATE TABLE IF NOT EXISTS calendar_integrations (
            user_id               TEXT NOT NULL,
            provider              TEXT NOT NULL,
            access_token          TEXT NOT NULL,
            refresh_token         TEXT,
            token_expiry          TIMESTAMPTZ NOT NULL,
            selected_calendar_ids TEXT[] NOT NULL DEFAULT ARRAY['primary'],
            scope                 TEXT,
            last_sync_at          TIMESTAMPTZ,
            version               BIGINT NOT NULL DEFAULT 1,
            created_at            TIMESTAMPTZ NOT NULL DEFAULT now(),
            updated_at            TIMESTAMPTZ NOT NULL DEFAULT now(),
            PRIMARY KEY (user_id, provider)
        )
    """)


def downgrade() -> None:
    op.execute("DROP TABLE IF EXISTS calendar_integrations")
