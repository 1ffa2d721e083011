"""create_pitwall_tables

Revision ID: core_001
Revises:
Create Date: 2026-10-18 00:00:00.000000

"""

from __future__ import annotations

from alembic import op

# revision identifiers, used by Alembic.
revision = "core_001"
down_revision = None
branch_labels = ("core",)
depends_on = None


def upgrade() -> None:
    op.execute("""
        CREATE TABLE IF NOT EXISTS weekends (
            id SERIAL PRIMARY KEY,
            series TEXT NOT NULL,
            name TEXT NOT NULL,
            icon TEXT NOT NULL DEFAULT '',
            year INTEGER NOT NULL,
            start_date TIMESTAMPTZ NOT NULL,
            status TEXT NOT NULL DEFAULT 'Open',
            created_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    """)

    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_weekends_series_status_start
        ON weekends (series, status, start_date)
    """)

    op.execute("""
        CREATE TABLE IF NOT EXISTS sessions (
            id SERIAL PRIMARY KEY,
            weekend_id INTEGER NOT NULL REFERENCES weekends (id) ON DELETE CASCADE,
            kind TEXT NOT NULL,
            number INTEGER,
            title TEXT,
            status TEXT NOT NULL DEFAULT 'Open',
            notify TEXT NOT NULL DEFAULT 'Notify',
            start_date TIMESTAMPTZ NOT NULL,
            duration_seconds INTEGER NOT NULL DEFAULT 3600,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    """)

    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_sessions_weekend_start
        ON sessions (weekend_id, start_date)
    """)

    op.execute("""
        CREATE TABLE IF NOT EXISTS messages (
            id SERIAL PRIMARY KEY,
            kind TEXT NOT NULL,
            series TEXT NOT NULL,
            channel_id TEXT NOT NULL,
            message_id TEXT NOT NULL,
            posted_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            expires_at TIMESTAMPTZ,
            content_hash TEXT,
            weekend_id INTEGER,
            session_id INTEGER
        )
    """)

    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_messages_kind_series
        ON messages (kind, series, posted_at)
    """)

    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_messages_expires_at
        ON messages (expires_at)
        WHERE expires_at IS NOT NULL
    """)


def downgrade() -> None:
    op.execute("DROP TABLE IF EXISTS messages")
    op.execute("DROP TABLE IF EXISTS sessions")
    op.execute("DROP TABLE IF EXISTS weekends")
