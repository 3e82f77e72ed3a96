"""create_calsync_tables

Revision ID: calsync_001
Revises:
Create Date: 2026-01-01 00:00:00.000000

"""

from __future__ import annotations

from alembic import op

# revision identifiers, used by Alembic.
revision = "calsync_001"
down_revision = None
branch_labels = ("calsync",)
depends_on = None


def upgrade() -> None:
    op.execute("""
        CREATE TABLE IF NOT EXISTS calendar_events (
            local_id UUID PRIMARY KEY,
            remote_id TEXT UNIQUE,
            event_type TEXT NOT NULL DEFAULT 'default',
            summary TEXT NOT NULL DEFAULT '',
            description TEXT,
            location TEXT,
            start_at TIMESTAMPTZ NOT NULL,
            end_at TIMESTAMPTZ NOT NULL,
            timezone TEXT NOT NULL DEFAULT 'UTC',
            recurrence_rule TEXT,
            recurring_event_id TEXT,
            original_start_time TIMESTAMPTZ,
            attendees JSONB NOT NULL DEFAULT '[]',
            organizer_email TEXT,
            hangout_link TEXT,
            remote_updated_at TIMESTAMPTZ,
            local_edited_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            sync_state TEXT NOT NULL DEFAULT 'PENDING',
            is_deleted BOOLEAN NOT NULL DEFAULT false,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            CONSTRAINT calendar_events_sync_state_check
                CHECK (sync_state IN ('CLEAN', 'PENDING', 'ERROR'))
        )
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_calendar_events_window
        ON calendar_events (start_at, end_at)
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_calendar_events_recurring_event_id
        ON calendar_events (recurring_event_id)
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_calendar_events_sync_state
        ON calendar_events (sync_state)
    """)

    op.execute("""
        CREATE TABLE IF NOT EXISTS outbox_jobs (
            id UUID PRIMARY KEY,
            operation TEXT NOT NULL,
            status TEXT NOT NULL DEFAULT 'QUEUED',
            attempts INTEGER NOT NULL DEFAULT 0,
            next_retry_at TIMESTAMPTZ,
            last_error TEXT,
            event_local_id UUID REFERENCES calendar_events (local_id) ON DELETE SET NULL,
            payload JSONB NOT NULL DEFAULT '{}',
            depends_on_outbox_id UUID REFERENCES outbox_jobs (id) ON DELETE SET NULL,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            CONSTRAINT outbox_jobs_operation_check CHECK (
                operation IN (
                    'CREATE', 'PATCH', 'DELETE', 'RECUR_THIS', 'RECUR_ALL', 'RECUR_FUTURE'
                )
            ),
            CONSTRAINT outbox_jobs_status_check CHECK (
                status IN ('QUEUED', 'RUNNING', 'FAILED', 'DONE', 'CANCELLED')
            )
        )
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_outbox_jobs_due
        ON outbox_jobs (status, next_retry_at, created_at)
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_outbox_jobs_event_local_id
        ON outbox_jobs (event_local_id)
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_outbox_jobs_depends_on
        ON outbox_jobs (depends_on_outbox_id)
    """)

    op.execute("""
        CREATE TABLE IF NOT EXISTS sync_settings (
            id INTEGER PRIMARY KEY DEFAULT 1,
            sync_token TEXT,
            selected_calendar_id TEXT,
            selected_calendar_summary TEXT,
            sync_window_start TIMESTAMPTZ,
            sync_window_end TIMESTAMPTZ,
            unbounded_window BOOLEAN NOT NULL DEFAULT false,
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            CONSTRAINT sync_settings_singleton CHECK (id = 1)
        )
    """)


def downgrade() -> None:
    op.execute("DROP TABLE IF EXISTS sync_settings")
    op.execute("DROP TABLE IF EXISTS outbox_jobs")
    op.execute("DROP TABLE IF EXISTS calendar_events")
