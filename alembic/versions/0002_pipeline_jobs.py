"""pipeline job queue and periodic run history

Revision ID: 0002_pipeline_jobs
Revises: 0001
Create Date: 2026-10-17
"""

from alembic import op


revision = "0002_pipeline_jobs"
down_revision = "0001"
branch_labels = None
depends_on = None


def upgrade():
    op.execute(
        """
        CREATE TABLE IF NOT EXISTS pipeline_jobs (
          id TEXT PRIMARY KEY,
          job_type VARCHAR(20) NOT NULL
            CHECK (job_type IN ('analysis', 'predictions', 'live-monitor', 'settlement', 'backfill')),
          match_id BIGINT,
          payload JSONB NOT NULL DEFAULT '{}'::jsonb,
          status VARCHAR(16) NOT NULL DEFAULT 'pending'
            CHECK (status IN ('pending', 'running', 'retry', 'completed', 'dead')),
          run_at TIMESTAMPTZ NOT NULL,
          attempts INTEGER NOT NULL DEFAULT 0,
          max_attempts INTEGER NOT NULL DEFAULT 5,
          locked_until TIMESTAMPTZ,
          started_at TIMESTAMPTZ,
          finished_at TIMESTAMPTZ,
          dead_at TIMESTAMPTZ,
          last_error TEXT,
          result JSONB,
          created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
          updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
        """
    )
    op.execute(
        """
        CREATE INDEX IF NOT EXISTS idx_pipeline_jobs_due
        ON pipeline_jobs(job_type, run_at)
        WHERE status IN ('pending', 'retry')
        """
    )
    op.execute("CREATE INDEX IF NOT EXISTS idx_pipeline_jobs_match ON pipeline_jobs(match_id)")
    op.execute(
        "CREATE INDEX IF NOT EXISTS idx_pipeline_jobs_running ON pipeline_jobs(locked_until) WHERE status = 'running'"
    )
    op.execute(
        "CREATE INDEX IF NOT EXISTS idx_pipeline_jobs_dead ON pipeline_jobs(dead_at DESC) WHERE status = 'dead'"
    )

    op.execute(
        """
        CREATE TABLE IF NOT EXISTS job_runs (
          id BIGSERIAL PRIMARY KEY,
          job_name TEXT NOT NULL,
          status VARCHAR(20) NOT NULL DEFAULT 'running',
          triggered_by TEXT,
          started_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
          finished_at TIMESTAMPTZ,
          error TEXT,
          meta JSONB NOT NULL DEFAULT '{}'::jsonb
        )
        """
    )
    op.execute("CREATE INDEX IF NOT EXISTS idx_job_runs_job_started ON job_runs(job_name, started_at DESC)")


def downgrade():
    op.execute("DROP TABLE IF EXISTS job_runs")
    op.execute("DROP TABLE IF EXISTS pipeline_jobs")
