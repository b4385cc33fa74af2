"""circuit breaker mirror and per-model daily usage

Revision ID: 0003_resilience_state
Revises: 0002_pipeline_jobs
Create Date: 2026-10-17
"""

from alembic import op


revision = "0003_resilience_state"
down_revision = "0002_pipeline_jobs"
branch_labels = None
depends_on = None


def upgrade():
    op.execute(
        """
        CREATE TABLE IF NOT EXISTS circuit_breaker_states (
          service TEXT PRIMARY KEY,
          state VARCHAR(16) NOT NULL DEFAULT 'closed'
            CHECK (state IN ('closed', 'open', 'half-open')),
          failures INTEGER NOT NULL DEFAULT 0,
          successes INTEGER NOT NULL DEFAULT 0,
          last_failure_at TIMESTAMPTZ,
          last_state_change TIMESTAMPTZ,
          total_failures BIGINT NOT NULL DEFAULT 0,
          total_successes BIGINT NOT NULL DEFAULT 0,
          updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
        """
    )
    op.execute(
        """
        CREATE TABLE IF NOT EXISTS model_usage (
          date DATE NOT NULL,
          model_id TEXT NOT NULL,
          predictions_count INTEGER NOT NULL DEFAULT 0,
          total_cost NUMERIC(12,6) NOT NULL DEFAULT 0,
          updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
          PRIMARY KEY (date, model_id)
        )
        """
    )


def downgrade():
    op.execute("DROP TABLE IF EXISTS model_usage")
    op.execute("DROP TABLE IF EXISTS circuit_breaker_states")
