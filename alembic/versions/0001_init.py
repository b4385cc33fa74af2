"""matches, analysis, models, predictions

Revision ID: 0001
Revises:
Create Date: 2026-10-17 00:00:00.000000
"""
from alembic import op


revision = "0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.execute(
        """
        CREATE TABLE IF NOT EXISTS matches (
          id BIGINT PRIMARY KEY,
          home_team TEXT NOT NULL,
          away_team TEXT NOT NULL,
          home_team_id BIGINT,
          away_team_id BIGINT,
          competition TEXT,
          competition_id INTEGER,
          kickoff TIMESTAMPTZ NOT NULL,
          status VARCHAR(16) NOT NULL DEFAULT 'scheduled'
            CHECK (status IN ('scheduled', 'live', 'finished', 'postponed', 'cancelled')),
          home_score INTEGER,
          away_score INTEGER,
          quota_home SMALLINT,
          quota_draw SMALLINT,
          quota_away SMALLINT,
          settled_at TIMESTAMPTZ,
          created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
          updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
        """
    )
    op.execute("CREATE INDEX IF NOT EXISTS idx_matches_status_kickoff ON matches(status, kickoff)")

    op.execute(
        """
        CREATE TABLE IF NOT EXISTS match_analysis (
          match_id BIGINT PRIMARY KEY REFERENCES matches(id) ON DELETE CASCADE,
          home_win_pct DOUBLE PRECISION,
          draw_pct DOUBLE PRECISION,
          away_win_pct DOUBLE PRECISION,
          odds_home DOUBLE PRECISION,
          odds_draw DOUBLE PRECISION,
          odds_away DOUBLE PRECISION,
          h2h_summary TEXT,
          advice TEXT,
          raw JSONB NOT NULL DEFAULT '{}'::jsonb,
          fetched_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
        """
    )

    op.execute(
        """
        CREATE TABLE IF NOT EXISTS models (
          id TEXT PRIMARY KEY,
          backend VARCHAR(20) NOT NULL,
          display_name TEXT,
          tier VARCHAR(20),
          active BOOLEAN NOT NULL DEFAULT true,
          auto_disabled BOOLEAN NOT NULL DEFAULT false,
          consecutive_failures INTEGER NOT NULL DEFAULT 0,
          last_failure_at TIMESTAMPTZ,
          last_success_at TIMESTAMPTZ,
          failure_reason TEXT,
          created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
          updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
        """
    )

    op.execute(
        """
        CREATE TABLE IF NOT EXISTS predictions (
          match_id BIGINT NOT NULL REFERENCES matches(id) ON DELETE CASCADE,
          model_id TEXT NOT NULL REFERENCES models(id),
          predicted_home INTEGER NOT NULL CHECK (predicted_home BETWEEN 0 AND 20),
          predicted_away INTEGER NOT NULL CHECK (predicted_away BETWEEN 0 AND 20),
          used_fallback BOOLEAN NOT NULL DEFAULT false,
          served_by TEXT,
          relative_cost DOUBLE PRECISION NOT NULL DEFAULT 1.0,
          cost_usd NUMERIC(12,6) NOT NULL DEFAULT 0,
          raw_response TEXT,
          status VARCHAR(16) NOT NULL DEFAULT 'pending',
          points INTEGER,
          tendency_points INTEGER,
          goal_diff_bonus INTEGER,
          exact_score_bonus INTEGER,
          created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
          scored_at TIMESTAMPTZ,
          PRIMARY KEY (match_id, model_id)
        )
        """
    )
    op.execute("CREATE INDEX IF NOT EXISTS idx_predictions_model ON predictions(model_id, status)")

    op.execute(
        """
        CREATE TABLE IF NOT EXISTS api_cache (
          cache_key TEXT PRIMARY KEY,
          payload JSONB NOT NULL DEFAULT '{}'::jsonb,
          expires_at TIMESTAMPTZ NOT NULL,
          created_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
        """
    )


def downgrade():
    op.execute("DROP TABLE IF EXISTS api_cache")
    op.execute("DROP TABLE IF EXISTS predictions")
    op.execute("DROP TABLE IF EXISTS models")
    op.execute("DROP TABLE IF EXISTS match_analysis")
    op.execute("DROP TABLE IF EXISTS matches")
