"""Key orchestration progress by lease so finished runs stay immutable."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261019_0002"
down_revision = "20261019_0001"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "job_progress_runs",
        sa.Column("job_id", sa.String(), nullable=False),
        sa.Column("run", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("session_id", sa.String(), nullable=True),
        sa.Column("organization_id", sa.String(), nullable=False),
        sa.Column("attempt", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("state", sa.String(), nullable=False),
        sa.Column("percent", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("detail", sa.Text(), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("archived_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("job_id", "run"),
    )
    # Existing rows belong to the lease the job currently holds.
    op.execute(
        sa.text(
            """
            INSERT INTO job_progress_runs (
                job_id, run, session_id, organization_id, attempt,
                state, percent, detail, updated_at, archived_at
            )
            SELECT
                p.job_id,
                COALESCE((SELECT j.deliveries FROM jobs AS j WHERE j.job_id = p.job_id), 0),
                p.session_id, p.organization_id, p.attempt,
                p.state, p.percent, p.detail, p.updated_at, p.archived_at
            FROM job_progress AS p
            """,
        ),
    )
    op.drop_index("ix_job_progress_session_id", table_name="job_progress")
    op.drop_table("job_progress")
    op.rename_table("job_progress_runs", "job_progress")
    op.create_index("ix_job_progress_session_id", "job_progress", ["session_id"], unique=False)


def downgrade() -> None:
    op.create_table(
        "job_progress_latest",
        sa.Column("job_id", sa.String(), nullable=False),
        sa.Column("session_id", sa.String(), nullable=True),
        sa.Column("organization_id", sa.String(), nullable=False),
        sa.Column("attempt", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("state", sa.String(), nullable=False),
        sa.Column("percent", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("detail", sa.Text(), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("archived_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("job_id"),
    )
    # Keep only the newest run of each job.
    op.execute(
        sa.text(
            """
            INSERT INTO job_progress_latest (
                job_id, session_id, organization_id, attempt,
                state, percent, detail, updated_at, archived_at
            )
            SELECT
                job_id, session_id, organization_id, attempt,
                state, percent, detail, updated_at, archived_at
            FROM (
                SELECT
                    *,
                    ROW_NUMBER() OVER (PARTITION BY job_id ORDER BY run DESC) AS rn
                FROM job_progress
            )
            WHERE rn = 1
            """,
        ),
    )
    op.drop_index("ix_job_progress_session_id", table_name="job_progress")
    op.drop_table("job_progress")
    op.rename_table("job_progress_latest", "job_progress")
    op.create_index("ix_job_progress_session_id", "job_progress", ["session_id"], unique=False)
