from __future__ import annotations

from alembic import op
import sqlalchemy as sa

revision = "20261019_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "jobs",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("created_at", sa.Text(), nullable=False),
        sa.Column("updated_at", sa.Text(), nullable=False),
        sa.Column("topic", sa.Text(), nullable=False),
        sa.Column("kind", sa.Text(), nullable=False),
        sa.Column("payload_json", sa.Text(), nullable=False),
        sa.Column("state", sa.Text(), nullable=False, server_default=sa.text("'waiting'")),
        sa.Column("attempts_made", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("max_attempts", sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.Column("backoff_type", sa.Text(), nullable=False, server_default=sa.text("'none'")),
        sa.Column("backoff_delay_ms", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("not_before", sa.Text(), nullable=False),
        sa.Column("owner", sa.Text(), nullable=True),
        sa.Column("locked_at", sa.Text(), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("result_json", sa.Text(), nullable=True),
        sa.CheckConstraint(
            "state IN ('waiting','delayed','active','completed','failed')",
            name="ck_jobs_state",
        ),
        sa.CheckConstraint("max_attempts >= 1", name="ck_jobs_max_attempts"),
        sa.CheckConstraint("attempts_made <= max_attempts", name="ck_jobs_attempts_bounded"),
    )
    op.create_index("idx_jobs_topic_state_id", "jobs", ["topic", "state", "id"])
    op.create_index("idx_jobs_topic_not_before", "jobs", ["topic", "not_before"])


def downgrade() -> None:
    op.drop_index("idx_jobs_topic_not_before", table_name="jobs")
    op.drop_index("idx_jobs_topic_state_id", table_name="jobs")
    op.drop_table("jobs")
