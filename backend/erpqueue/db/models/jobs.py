from __future__ import annotations

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column

from erpqueue.db.models.base import Base


class JobRow(Base):
    __tablename__ = "jobs"
    __table_args__ = (
        sa.CheckConstraint(
            "state IN ('waiting','delayed','active','completed','failed')",
            name="ck_jobs_state",
        ),
        sa.CheckConstraint("max_attempts >= 1", name="ck_jobs_max_attempts"),
        sa.CheckConstraint("attempts_made <= max_attempts", name="ck_jobs_attempts_bounded"),
        sa.Index("idx_jobs_topic_state_id", "topic", "state", "id"),
        sa.Index("idx_jobs_topic_not_before", "topic", "not_before"),
    )

    id: Mapped[int] = mapped_column(sa.Integer(), primary_key=True, autoincrement=True)
    created_at: Mapped[str] = mapped_column(sa.Text(), nullable=False)
    updated_at: Mapped[str] = mapped_column(sa.Text(), nullable=False)

    topic: Mapped[str] = mapped_column(sa.Text(), nullable=False)
    kind: Mapped[str] = mapped_column(sa.Text(), nullable=False)
    payload_json: Mapped[str] = mapped_column(sa.Text(), nullable=False)

    state: Mapped[str] = mapped_column(sa.Text(), nullable=False, server_default=sa.text("'waiting'"))
    attempts_made: Mapped[int] = mapped_column(sa.Integer(), nullable=False, server_default=sa.text("0"))
    max_attempts: Mapped[int] = mapped_column(sa.Integer(), nullable=False, server_default=sa.text("1"))
    backoff_type: Mapped[str] = mapped_column(sa.Text(), nullable=False, server_default=sa.text("'none'"))
    backoff_delay_ms: Mapped[int] = mapped_column(sa.Integer(), nullable=False, server_default=sa.text("0"))
    not_before: Mapped[str] = mapped_column(sa.Text(), nullable=False)

    owner: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    locked_at: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)

    last_error: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    result_json: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
