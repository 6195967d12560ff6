from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any

import sqlalchemy as sa
from sqlalchemy.ext.asyncio import AsyncEngine

from erpqueue.core.logging import get_logger
from erpqueue.core.metrics import JOBS_CLAIM_TOTAL, JOBS_FAILED_TOTAL, JOBS_RECLAIMED_TOTAL
from erpqueue.core.time import iso_utc_ms, utc_now
from erpqueue.db.session import with_sqlite_busy_retry

log = get_logger(__name__)

DEFAULT_VISIBILITY_TIMEOUT_S = 300

VISIBILITY_TIMEOUT_ERROR = "visibility timeout: worker {owner} held the job past {timeout_s}s"


def _claim_sql(dialect_name: str) -> str:
    # SQLite serializes writers, so the single UPDATE is already atomic across
    # processes; PostgreSQL needs row locks to keep concurrent claimers apart.
    lock_clause = "FOR UPDATE SKIP LOCKED" if dialect_name == "postgresql" else ""
    return f"""
UPDATE jobs
SET state='active',
    owner=:worker_id,
    locked_at=:now,
    attempts_made=attempts_made + 1,
    updated_at=:now
WHERE id IN (
  SELECT id
  FROM jobs
  WHERE topic=:topic
    AND state IN ('waiting','delayed')
    AND not_before <= :now
    AND attempts_made < max_attempts
  ORDER BY id ASC
  LIMIT 1
  {lock_clause}
)
RETURNING *;
""".strip()


async def claim_next_job(
    engine: AsyncEngine,
    *,
    topic: str,
    worker_id: str,
    now: datetime | None = None,
) -> dict[str, Any] | None:
    worker_id = (worker_id or "").strip()
    if not worker_id:
        raise ValueError("worker_id is required")

    now_s = iso_utc_ms(now or utc_now())
    sql = _claim_sql(engine.dialect.name)

    async def _op() -> dict[str, Any] | None:
        async with engine.begin() as conn:
            result = await conn.execute(sa.text(sql), {"topic": topic, "worker_id": worker_id, "now": now_s})
            row = result.mappings().first()
            return dict(row) if row else None

    job = await with_sqlite_busy_retry(_op)
    if job is not None:
        JOBS_CLAIM_TOTAL.labels(topic=topic).inc()
    return job


async def renew_job_lock(
    engine: AsyncEngine,
    *,
    job_id: int,
    worker_id: str,
    now: datetime | None = None,
) -> bool:
    now_s = iso_utc_ms(now or utc_now())

    sql = """
UPDATE jobs
SET locked_at=:now,
    updated_at=:now
WHERE id=:id AND owner=:worker_id AND state='active';
""".strip()

    async def _op() -> bool:
        async with engine.begin() as conn:
            result = await conn.execute(sa.text(sql), {"now": now_s, "id": int(job_id), "worker_id": worker_id})
            return (result.rowcount or 0) == 1

    return await with_sqlite_busy_retry(_op)


async def requeue_stale_jobs(
    engine: AsyncEngine,
    *,
    topic: str,
    visibility_timeout_s: int = DEFAULT_VISIBILITY_TIMEOUT_S,
    now: datetime | None = None,
) -> tuple[int, int]:
    """Visibility-timeout sweep for one topic.

    Jobs stuck ``active`` longer than the timeout are presumed abandoned by a
    crashed worker. Those with attempts left go back to ``waiting``; those that
    were on their last attempt are finalized ``failed`` so a redelivery never
    pushes ``attempts_made`` past ``max_attempts``.

    Returns ``(requeued, failed)``.
    """
    now_dt = now or utc_now()
    now_s = iso_utc_ms(now_dt)
    expired_before_s = iso_utc_ms(now_dt - timedelta(seconds=int(visibility_timeout_s)))

    select_sql = """
SELECT id, owner, attempts_made, max_attempts
FROM jobs
WHERE topic=:topic AND state='active' AND (locked_at IS NULL OR locked_at <= :expired_before);
""".strip()

    # Re-checks state and locked_at so a lease renewed in between is left alone.
    update_sql = """
UPDATE jobs
SET state=:state,
    owner=NULL,
    locked_at=NULL,
    not_before=:now,
    last_error=:last_error,
    updated_at=:now
WHERE id=:id AND state='active' AND (locked_at IS NULL OR locked_at <= :expired_before);
""".strip()

    async def _op() -> tuple[int, int]:
        requeued = 0
        failed = 0
        async with engine.begin() as conn:
            rows = (await conn.execute(sa.text(select_sql), {"topic": topic, "expired_before": expired_before_s})).all()
            for job_id, owner, attempts_made, max_attempts in rows:
                exhausted = int(attempts_made) >= int(max_attempts)
                result = await conn.execute(
                    sa.text(update_sql),
                    {
                        "state": "failed" if exhausted else "waiting",
                        "now": now_s,
                        "last_error": VISIBILITY_TIMEOUT_ERROR.format(owner=owner, timeout_s=int(visibility_timeout_s)),
                        "id": int(job_id),
                        "expired_before": expired_before_s,
                    },
                )
                if (result.rowcount or 0) != 1:
                    continue
                if exhausted:
                    failed += 1
                else:
                    requeued += 1
                log.warning(
                    "job_lease_expired topic=%s id=%s owner=%s attempt=%s/%s action=%s",
                    topic,
                    job_id,
                    owner,
                    attempts_made,
                    max_attempts,
                    "failed" if exhausted else "requeued",
                )
        return requeued, failed

    requeued, failed = await with_sqlite_busy_retry(_op)
    if requeued:
        JOBS_RECLAIMED_TOTAL.labels(topic=topic).inc(requeued)
    if failed:
        JOBS_FAILED_TOTAL.labels(topic=topic, final="true").inc(failed)
    return requeued, failed
