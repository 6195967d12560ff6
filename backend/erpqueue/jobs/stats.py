from __future__ import annotations

from datetime import datetime
from typing import Any

import sqlalchemy as sa
from sqlalchemy.ext.asyncio import AsyncEngine

from erpqueue.core.logging import get_logger
from erpqueue.core.metrics import JOB_STATES, JOBS_PRUNED_TOTAL
from erpqueue.core.time import iso_utc_ms, utc_now
from erpqueue.db.session import with_sqlite_busy_retry

log = get_logger(__name__)

STATS_KEYS: tuple[str, ...] = ("waiting", "active", "completed", "failed", "delayed")


async def queue_stats(engine: AsyncEngine, *, topic: str, now: datetime | None = None) -> dict[str, int]:
    """Per-state counts for one topic from a single consistent read.

    A ``delayed`` job whose ``not_before`` has passed is claimable, so it is
    reported as ``waiting``.
    """
    now_s = iso_utc_ms(now or utc_now())

    sql = """
SELECT
  CASE WHEN state='delayed' AND not_before <= :now THEN 'waiting' ELSE state END AS bucket,
  COUNT(*) AS n
FROM jobs
WHERE topic=:topic
GROUP BY bucket;
""".strip()

    async def _op() -> dict[str, int]:
        async with engine.connect() as conn:
            rows = (await conn.execute(sa.text(sql), {"topic": topic, "now": now_s})).all()
        counts = {k: 0 for k in STATS_KEYS}
        for bucket, n in rows:
            if bucket in counts:
                counts[bucket] = int(n or 0)
        return counts

    return await with_sqlite_busy_retry(_op)


async def prune_finished_jobs(
    engine: AsyncEngine,
    *,
    topic: str,
    keep_completed: int,
    keep_failed: int,
) -> int:
    """Deletes the oldest completed/failed jobs beyond the retention counts."""
    sql = """
DELETE FROM jobs
WHERE topic=:topic
  AND state=:state
  AND id NOT IN (
    SELECT id FROM jobs
    WHERE topic=:topic AND state=:state
    ORDER BY updated_at DESC, id DESC
    LIMIT :keep
  );
""".strip()

    async def _op() -> int:
        deleted = 0
        async with engine.begin() as conn:
            for state, keep in (("completed", keep_completed), ("failed", keep_failed)):
                result = await conn.execute(
                    sa.text(sql),
                    {"topic": topic, "state": state, "keep": max(0, int(keep))},
                )
                deleted += int(result.rowcount or 0)
        return deleted

    deleted = await with_sqlite_busy_retry(_op)
    if deleted:
        JOBS_PRUNED_TOTAL.labels(topic=topic).inc(deleted)
        log.info("jobs_pruned topic=%s deleted=%s", topic, deleted)
    return deleted


async def get_job(engine: AsyncEngine, *, job_id: int) -> dict[str, Any] | None:
    async def _op() -> dict[str, Any] | None:
        async with engine.connect() as conn:
            row = (
                await conn.execute(sa.text("SELECT * FROM jobs WHERE id=:id;"), {"id": int(job_id)})
            ).mappings().first()
        return dict(row) if row else None

    return await with_sqlite_busy_retry(_op)


async def retry_failed_job(engine: AsyncEngine, *, job_id: int, now: datetime | None = None) -> bool:
    """Operator re-enqueue of a failed job with a fresh attempt budget."""
    now_s = iso_utc_ms(now or utc_now())

    sql = """
UPDATE jobs
SET state='waiting',
    attempts_made=0,
    not_before=:now,
    last_error=NULL,
    result_json=NULL,
    owner=NULL,
    locked_at=NULL,
    updated_at=:now
WHERE id=:id AND state='failed';
""".strip()

    async def _op() -> bool:
        async with engine.begin() as conn:
            result = await conn.execute(sa.text(sql), {"id": int(job_id), "now": now_s})
            return (result.rowcount or 0) == 1

    ok = await with_sqlite_busy_retry(_op)
    if ok:
        log.info("job_retried id=%s", int(job_id))
    return ok


async def all_state_counts(engine: AsyncEngine, *, topics: tuple[str, ...]) -> dict[str, dict[str, int]]:
    """Raw per-state counts (no due-delayed folding) for ``topics`` and any topic with rows."""
    sql = "SELECT topic, state, COUNT(*) FROM jobs GROUP BY topic, state;"

    async def _op() -> dict[str, dict[str, int]]:
        async with engine.connect() as conn:
            rows = (await conn.execute(sa.text(sql))).all()
        out = {t: {s: 0 for s in JOB_STATES} for t in topics}
        for topic, state, n in rows:
            by_state = out.setdefault(topic, {s: 0 for s in JOB_STATES})
            if state in by_state:
                by_state[state] = int(n or 0)
        return out

    return await with_sqlite_busy_retry(_op)
