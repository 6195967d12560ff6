from __future__ import annotations

import asyncio
import json
from datetime import datetime
from typing import Any

import sqlalchemy as sa
from sqlalchemy.ext.asyncio import AsyncEngine

from erpqueue.core.logging import get_logger
from erpqueue.core.metrics import JOBS_COMPLETED_TOTAL, JOBS_FAILED_TOTAL
from erpqueue.core.time import iso_utc_ms, utc_now
from erpqueue.db.session import with_sqlite_busy_retry
from erpqueue.jobs.claim import renew_job_lock
from erpqueue.jobs.dispatch import JobRegistry
from erpqueue.jobs.errors import JobPermanentError
from erpqueue.jobs.model import Job, JobState, JobTransition, job_from_row, on_job_failure, on_job_success

log = get_logger(__name__)

_ACK_SQL = """
UPDATE jobs
SET state=:state,
    not_before=:not_before,
    last_error=:last_error,
    result_json=:result_json,
    owner=NULL,
    locked_at=NULL,
    updated_at=:updated_at
WHERE id=:id AND state='active' AND owner=:worker_id;
""".strip()

_RELEASE_SQL = """
UPDATE jobs
SET state='waiting',
    attempts_made=CASE WHEN attempts_made > 0 THEN attempts_made - 1 ELSE 0 END,
    not_before=:now,
    owner=NULL,
    locked_at=NULL,
    updated_at=:now
WHERE id=:id AND state='active' AND owner=:worker_id;
""".strip()


async def apply_transition(
    engine: AsyncEngine,
    *,
    job_id: int,
    worker_id: str,
    transition: JobTransition,
) -> bool:
    """Writes a transition only while ``worker_id`` still owns the active job."""

    async def _op() -> bool:
        async with engine.begin() as conn:
            result = await conn.execute(
                sa.text(_ACK_SQL),
                {
                    "state": transition.state.value,
                    "not_before": transition.not_before,
                    "last_error": transition.last_error,
                    "result_json": transition.result_json,
                    "updated_at": transition.updated_at,
                    "id": int(job_id),
                    "worker_id": worker_id,
                },
            )
            return (result.rowcount or 0) == 1

    return await with_sqlite_busy_retry(_op)


def _encode_result(result: Any) -> str | None:
    if result is None:
        return None
    try:
        return json.dumps(result, ensure_ascii=False, separators=(",", ":"), default=str)
    except (TypeError, ValueError):
        return json.dumps(str(result), ensure_ascii=False)


async def ack_success(
    engine: AsyncEngine,
    job: Job,
    *,
    worker_id: str,
    result: Any = None,
    now: datetime | None = None,
) -> JobTransition | None:
    transition = on_job_success(job, result_json=_encode_result(result), now=now)
    ok = await apply_transition(engine, job_id=job.id, worker_id=worker_id, transition=transition)
    if not ok:
        log.warning("job_ack_stale topic=%s id=%s worker=%s", job.topic, job.id, worker_id)
        return None
    JOBS_COMPLETED_TOTAL.labels(topic=job.topic).inc()
    return transition


async def ack_failure(
    engine: AsyncEngine,
    job: Job,
    *,
    worker_id: str,
    error: str,
    permanent: bool = False,
    now: datetime | None = None,
) -> JobTransition | None:
    transition = on_job_failure(job, error=error, permanent=permanent, now=now)
    ok = await apply_transition(engine, job_id=job.id, worker_id=worker_id, transition=transition)
    if not ok:
        log.warning("job_ack_stale topic=%s id=%s worker=%s", job.topic, job.id, worker_id)
        return None
    final = transition.state == JobState.FAILED
    JOBS_FAILED_TOTAL.labels(topic=job.topic, final="true" if final else "false").inc()
    return transition


async def release_claim(engine: AsyncEngine, job: Job, *, worker_id: str, now: datetime | None = None) -> bool:
    """Hands an interrupted job back to the queue and refunds its attempt."""
    now_s = iso_utc_ms(now or utc_now())

    async def _op() -> bool:
        async with engine.begin() as conn:
            result = await conn.execute(
                sa.text(_RELEASE_SQL),
                {"now": now_s, "id": int(job.id), "worker_id": worker_id},
            )
            return (result.rowcount or 0) == 1

    released = await with_sqlite_busy_retry(_op)
    log.warning("job_released topic=%s id=%s worker=%s released=%s", job.topic, job.id, worker_id, released)
    return released


async def _keep_lease(engine: AsyncEngine, job: Job, *, worker_id: str, interval_s: float) -> None:
    while True:
        await asyncio.sleep(interval_s)
        try:
            renewed = await renew_job_lock(engine, job_id=job.id, worker_id=worker_id)
        except Exception as exc:
            log.warning("job_lease_renew_failed id=%s err=%s", job.id, f"{type(exc).__name__}: {exc}")
            continue
        if not renewed:
            log.warning("job_lease_lost topic=%s id=%s worker=%s", job.topic, job.id, worker_id)
            return


async def execute_claimed_job(
    engine: AsyncEngine,
    registry: JobRegistry,
    *,
    job_row: dict[str, Any],
    worker_id: str,
    lease_renew_interval_s: float | None = None,
    now: datetime | None = None,
) -> JobTransition | None:
    """Runs the handler for a claimed job and acknowledges the outcome.

    Handler errors are converted into a failure transition and never raised.
    Returns ``None`` when the ack was rejected because the lease moved on.
    """
    worker_id = (worker_id or "").strip()
    if not worker_id:
        raise ValueError("worker_id is required")

    job = job_from_row(job_row)
    if job.id <= 0:
        raise ValueError("job_row.id is required")

    keeper: asyncio.Task | None = None
    if lease_renew_interval_s and lease_renew_interval_s > 0:
        keeper = asyncio.create_task(
            _keep_lease(engine, job, worker_id=worker_id, interval_s=float(lease_renew_interval_s))
        )

    log.info(
        "job_started topic=%s kind=%s id=%s attempt=%s/%s worker=%s",
        job.topic,
        job.kind,
        job.id,
        job.attempts_made,
        job.max_attempts,
        worker_id,
    )
    try:
        result = await registry.dispatch(job_row)
    except JobPermanentError as exc:
        error = f"{type(exc).__name__}: {exc}"
        log.error("job_failed_permanently topic=%s kind=%s id=%s err=%s", job.topic, job.kind, job.id, error)
        return await ack_failure(engine, job, worker_id=worker_id, error=error, permanent=True, now=now)
    except asyncio.CancelledError:
        try:
            await asyncio.shield(release_claim(engine, job, worker_id=worker_id))
        except Exception as exc:
            log.error("job_release_failed id=%s err=%s", job.id, f"{type(exc).__name__}: {exc}")
        raise
    except Exception as exc:
        error = f"{type(exc).__name__}: {exc}"
        log.warning(
            "job_failed topic=%s kind=%s id=%s attempt=%s/%s err=%s",
            job.topic,
            job.kind,
            job.id,
            job.attempts_made,
            job.max_attempts,
            error,
        )
        return await ack_failure(engine, job, worker_id=worker_id, error=error, now=now)
    else:
        log.info("job_completed topic=%s kind=%s id=%s", job.topic, job.kind, job.id)
        return await ack_success(engine, job, worker_id=worker_id, result=result, now=now or utc_now())
    finally:
        if keeper is not None:
            keeper.cancel()
            await asyncio.gather(keeper, return_exceptions=True)
