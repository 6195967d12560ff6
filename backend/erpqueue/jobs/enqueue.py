from __future__ import annotations

import json
from datetime import datetime
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine

from erpqueue.core.logging import get_logger
from erpqueue.core.metrics import JOBS_ENQUEUED_TOTAL
from erpqueue.core.time import iso_after_ms, iso_utc_ms, utc_now
from erpqueue.db.models.jobs import JobRow
from erpqueue.db.session import create_sessionmaker, with_sqlite_busy_retry
from erpqueue.jobs.errors import QueueUnavailableError
from erpqueue.jobs.model import JobState
from erpqueue.jobs.policies import JobOptions

log = get_logger(__name__)


def _encode_payload(payload: Any) -> str:
    try:
        return json.dumps(payload, ensure_ascii=False, separators=(",", ":"), default=str, allow_nan=False)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"payload is not JSON serializable: {exc}") from exc


async def enqueue_job(
    engine: AsyncEngine,
    *,
    topic: str,
    kind: str,
    payload: Any,
    options: JobOptions,
    now: datetime | None = None,
) -> int:
    topic = (topic or "").strip()
    kind = (kind or "").strip()
    if not topic:
        raise ValueError("topic is required")
    if not kind:
        raise ValueError("kind is required")

    payload_json = _encode_payload(payload)
    now_dt = now or utc_now()
    now_s = iso_utc_ms(now_dt)
    delay_ms = int(options.delay_ms)
    Session = create_sessionmaker(engine)

    async def _op() -> int:
        async with Session() as session:
            row = JobRow(
                topic=topic,
                kind=kind,
                payload_json=payload_json,
                state=(JobState.DELAYED if delay_ms > 0 else JobState.WAITING).value,
                attempts_made=0,
                max_attempts=int(options.max_attempts),
                backoff_type=options.backoff.type,
                backoff_delay_ms=int(options.backoff.base_delay_ms),
                not_before=iso_after_ms(now_dt, delay_ms) if delay_ms > 0 else now_s,
                created_at=now_s,
                updated_at=now_s,
            )
            session.add(row)
            await session.flush()
            job_id = int(row.id)
            await session.commit()
            return job_id

    try:
        job_id = await with_sqlite_busy_retry(_op)
    except SQLAlchemyError as exc:
        log.error("job_enqueue_failed topic=%s kind=%s err=%s", topic, kind, f"{type(exc).__name__}: {exc}")
        raise QueueUnavailableError(f"could not persist {topic}/{kind} job") from exc

    JOBS_ENQUEUED_TOTAL.labels(topic=topic).inc()
    log.info("job_enqueued topic=%s kind=%s id=%s delay_ms=%s", topic, kind, job_id, delay_ms)
    return job_id
