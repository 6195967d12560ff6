from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Any

from sqlalchemy.ext.asyncio import AsyncEngine

from erpqueue.jobs.claim import DEFAULT_VISIBILITY_TIMEOUT_S, claim_next_job, renew_job_lock, requeue_stale_jobs
from erpqueue.jobs.enqueue import enqueue_job
from erpqueue.jobs.executor import ack_failure, ack_success
from erpqueue.jobs.model import job_from_row
from erpqueue.jobs.policies import JobOptions
from erpqueue.jobs.stats import get_job, prune_finished_jobs, queue_stats, retry_failed_job


class TopicNotifier:
    """In-process wakeups so idle workers do not wait out a full poll interval."""

    def __init__(self) -> None:
        self._events: dict[str, asyncio.Event] = {}

    def _event(self, topic: str) -> asyncio.Event:
        event = self._events.get(topic)
        if event is None:
            event = asyncio.Event()
            self._events[topic] = event
        return event

    def notify(self, topic: str) -> None:
        self._event(topic).set()

    async def wait(self, topic: str, timeout: float) -> bool:
        event = self._event(topic)
        try:
            await asyncio.wait_for(event.wait(), timeout=max(0.0, float(timeout)))
        except asyncio.TimeoutError:
            return False
        event.clear()
        return True


class QueueStore:
    def __init__(self, engine: AsyncEngine, *, notifier: TopicNotifier | None = None) -> None:
        self.engine = engine
        self.notifier = notifier or TopicNotifier()

    async def enqueue(
        self,
        topic: str,
        kind: str,
        payload: Any,
        options: JobOptions,
        *,
        now: datetime | None = None,
    ) -> int:
        job_id = await enqueue_job(self.engine, topic=topic, kind=kind, payload=payload, options=options, now=now)
        self.notifier.notify(topic)
        return job_id

    async def claim_next(self, topic: str, worker_id: str, *, now: datetime | None = None) -> dict[str, Any] | None:
        return await claim_next_job(self.engine, topic=topic, worker_id=worker_id, now=now)

    async def ack_success(
        self,
        job_row: dict[str, Any],
        worker_id: str,
        result: Any = None,
        *,
        now: datetime | None = None,
    ) -> bool:
        transition = await ack_success(self.engine, job_from_row(job_row), worker_id=worker_id, result=result, now=now)
        return transition is not None

    async def ack_failure(
        self,
        job_row: dict[str, Any],
        worker_id: str,
        error: str,
        *,
        permanent: bool = False,
        now: datetime | None = None,
    ) -> bool:
        transition = await ack_failure(
            self.engine,
            job_from_row(job_row),
            worker_id=worker_id,
            error=error,
            permanent=permanent,
            now=now,
        )
        if transition is not None and not transition.state.is_terminal:
            self.notifier.notify(str(job_row.get("topic") or ""))
        return transition is not None

    async def renew_lease(self, job_id: int, worker_id: str, *, now: datetime | None = None) -> bool:
        return await renew_job_lock(self.engine, job_id=job_id, worker_id=worker_id, now=now)

    async def requeue_stale(
        self,
        topic: str,
        visibility_timeout_s: int = DEFAULT_VISIBILITY_TIMEOUT_S,
        *,
        now: datetime | None = None,
    ) -> tuple[int, int]:
        requeued, failed = await requeue_stale_jobs(
            self.engine, topic=topic, visibility_timeout_s=visibility_timeout_s, now=now
        )
        if requeued:
            self.notifier.notify(topic)
        return requeued, failed

    async def stats(self, topic: str, *, now: datetime | None = None) -> dict[str, int]:
        return await queue_stats(self.engine, topic=topic, now=now)

    async def prune(self, topic: str, keep_completed: int, keep_failed: int) -> int:
        return await prune_finished_jobs(
            self.engine, topic=topic, keep_completed=keep_completed, keep_failed=keep_failed
        )

    async def get_job(self, job_id: int) -> dict[str, Any] | None:
        return await get_job(self.engine, job_id=job_id)

    async def retry_failed(self, job_id: int, *, now: datetime | None = None) -> bool:
        row = await get_job(self.engine, job_id=job_id)
        ok = await retry_failed_job(self.engine, job_id=job_id, now=now)
        if ok and row is not None:
            self.notifier.notify(str(row.get("topic") or ""))
        return ok
