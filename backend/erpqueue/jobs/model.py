from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any

from erpqueue.core.redact import redact_text
from erpqueue.core.time import iso_after_ms, iso_utc_ms, utc_now
from erpqueue.jobs.backoff import BackoffPolicy, backoff_ms

MAX_ERROR_LEN = 2000


class JobState(str, Enum):
    WAITING = "waiting"
    DELAYED = "delayed"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobState.COMPLETED, JobState.FAILED)


@dataclass(frozen=True, slots=True)
class Job:
    id: int
    topic: str
    kind: str
    state: JobState
    attempts_made: int
    max_attempts: int
    backoff: BackoffPolicy
    not_before: str | None = None
    owner: str | None = None
    last_error: str | None = None


@dataclass(frozen=True, slots=True)
class JobTransition:
    state: JobState
    attempts_made: int
    not_before: str | None
    last_error: str | None
    result_json: str | None
    updated_at: str


def _as_int(value: Any, *, default: int = 0) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def job_from_row(row: dict[str, Any]) -> Job:
    return Job(
        id=_as_int(row.get("id")),
        topic=str(row.get("topic") or ""),
        kind=str(row.get("kind") or ""),
        state=JobState(str(row.get("state") or JobState.ACTIVE.value)),
        attempts_made=_as_int(row.get("attempts_made")),
        max_attempts=max(1, _as_int(row.get("max_attempts"), default=1)),
        backoff=BackoffPolicy(
            type=str(row.get("backoff_type") or "none"),  # type: ignore[arg-type]
            base_delay_ms=_as_int(row.get("backoff_delay_ms")),
        ),
        not_before=row.get("not_before"),
        owner=row.get("owner"),
        last_error=row.get("last_error"),
    )


def format_error(error: str) -> str:
    text = redact_text(str(error or ""))
    if len(text) <= MAX_ERROR_LEN:
        return text
    return text[: MAX_ERROR_LEN - 3] + "..."


def on_job_success(job: Job, *, result_json: str | None = None, now: datetime | None = None) -> JobTransition:
    now_dt = now or utc_now()
    return JobTransition(
        state=JobState.COMPLETED,
        attempts_made=job.attempts_made,
        not_before=job.not_before,
        last_error=job.last_error,
        result_json=result_json,
        updated_at=iso_utc_ms(now_dt),
    )


def on_job_failure(
    job: Job,
    *,
    error: str,
    permanent: bool = False,
    now: datetime | None = None,
) -> JobTransition:
    """Retry/backoff decision for an attempt that has just failed.

    ``job.attempts_made`` already counts the failed attempt (it is incremented
    at claim time). While attempts remain the job is delayed by the backoff
    policy; otherwise, or when the failure is permanent, it becomes terminal.
    """
    now_dt = now or utc_now()
    message = format_error(error)

    if permanent or job.attempts_made >= job.max_attempts:
        return JobTransition(
            state=JobState.FAILED,
            attempts_made=job.attempts_made,
            not_before=job.not_before,
            last_error=message,
            result_json=None,
            updated_at=iso_utc_ms(now_dt),
        )

    delay = backoff_ms(job.backoff, job.attempts_made)
    return JobTransition(
        state=JobState.DELAYED if delay > 0 else JobState.WAITING,
        attempts_made=job.attempts_made,
        not_before=iso_after_ms(now_dt, delay),
        last_error=message,
        result_json=None,
        updated_at=iso_utc_ms(now_dt),
    )
