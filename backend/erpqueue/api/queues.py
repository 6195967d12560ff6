from __future__ import annotations

import json
import re
from typing import Any

import sqlalchemy as sa
from fastapi import APIRouter, Request

from erpqueue.core.errors import ApiError, ErrorCode
from erpqueue.core.request_id import get_or_create_request_id
from erpqueue.db.models.jobs import JobRow
from erpqueue.db.session import create_sessionmaker, with_sqlite_busy_retry
from erpqueue.jobs.store import QueueStore

router = APIRouter()

_TOPIC_RE = re.compile(r"[A-Za-z0-9][A-Za-z0-9_.-]{0,63}")
_ALLOWED_STATES = {"waiting", "delayed", "active", "completed", "failed"}


def _store(request: Request) -> QueueStore:
    return request.app.state.store


def _require_topic(topic: str) -> str:
    topic = (topic or "").strip()
    if not _TOPIC_RE.fullmatch(topic):
        raise ApiError(code=ErrorCode.BAD_REQUEST, message="Invalid topic", status_code=400, details={"topic": topic})
    return topic


def _decode(raw: str | None) -> Any:
    if raw is None:
        return None
    try:
        return json.loads(raw)
    except ValueError:
        return raw


def _job_out(row: dict[str, Any]) -> dict[str, Any]:
    return {
        "id": str(row.get("id")),
        "topic": row.get("topic"),
        "kind": row.get("kind"),
        "state": row.get("state"),
        "attempts_made": int(row.get("attempts_made") or 0),
        "max_attempts": int(row.get("max_attempts") or 0),
        "backoff": {"type": row.get("backoff_type"), "base_delay_ms": int(row.get("backoff_delay_ms") or 0)},
        "not_before": row.get("not_before"),
        "owner": row.get("owner"),
        "locked_at": row.get("locked_at"),
        "last_error": row.get("last_error"),
        "result": _decode(row.get("result_json")),
        "payload": _decode(row.get("payload_json")),
        "created_at": row.get("created_at"),
        "updated_at": row.get("updated_at"),
    }


def _parse_job_id(job_id: str) -> int:
    raw = (job_id or "").strip()
    if not raw.isdigit() or int(raw) <= 0:
        raise ApiError(code=ErrorCode.BAD_REQUEST, message="Invalid job_id", status_code=400)
    return int(raw)


@router.get("/queues/{topic}/stats")
async def topic_stats(topic: str, request: Request) -> dict[str, Any]:
    topic = _require_topic(topic)
    counts = await _store(request).stats(topic)
    return {"ok": True, "topic": topic, "counts": counts, "request_id": get_or_create_request_id(request)}


@router.get("/queues/{topic}/jobs")
async def list_topic_jobs(
    topic: str,
    request: Request,
    state: str | None = None,
    limit: int = 50,
    cursor: str | None = None,
) -> dict[str, Any]:
    topic = _require_topic(topic)
    if limit < 1 or limit > 200:
        raise ApiError(code=ErrorCode.BAD_REQUEST, message="Unsupported limit", status_code=400)

    cursor_i: int | None = None
    cursor_raw = (cursor or "").strip()
    if cursor_raw:
        cursor_i = _parse_job_id(cursor_raw)

    state_norm = (state or "").strip().lower() or None
    if state_norm is not None and state_norm not in _ALLOWED_STATES:
        raise ApiError(code=ErrorCode.BAD_REQUEST, message="Unsupported state", status_code=400)

    Session = create_sessionmaker(_store(request).engine)
    stmt = sa.select(JobRow).where(JobRow.topic == topic).order_by(JobRow.id.desc()).limit(limit + 1)
    if cursor_i is not None:
        stmt = stmt.where(JobRow.id < cursor_i)
    if state_norm is not None:
        stmt = stmt.where(JobRow.state == state_norm)

    async def _op() -> list[JobRow]:
        async with Session() as session:
            return list((await session.execute(stmt)).scalars().all())

    rows = await with_sqlite_busy_retry(_op)
    next_cursor = str(rows[limit - 1].id) if len(rows) > limit else None
    items = [
        _job_out({c.name: getattr(r, c.key) for c in JobRow.__table__.columns})
        for r in rows[:limit]
    ]
    return {"ok": True, "items": items, "next_cursor": next_cursor, "request_id": get_or_create_request_id(request)}


@router.get("/jobs/{job_id}")
async def get_job(job_id: str, request: Request) -> dict[str, Any]:
    job_id_i = _parse_job_id(job_id)
    row = await _store(request).get_job(job_id_i)
    if row is None:
        raise ApiError(code=ErrorCode.NOT_FOUND, message="Job not found", status_code=404)
    return {"ok": True, "job": _job_out(row), "request_id": get_or_create_request_id(request)}


@router.post("/jobs/{job_id}/retry")
async def retry_job(job_id: str, request: Request) -> dict[str, Any]:
    job_id_i = _parse_job_id(job_id)
    store = _store(request)
    row = await store.get_job(job_id_i)
    if row is None:
        raise ApiError(code=ErrorCode.NOT_FOUND, message="Job not found", status_code=404)
    if not await store.retry_failed(job_id_i):
        raise ApiError(
            code=ErrorCode.CONFLICT,
            message="Only failed jobs can be retried",
            status_code=409,
            details={"state": row.get("state")},
        )
    return {"ok": True, "job_id": str(job_id_i), "state": "waiting", "request_id": get_or_create_request_id(request)}
