from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncEngine

from erpqueue.core.config import TOPICS
from erpqueue.core.errors import ErrorCode, error_body
from erpqueue.core.request_id import get_or_create_request_id
from erpqueue.jobs.stats import all_state_counts

router = APIRouter()


async def _check_db(engine: AsyncEngine) -> bool:
    try:
        async with engine.connect() as conn:
            await conn.exec_driver_sql("SELECT 1")
        return True
    except Exception:
        return False


@router.get("/healthz")
async def healthz(request: Request) -> Any:
    rid = get_or_create_request_id(request)

    engine: AsyncEngine | None = getattr(request.app.state, "engine", None)
    db_ok = await _check_db(engine) if engine is not None else False
    if not db_ok:
        return JSONResponse(
            status_code=503,
            content=error_body(
                code=ErrorCode.QUEUE_UNAVAILABLE,
                message="Database unavailable",
                request_id=rid,
                details={"db_ok": False},
            ),
        )

    queue_reason = "ok"
    try:
        counts = await all_state_counts(engine, topics=TOPICS)  # type: ignore[arg-type]
    except Exception:
        counts = {}
        queue_reason = "jobs_unavailable"

    return {
        "ok": True,
        "db_ok": True,
        "queue_ok": queue_reason == "ok",
        "queue": {"counts": counts, "reason": queue_reason},
        "request_id": rid,
    }
