from __future__ import annotations

from fastapi import APIRouter, Request
from fastapi.responses import Response
from prometheus_client.exposition import CONTENT_TYPE_LATEST, generate_latest
from sqlalchemy.ext.asyncio import AsyncEngine

from erpqueue.core.config import TOPICS
from erpqueue.core.logging import get_logger
from erpqueue.core.metrics import METRICS_SCRAPE_ERRORS_TOTAL, set_job_state_counts
from erpqueue.jobs.stats import all_state_counts

log = get_logger(__name__)

router = APIRouter()


@router.get("/metrics")
async def metrics(request: Request) -> Response:
    engine: AsyncEngine | None = getattr(request.app.state, "engine", None)
    if engine is not None:
        try:
            counts = await all_state_counts(engine, topics=TOPICS)
            for topic, by_state in counts.items():
                set_job_state_counts(topic, by_state)
        except Exception as exc:
            METRICS_SCRAPE_ERRORS_TOTAL.inc()
            log.warning("metrics_scrape_failed err=%s", type(exc).__name__)

    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
