from __future__ import annotations

from fastapi import FastAPI, Request

from erpqueue.api.healthz import router as healthz_router
from erpqueue.api.metrics import router as metrics_router
from erpqueue.api.queues import router as queues_router
from erpqueue.core.config import load_settings
from erpqueue.core.errors import ApiError, ErrorCode, json_error_response
from erpqueue.core.logging import configure_logging, get_logger
from erpqueue.core.request_id import get_or_create_request_id, request_id_middleware
from erpqueue.db.engine import create_engine
from erpqueue.jobs.errors import QueueUnavailableError
from erpqueue.jobs.producer import QueueProducer
from erpqueue.jobs.store import QueueStore

log = get_logger(__name__)


def create_app() -> FastAPI:
    configure_logging()
    settings = load_settings()

    app = FastAPI(title="erpqueue", docs_url="/api/docs", redoc_url="/api/redoc")

    @app.exception_handler(ApiError)
    async def _api_error_handler(request: Request, exc: ApiError):  # type: ignore[no-redef]
        return json_error_response(
            code=exc.code,
            message=exc.message,
            status_code=exc.status_code,
            request_id=get_or_create_request_id(request),
            details=exc.details,
        )

    @app.exception_handler(QueueUnavailableError)
    async def _queue_unavailable_handler(request: Request, exc: QueueUnavailableError):  # type: ignore[no-redef]
        return json_error_response(
            code=ErrorCode.QUEUE_UNAVAILABLE,
            message=str(exc),
            status_code=503,
            request_id=get_or_create_request_id(request),
        )

    @app.exception_handler(Exception)
    async def _unhandled_exception_handler(request: Request, exc: Exception):  # type: ignore[no-redef]
        log.exception("unhandled_exception path=%s", str(getattr(request, "url", "")))
        return json_error_response(
            code=ErrorCode.INTERNAL_ERROR,
            message="Internal server error",
            status_code=500,
            request_id=get_or_create_request_id(request),
            details={"error_type": type(exc).__name__},
        )

    app.middleware("http")(request_id_middleware)

    engine = create_engine(settings.database_url)
    store = QueueStore(engine)
    app.state.engine = engine
    app.state.store = store
    app.state.producer = QueueProducer(store)
    app.state.settings = settings

    @app.on_event("shutdown")
    async def _shutdown() -> None:  # type: ignore[no-redef]
        engine = getattr(app.state, "engine", None)
        if engine is not None:
            await engine.dispose()

    app.include_router(healthz_router)
    app.include_router(metrics_router)
    app.include_router(queues_router)

    return app
