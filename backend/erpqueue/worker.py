from __future__ import annotations

import asyncio
import signal
from collections.abc import Callable
from typing import Any

from erpqueue.core.config import Settings, load_settings
from erpqueue.core.logging import configure_logging, get_logger
from erpqueue.core.redact import redact_text
from erpqueue.db.engine import create_engine
from erpqueue.delivery.mail import build_email_transport
from erpqueue.delivery.pdf import (
    ATTENDANCE_REPORT,
    FEE_RECEIPT,
    REPORT_CARD,
    SALARY_SLIP,
    DocumentRenderer,
    ReportLabRenderer,
)
from erpqueue.delivery.sms import build_sms_transport
from erpqueue.jobs.dispatch import JobRegistry
from erpqueue.jobs.errors import JobPermanentError
from erpqueue.jobs.executor import execute_claimed_job
from erpqueue.jobs.handlers.email import build_send_bulk_email_handler, build_send_email_handler
from erpqueue.jobs.handlers.report import build_report_handler
from erpqueue.jobs.handlers.sms import build_send_bulk_sms_handler, build_send_sms_handler
from erpqueue.jobs.policies import (
    GENERATE_ATTENDANCE_REPORT,
    GENERATE_FEE_RECEIPT,
    GENERATE_REPORT_CARD,
    GENERATE_SALARY_SLIP,
    SEND_BULK_EMAIL,
    SEND_BULK_SMS,
    SEND_EMAIL,
    SEND_SMS,
    TOPIC_EMAIL,
    TOPIC_REPORT,
    TOPIC_SMS,
)
from erpqueue.jobs.store import QueueStore

log = get_logger(__name__)

_STORE_ERROR_BACKOFF_S = 1.0


def _install_signal_handlers(stop_event: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()
    signals = [signal.SIGINT]
    if hasattr(signal, "SIGTERM"):
        signals.append(signal.SIGTERM)

    for sig in signals:
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            signal.signal(sig, lambda *_: stop_event.set())


def _disabled_handler(topic: str, kind: str, *, reason: str):
    async def _handler(_payload: Any) -> None:
        raise JobPermanentError(f"{topic}/{kind} handler disabled: {reason}")

    return _handler


def build_default_registry(
    settings: Settings,
    *,
    email_transport: Any | None = None,
    sms_transport: Any | None = None,
    renderer: DocumentRenderer | None = None,
) -> JobRegistry:
    """Wires every ``(topic, kind)`` to its handler once, at startup.

    A collaborator that cannot be built from configuration leaves its kinds
    registered with a handler that fails permanently, so jobs are finalized
    with a clear error instead of looping through retries.
    """
    registry = JobRegistry()

    def _safe_register(topic: str, kinds: dict[str, Callable[[Any], Any]], build: Callable[[], Any]) -> None:
        try:
            collaborator = build()
        except Exception as exc:
            msg = redact_text(f"{type(exc).__name__}: {exc}")
            for kind in kinds:
                log.warning("jobs_handler_disabled topic=%s kind=%s reason=%s", topic, kind, msg)
                registry.register(topic, kind, _disabled_handler(topic, kind, reason=msg))
            return
        for kind, make in kinds.items():
            registry.register(topic, kind, make(collaborator))

    _safe_register(
        TOPIC_EMAIL,
        {
            SEND_EMAIL: lambda t: build_send_email_handler(t, school_name=settings.school_name),
            SEND_BULK_EMAIL: lambda t: build_send_bulk_email_handler(t, school_name=settings.school_name),
        },
        lambda: email_transport if email_transport is not None else build_email_transport(settings),
    )
    _safe_register(
        TOPIC_SMS,
        {
            SEND_SMS: build_send_sms_handler,
            SEND_BULK_SMS: build_send_bulk_sms_handler,
        },
        lambda: sms_transport if sms_transport is not None else build_sms_transport(settings),
    )
    _safe_register(
        TOPIC_REPORT,
        {
            GENERATE_REPORT_CARD: lambda r: build_report_handler(r, REPORT_CARD),
            GENERATE_FEE_RECEIPT: lambda r: build_report_handler(r, FEE_RECEIPT),
            GENERATE_SALARY_SLIP: lambda r: build_report_handler(r, SALARY_SLIP),
            GENERATE_ATTENDANCE_REPORT: lambda r: build_report_handler(r, ATTENDANCE_REPORT),
        },
        lambda: renderer
        if renderer is not None
        else ReportLabRenderer(settings.pdf_output_dir, school_name=settings.school_name),
    )
    return registry


class WorkerPool:
    """Per-topic asyncio worker loops over a shared queue store."""

    def __init__(
        self,
        store: QueueStore,
        registry: JobRegistry,
        *,
        worker_id: str,
        concurrency: dict[str, int],
        poll_interval_s: float = 1.0,
        visibility_timeout_s: int = 300,
        sweep_interval_s: float = 30.0,
        remove_on_complete: int = 100,
        remove_on_fail: int = 50,
        shutdown_grace_s: float = 10.0,
    ) -> None:
        worker_id = (worker_id or "").strip()
        if not worker_id:
            raise ValueError("worker_id is required")
        self.store = store
        self.registry = registry
        self.worker_id = worker_id
        self.concurrency = {t: max(0, int(n)) for t, n in concurrency.items()}
        self.poll_interval_s = max(0.01, float(poll_interval_s))
        self.visibility_timeout_s = int(visibility_timeout_s)
        self.sweep_interval_s = max(0.01, float(sweep_interval_s))
        self.remove_on_complete = int(remove_on_complete)
        self.remove_on_fail = int(remove_on_fail)
        self.shutdown_grace_s = max(0.0, float(shutdown_grace_s))
        self._stop = asyncio.Event()
        self._tasks: list[asyncio.Task] = []
        self.processed = 0

    @classmethod
    def from_settings(cls, store: QueueStore, registry: JobRegistry, settings: Settings) -> WorkerPool:
        return cls(
            store,
            registry,
            worker_id=settings.worker_id,
            concurrency=settings.worker_concurrency,
            poll_interval_s=settings.poll_interval_s,
            visibility_timeout_s=settings.visibility_timeout_s,
            sweep_interval_s=settings.sweep_interval_s,
            remove_on_complete=settings.remove_on_complete,
            remove_on_fail=settings.remove_on_fail,
            shutdown_grace_s=settings.shutdown_grace_s,
        )

    @property
    def running(self) -> bool:
        return bool(self._tasks) and not self._stop.is_set()

    def _slot_id(self, topic: str, slot: int) -> str:
        return f"{self.worker_id}:{topic}:{slot}"

    async def run_once(self, topic: str, slot_id: str) -> bool:
        """Claims and executes at most one job; returns whether one ran."""
        job_row = await self.store.claim_next(topic, slot_id)
        if job_row is None:
            return False
        await execute_claimed_job(
            self.store.engine,
            self.registry,
            job_row=job_row,
            worker_id=slot_id,
            lease_renew_interval_s=max(1.0, self.visibility_timeout_s / 3.0),
        )
        self.processed += 1
        return True

    async def _worker_loop(self, topic: str, slot: int) -> None:
        slot_id = self._slot_id(topic, slot)
        log.info("worker_loop_started topic=%s slot=%s", topic, slot_id)
        while not self._stop.is_set():
            try:
                ran = await self.run_once(topic, slot_id)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                log.warning(
                    "worker_loop_error topic=%s slot=%s err=%s",
                    topic,
                    slot_id,
                    redact_text(f"{type(exc).__name__}: {exc}"),
                )
                await self._sleep(_STORE_ERROR_BACKOFF_S)
                continue
            if not ran:
                await self.store.notifier.wait(topic, self.poll_interval_s)
        log.info("worker_loop_stopped topic=%s slot=%s", topic, slot_id)

    async def _sleep(self, seconds: float) -> None:
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return

    async def housekeeping_once(self) -> None:
        for topic in self.concurrency:
            await self.store.requeue_stale(topic, self.visibility_timeout_s)
            await self.store.prune(topic, self.remove_on_complete, self.remove_on_fail)

    async def _housekeeping_loop(self) -> None:
        while not self._stop.is_set():
            try:
                await self.housekeeping_once()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                log.warning("housekeeping_failed err=%s", redact_text(f"{type(exc).__name__}: {exc}"))
            await self._sleep(self.sweep_interval_s)

    def start(self) -> None:
        if self._tasks:
            return
        self._stop.clear()
        for topic, n in self.concurrency.items():
            for slot in range(n):
                self._tasks.append(asyncio.create_task(self._worker_loop(topic, slot)))
        self._tasks.append(asyncio.create_task(self._housekeeping_loop()))
        log.info(
            "worker_pool_started worker=%s concurrency=%s",
            self.worker_id,
            ",".join(f"{t}:{n}" for t, n in self.concurrency.items()),
        )

    async def stop(self, grace_s: float | None = None) -> None:
        """Lets in-flight jobs finish within the grace period, then cancels.

        A cancelled job is released back to ``waiting`` with its attempt refunded.
        """
        self._stop.set()
        tasks = list(self._tasks)
        self._tasks.clear()
        grace = self.shutdown_grace_s if grace_s is None else max(0.0, float(grace_s))
        pending = set(tasks)
        if tasks and grace > 0:
            _done, pending = await asyncio.wait(tasks, timeout=grace)
        if pending:
            log.warning("worker_pool_cancelling worker=%s pending=%s", self.worker_id, len(pending))
        for t in pending:
            t.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        log.info("worker_pool_stopped worker=%s processed=%s", self.worker_id, self.processed)

    async def run_until_stopped(self, stop_event: asyncio.Event) -> None:
        self.start()
        try:
            await stop_event.wait()
        finally:
            await self.stop()


async def main_async(*, stop_event: asyncio.Event | None = None, settings: Settings | None = None) -> None:
    configure_logging()
    settings = settings or load_settings()

    engine = create_engine(settings.database_url)
    try:
        store = QueueStore(engine)
        registry = build_default_registry(settings)
        pool = WorkerPool.from_settings(store, registry, settings)

        if stop_event is None:
            stop_event = asyncio.Event()
            _install_signal_handlers(stop_event)
        await pool.run_until_stopped(stop_event)
    finally:
        await engine.dispose()


def main() -> None:
    asyncio.run(main_async())


if __name__ == "__main__":
    main()
