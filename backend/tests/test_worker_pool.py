from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Any

import pytest

from erpqueue.core.config import load_settings
from erpqueue.db.engine import create_engine
from erpqueue.db.models.base import Base
from erpqueue.delivery.mail import LogEmailTransport
from erpqueue.delivery.sms import LogSmsTransport
from erpqueue.jobs.dispatch import JobRegistry
from erpqueue.jobs.errors import JobPermanentError
from erpqueue.jobs.executor import release_claim
from erpqueue.jobs.model import job_from_row
from erpqueue.jobs.policies import JobOptions
from erpqueue.jobs.producer import QueueProducer
from erpqueue.jobs.store import QueueStore
from erpqueue.worker import WorkerPool, build_default_registry, main_async


def _sqlite_url(db_path: Path) -> str:
    return "sqlite+aiosqlite:///" + db_path.as_posix()


async def _setup(engine) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


class _FakeRenderer:
    def __init__(self, out_dir: Path) -> None:
        self.out_dir = out_dir
        self.calls: list[tuple[str, dict[str, Any]]] = []

    async def render(self, kind: str, data: dict[str, Any]) -> str:
        self.calls.append((kind, data))
        path = self.out_dir / f"{kind}-{len(self.calls)}.pdf"
        path.write_bytes(b"%PDF-1.4")
        return str(path)


def _pool(store: QueueStore, registry, **kwargs: Any) -> WorkerPool:
    opts: dict[str, Any] = {
        "worker_id": "node-a",
        "concurrency": {"email": 1, "sms": 1, "report": 1},
        "poll_interval_s": 0.05,
        "visibility_timeout_s": 300,
        "sweep_interval_s": 60.0,
    }
    opts.update(kwargs)
    return WorkerPool(store, registry, **opts)


def test_pool_processes_each_topic(tmp_path: Path) -> None:
    engine = create_engine(_sqlite_url(tmp_path / "pool.db"))
    email = LogEmailTransport()
    sms = LogSmsTransport()
    renderer = _FakeRenderer(tmp_path)
    registry = build_default_registry(
        load_settings({}), email_transport=email, sms_transport=sms, renderer=renderer
    )

    async def _run() -> None:
        await _setup(engine)
        store = QueueStore(engine)
        producer = QueueProducer(store)
        pool = _pool(store, registry)

        await producer.send_email({"to": "parent@x.org", "template": "welcome", "context": {"name": "Asha"}})
        await producer.send_bulk_sms({"recipients": ["+911", "+912"], "message": "School closed tomorrow"})
        receipt_id = await producer.generate_fee_receipt({"receipt_no": "R-1", "amount": 1500})

        assert await pool.run_once("email", "node-a:email:0") is True
        assert await pool.run_once("sms", "node-a:sms:0") is True
        assert await pool.run_once("report", "node-a:report:0") is True
        assert await pool.run_once("report", "node-a:report:0") is False
        assert pool.processed == 3

        assert [m.subject for m in email.sent] == ["Welcome to School ERP"]
        assert sorted(to for to, _ in sms.sent) == ["+911", "+912"]
        assert renderer.calls == [("fee-receipt", {"receiptData": {"receipt_no": "R-1", "amount": 1500}})]

        job = await store.get_job(receipt_id)
        assert job is not None
        assert job["state"] == "completed"
        assert json.loads(job["result_json"]) == {"filepath": str(tmp_path / "fee-receipt-1.pdf")}

        for topic in ("email", "sms", "report"):
            assert (await producer.get_stats(topic))["completed"] == 1
        await engine.dispose()

    asyncio.run(_run())


def test_housekeeping_applies_retention(tmp_path: Path) -> None:
    engine = create_engine(_sqlite_url(tmp_path / "pool.db"))
    sms = LogSmsTransport()
    registry = build_default_registry(load_settings({}), email_transport=LogEmailTransport(), sms_transport=sms)

    async def _run() -> None:
        await _setup(engine)
        store = QueueStore(engine)
        producer = QueueProducer(store)
        pool = _pool(store, registry, remove_on_complete=2, remove_on_fail=1)

        for i in range(4):
            await producer.send_sms({"to": f"+9{i}", "message": "hi"})
        while await pool.run_once("sms", "node-a:sms:0"):
            pass
        assert (await store.stats("sms"))["completed"] == 4

        await pool.housekeeping_once()
        assert (await store.stats("sms"))["completed"] == 2
        await engine.dispose()

    asyncio.run(_run())


def test_started_pool_wakes_on_enqueue(tmp_path: Path) -> None:
    engine = create_engine(_sqlite_url(tmp_path / "pool.db"))
    sms = LogSmsTransport()
    registry = build_default_registry(load_settings({}), email_transport=LogEmailTransport(), sms_transport=sms)

    async def _run() -> None:
        await _setup(engine)
        store = QueueStore(engine)
        producer = QueueProducer(store)
        pool = _pool(store, registry, concurrency={"sms": 2})

        pool.start()
        assert pool.running is True
        try:
            job_id = await producer.send_sms({"to": "+915", "message": "Fee due"})
            for _ in range(200):
                if pool.processed >= 1:
                    break
                await asyncio.sleep(0.02)
        finally:
            await pool.stop()

        assert pool.running is False
        assert sms.sent == [("+915", "Fee due")]
        job = await store.get_job(job_id)
        assert job is not None
        assert job["state"] == "completed"
        await engine.dispose()

    asyncio.run(_run())


def test_unconfigured_prod_transports_fail_jobs_permanently() -> None:
    registry = build_default_registry(load_settings({"APP_ENV": "prod"}))

    assert registry.kinds("email") == ["send-bulk-email", "send-email"]
    assert registry.kinds("sms") == ["send-bulk-sms", "send-sms"]
    assert registry.kinds("report") == [
        "generate-attendance-report",
        "generate-fee-receipt",
        "generate-report-card",
        "generate-salary-slip",
    ]

    handler = registry.resolve("sms", "send-sms")
    assert handler is not None
    with pytest.raises(JobPermanentError) as excinfo:
        asyncio.run(handler({"to": "+1", "message": "x"}))
    assert "disabled" in str(excinfo.value)


def test_worker_pool_rejects_blank_worker_id(tmp_path: Path) -> None:
    engine = create_engine(_sqlite_url(tmp_path / "pool.db"))
    with pytest.raises(ValueError):
        WorkerPool(QueueStore(engine), build_default_registry(load_settings({})), worker_id=" ", concurrency={})


def test_main_async_starts_and_stops(tmp_path: Path) -> None:
    settings = load_settings(
        {
            "DATABASE_URL": _sqlite_url(tmp_path / "worker.db"),
            "WORKER_ID": "smoke",
            "PDF_OUTPUT_DIR": str(tmp_path / "pdfs"),
        }
    )

    async def _run() -> None:
        stop = asyncio.Event()
        stop.set()
        await main_async(stop_event=stop, settings=settings)

    asyncio.run(_run())


def test_stop_lets_inflight_job_finish_within_grace(tmp_path: Path) -> None:
    engine = create_engine(_sqlite_url(tmp_path / "pool.db"))
    registry = JobRegistry()
    started = asyncio.Event()

    @registry.handler("report", "generate-fee-receipt")
    async def _slow(_payload: Any) -> dict[str, str]:
        started.set()
        await asyncio.sleep(0.2)
        return {"filepath": "receipt.pdf"}

    async def _run() -> None:
        await _setup(engine)
        store = QueueStore(engine)
        pool = _pool(store, registry, concurrency={"report": 1})
        job_id = await store.enqueue("report", "generate-fee-receipt", {}, JobOptions(max_attempts=1))

        pool.start()
        await asyncio.wait_for(started.wait(), timeout=5)
        await pool.stop(grace_s=5)

        job = await store.get_job(job_id)
        assert job is not None
        assert job["state"] == "completed"
        assert json.loads(job["result_json"]) == {"filepath": "receipt.pdf"}
        await engine.dispose()

    asyncio.run(_run())


def test_stop_past_grace_releases_job_and_refunds_attempt(tmp_path: Path) -> None:
    engine = create_engine(_sqlite_url(tmp_path / "pool.db"))
    registry = JobRegistry()
    started = asyncio.Event()

    @registry.handler("report", "generate-fee-receipt")
    async def _hangs(_payload: Any) -> None:
        started.set()
        await asyncio.Event().wait()

    async def _run() -> None:
        await _setup(engine)
        store = QueueStore(engine)
        pool = _pool(store, registry, concurrency={"report": 1}, visibility_timeout_s=5)
        job_id = await store.enqueue("report", "generate-fee-receipt", {}, JobOptions(max_attempts=1))

        pool.start()
        await asyncio.wait_for(started.wait(), timeout=5)
        active = await store.get_job(job_id)
        assert active is not None
        assert active["state"] == "active"
        assert active["attempts_made"] == 1

        await pool.stop(grace_s=0)

        job = await store.get_job(job_id)
        assert job is not None
        assert job["state"] == "waiting"
        assert job["attempts_made"] == 0
        assert job["owner"] is None
        assert job["locked_at"] is None

        # Nothing is left for the sweep to fail; the job can be claimed again.
        assert await store.requeue_stale("report", 5) == (0, 0)
        again = await store.claim_next("report", "node-b:report:0")
        assert again is not None
        assert again["attempts_made"] == 1
        await engine.dispose()

    asyncio.run(_run())


def test_release_after_lease_moved_on_is_ignored(tmp_path: Path) -> None:
    engine = create_engine(_sqlite_url(tmp_path / "pool.db"))

    async def _run() -> None:
        await _setup(engine)
        store = QueueStore(engine)
        job_id = await store.enqueue("sms", "send-sms", {}, JobOptions(max_attempts=3))
        row = await store.claim_next("sms", "node-a:sms:0")
        assert row is not None

        assert await release_claim(engine, job_from_row(row), worker_id="node-b:sms:0") is False
        job = await store.get_job(job_id)
        assert job is not None
        assert (job["state"], job["attempts_made"], job["owner"]) == ("active", 1, "node-a:sms:0")
        await engine.dispose()

    asyncio.run(_run())
