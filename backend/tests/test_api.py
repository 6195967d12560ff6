from __future__ import annotations

import asyncio
from collections.abc import Iterator
from datetime import datetime, timezone
from pathlib import Path

import pytest
from fastapi.testclient import TestClient
from prometheus_client import REGISTRY
from prometheus_client.parser import text_string_to_metric_families

from erpqueue.db.engine import create_engine
from erpqueue.db.models.base import Base
from erpqueue.jobs.policies import JobOptions
from erpqueue.jobs.store import QueueStore
from erpqueue.main import create_app

T0 = datetime(2026, 2, 10, 8, 0, 0, tzinfo=timezone.utc)


def _sqlite_url(db_path: Path) -> str:
    return "sqlite+aiosqlite:///" + db_path.as_posix()


def _seed(url: str) -> dict[str, int]:
    async def _run() -> dict[str, int]:
        engine = create_engine(url)
        try:
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            store = QueueStore(engine)
            failed_id = await store.enqueue("sms", "send-sms", {"to": "+1", "message": "hi"}, JobOptions(), now=T0)
            row = await store.claim_next("sms", "w1", now=T0)
            assert row is not None
            assert await store.ack_failure(row, "w1", "twilio down", permanent=True, now=T0) is True
            waiting_a = await store.enqueue("sms", "send-sms", {"to": "+2", "message": "a"}, JobOptions(), now=T0)
            waiting_b = await store.enqueue("sms", "send-sms", {"to": "+3", "message": "b"}, JobOptions(), now=T0)
            return {"failed": failed_id, "waiting_a": waiting_a, "waiting_b": waiting_b}
        finally:
            await engine.dispose()

    return asyncio.run(_run())


@pytest.fixture()
def seeded(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Iterator[tuple[TestClient, dict[str, int]]]:
    url = _sqlite_url(tmp_path / "api.db")
    ids = _seed(url)
    monkeypatch.setenv("DATABASE_URL", url)
    monkeypatch.setenv("APP_ENV", "dev")
    with TestClient(create_app()) as client:
        yield client, ids


def test_topic_stats(seeded) -> None:
    client, _ = seeded
    resp = client.get("/queues/sms/stats")
    assert resp.status_code == 200
    body = resp.json()
    assert body["ok"] is True
    assert body["counts"] == {"waiting": 2, "active": 0, "completed": 0, "failed": 1, "delayed": 0}
    assert resp.headers["X-Request-Id"] == body["request_id"]

    resp = client.get("/queues/email/stats")
    assert resp.json()["counts"]["waiting"] == 0


def test_new_topic_is_observable_and_malformed_topic_rejected(seeded) -> None:
    client, _ = seeded
    resp = client.get("/queues/fax/stats")
    assert resp.status_code == 200
    assert resp.json()["counts"] == {"waiting": 0, "active": 0, "completed": 0, "failed": 0, "delayed": 0}

    resp = client.get("/queues/bad topic!/stats", headers={"X-Request-Id": "req_test"})
    assert resp.status_code == 400
    body = resp.json()
    assert body["code"] == "BAD_REQUEST"
    assert body["request_id"] == "req_test"
    assert resp.headers["X-Request-Id"] == "req_test"


def test_get_job_and_invalid_id(seeded) -> None:
    client, ids = seeded
    resp = client.get(f"/jobs/{ids['failed']}")
    assert resp.status_code == 200
    job = resp.json()["job"]
    assert job["state"] == "failed"
    assert job["attempts_made"] == 1
    assert job["last_error"] == "twilio down"
    assert job["payload"] == {"to": "+1", "message": "hi"}
    assert job["owner"] is None

    assert client.get("/jobs/999999").status_code == 404
    assert client.get("/jobs/abc").status_code == 400


def test_retry_failed_job(seeded) -> None:
    client, ids = seeded
    resp = client.post(f"/jobs/{ids['waiting_a']}/retry")
    assert resp.status_code == 409
    assert resp.json()["code"] == "CONFLICT"

    resp = client.post(f"/jobs/{ids['failed']}/retry")
    assert resp.status_code == 200
    assert resp.json()["state"] == "waiting"

    job = client.get(f"/jobs/{ids['failed']}").json()["job"]
    assert job["state"] == "waiting"
    assert job["attempts_made"] == 0
    assert job["last_error"] is None

    assert client.post("/jobs/999999/retry").status_code == 404


def test_list_topic_jobs_paginates_newest_first(seeded) -> None:
    client, ids = seeded
    resp = client.get("/queues/sms/jobs", params={"limit": 2})
    assert resp.status_code == 200
    body = resp.json()
    assert [j["id"] for j in body["items"]] == [str(ids["waiting_b"]), str(ids["waiting_a"])]
    assert body["next_cursor"] == str(ids["waiting_a"])

    resp = client.get("/queues/sms/jobs", params={"limit": 2, "cursor": body["next_cursor"]})
    body = resp.json()
    assert [j["id"] for j in body["items"]] == [str(ids["failed"])]
    assert body["next_cursor"] is None

    resp = client.get("/queues/sms/jobs", params={"state": "failed"})
    assert [j["id"] for j in resp.json()["items"]] == [str(ids["failed"])]

    assert client.get("/queues/sms/jobs", params={"state": "bogus"}).status_code == 400
    assert client.get("/queues/sms/jobs", params={"limit": 0}).status_code == 400


def test_healthz_reports_counts(seeded) -> None:
    client, _ = seeded
    resp = client.get("/healthz")
    assert resp.status_code == 200
    body = resp.json()
    assert body["ok"] is True
    assert body["db_ok"] is True
    assert body["queue_ok"] is True
    assert body["queue"]["counts"]["sms"]["waiting"] == 2
    assert body["queue"]["counts"]["sms"]["failed"] == 1


def test_metrics_exposes_state_gauge(seeded) -> None:
    client, _ = seeded
    resp = client.get("/metrics")
    assert resp.status_code == 200
    assert REGISTRY.get_sample_value("erpqueue_jobs_state_count", {"topic": "sms", "state": "waiting"}) == 2.0
    assert REGISTRY.get_sample_value("erpqueue_jobs_state_count", {"topic": "sms", "state": "failed"}) == 1.0

    families = {f.name: f for f in text_string_to_metric_families(resp.text)}
    gauge = {
        (s.labels["topic"], s.labels["state"]): s.value for s in families["erpqueue_jobs_state_count"].samples
    }
    assert gauge[("sms", "waiting")] == 2.0
    assert gauge[("sms", "failed")] == 1.0
    assert "erpqueue_jobs_enqueued" in families
