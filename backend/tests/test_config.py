from __future__ import annotations

import pytest

from erpqueue.core.config import load_settings


def test_load_settings_dev_defaults() -> None:
    s = load_settings({})
    assert s.app_env == "dev"
    assert s.database_url == "sqlite+aiosqlite:///./data/erpqueue.db"
    assert s.worker_id
    assert load_settings({}).worker_id != s.worker_id
    assert s.worker_concurrency == {"email": 1, "sms": 1, "report": 1}
    assert s.poll_interval_s == 1.0
    assert s.shutdown_grace_s == 10.0
    assert s.visibility_timeout_s == 300
    assert s.remove_on_complete == 100
    assert s.remove_on_fail == 50
    assert s.smtp_port == 587
    assert s.smtp_configured is False
    assert s.twilio_configured is False
    assert s.pdf_output_dir == "./uploads/pdfs"
    assert s.school_name == "School ERP"


def test_load_settings_parses_and_clamps() -> None:
    s = load_settings(
        {
            "WORKER_ID": " node-a ",
            "WORKER_CONCURRENCY_EMAIL": "4",
            "WORKER_CONCURRENCY_SMS": "not-a-number",
            "WORKER_CONCURRENCY_REPORT": "1000",
            "WORKER_VISIBILITY_TIMEOUT_SECONDS": "1",
            "QUEUE_REMOVE_ON_COMPLETE": "10",
            "SMTP_STARTTLS": "off",
        }
    )
    assert s.worker_id == "node-a"
    assert s.worker_concurrency == {"email": 4, "sms": 1, "report": 64}
    assert s.visibility_timeout_s == 5
    assert s.remove_on_complete == 10
    assert s.smtp_starttls is False


def test_load_settings_reads_os_environ(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("SCHOOL_NAME", "Green Valley School")
    monkeypatch.setenv("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
    s = load_settings()
    assert s.school_name == "Green Valley School"
    assert s.database_url.endswith(":memory:")


def test_load_settings_prod_rejects_partial_delivery_config() -> None:
    with pytest.raises(ValueError) as excinfo:
        load_settings({"APP_ENV": "prod", "SMTP_HOST": "smtp.example.org"})
    assert "SMTP_FROM" in str(excinfo.value)

    with pytest.raises(ValueError) as excinfo:
        load_settings({"APP_ENV": "prod", "TWILIO_ACCOUNT_SID": "AC1"})
    assert "TWILIO_AUTH_TOKEN" in str(excinfo.value)
    assert "TWILIO_FROM_NUMBER" in str(excinfo.value)

    s = load_settings({"APP_ENV": "production"})
    assert s.is_prod is True
