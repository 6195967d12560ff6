from __future__ import annotations

import os
import socket
import uuid
from dataclasses import dataclass
from typing import Mapping

from erpqueue.core.logging import get_logger

log = get_logger(__name__)

TOPICS: tuple[str, ...] = ("email", "sms", "report")


@dataclass(frozen=True, slots=True)
class Settings:
    app_env: str
    database_url: str
    worker_id: str
    worker_concurrency: dict[str, int]
    poll_interval_s: float
    visibility_timeout_s: int
    sweep_interval_s: float
    shutdown_grace_s: float
    remove_on_complete: int
    remove_on_fail: int
    smtp_host: str
    smtp_port: int
    smtp_username: str
    smtp_password: str
    smtp_from: str
    smtp_starttls: bool
    twilio_account_sid: str
    twilio_auth_token: str
    twilio_from_number: str
    pdf_output_dir: str
    school_name: str

    @property
    def is_prod(self) -> bool:
        return self.app_env in {"prod", "production"}

    @property
    def smtp_configured(self) -> bool:
        return bool(self.smtp_host)

    @property
    def twilio_configured(self) -> bool:
        return bool(self.twilio_account_sid and self.twilio_auth_token and self.twilio_from_number)


def default_worker_id() -> str:
    # Unique across hosts and containers that share a pid.
    host = (socket.gethostname() or "host").strip() or "host"
    return f"{host}-{os.getpid()}-{uuid.uuid4().hex[:8]}"


def _get(env: Mapping[str, str], key: str, default: str) -> str:
    value = env.get(key, default)
    return (value or "").strip()


def _get_bool(env: Mapping[str, str], key: str, default: bool) -> bool:
    raw = _get(env, key, "1" if default else "0").lower()
    if raw in {"1", "true", "yes", "y", "on"}:
        return True
    if raw in {"0", "false", "no", "n", "off"}:
        return False
    return default


def _get_int(env: Mapping[str, str], key: str, *, default: int, min_v: int, max_v: int) -> int:
    raw = _get(env, key, "")
    try:
        value = int(raw) if raw else int(default)
    except ValueError:
        log.warning("config_invalid_int key=%s value=%s", key, raw)
        value = int(default)
    return max(int(min_v), min(int(value), int(max_v)))


def _get_float(env: Mapping[str, str], key: str, *, default: float, min_v: float, max_v: float) -> float:
    raw = _get(env, key, "")
    try:
        value = float(raw) if raw else float(default)
    except ValueError:
        log.warning("config_invalid_float key=%s value=%s", key, raw)
        value = float(default)
    return max(float(min_v), min(float(value), float(max_v)))


def load_settings(env: Mapping[str, str] | None = None) -> Settings:
    env = os.environ if env is None else env

    app_env = _get(env, "APP_ENV", "dev").lower()
    database_url = _get(env, "DATABASE_URL", "sqlite+aiosqlite:///./data/erpqueue.db")
    worker_id = _get(env, "WORKER_ID", "") or default_worker_id()

    worker_concurrency = {
        topic: _get_int(env, f"WORKER_CONCURRENCY_{topic.upper()}", default=1, min_v=0, max_v=64)
        for topic in TOPICS
    }

    smtp_host = _get(env, "SMTP_HOST", "")
    smtp_from = _get(env, "SMTP_FROM", "")
    twilio_sid = _get(env, "TWILIO_ACCOUNT_SID", "")
    twilio_token = _get(env, "TWILIO_AUTH_TOKEN", "")
    twilio_from = _get(env, "TWILIO_FROM_NUMBER", "")

    settings = Settings(
        app_env=app_env,
        database_url=database_url,
        worker_id=worker_id,
        worker_concurrency=worker_concurrency,
        poll_interval_s=_get_float(env, "WORKER_POLL_INTERVAL_SECONDS", default=1.0, min_v=0.05, max_v=60.0),
        visibility_timeout_s=_get_int(env, "WORKER_VISIBILITY_TIMEOUT_SECONDS", default=300, min_v=5, max_v=24 * 3600),
        sweep_interval_s=_get_float(env, "WORKER_SWEEP_INTERVAL_SECONDS", default=30.0, min_v=1.0, max_v=3600.0),
        shutdown_grace_s=_get_float(env, "WORKER_SHUTDOWN_GRACE_SECONDS", default=10.0, min_v=0.0, max_v=600.0),
        remove_on_complete=_get_int(env, "QUEUE_REMOVE_ON_COMPLETE", default=100, min_v=0, max_v=1_000_000),
        remove_on_fail=_get_int(env, "QUEUE_REMOVE_ON_FAIL", default=50, min_v=0, max_v=1_000_000),
        smtp_host=smtp_host,
        smtp_port=_get_int(env, "SMTP_PORT", default=587, min_v=1, max_v=65535),
        smtp_username=_get(env, "SMTP_USERNAME", ""),
        smtp_password=_get(env, "SMTP_PASSWORD", ""),
        smtp_from=smtp_from,
        smtp_starttls=_get_bool(env, "SMTP_STARTTLS", True),
        twilio_account_sid=twilio_sid,
        twilio_auth_token=twilio_token,
        twilio_from_number=twilio_from,
        pdf_output_dir=_get(env, "PDF_OUTPUT_DIR", "./uploads/pdfs") or "./uploads/pdfs",
        school_name=_get(env, "SCHOOL_NAME", "School ERP") or "School ERP",
    )

    if settings.is_prod:
        missing: list[str] = []
        if settings.smtp_configured and not settings.smtp_from:
            missing.append("SMTP_FROM")
        twilio_parts = {
            "TWILIO_ACCOUNT_SID": twilio_sid,
            "TWILIO_AUTH_TOKEN": twilio_token,
            "TWILIO_FROM_NUMBER": twilio_from,
        }
        if any(twilio_parts.values()):
            missing.extend(key for key, value in twilio_parts.items() if not value)
        if missing:
            raise ValueError(f"Missing required env vars for prod: {', '.join(missing)}")

    return settings
