from __future__ import annotations

import os
from pathlib import Path
from typing import Any

from sqlalchemy import event
from sqlalchemy.engine.url import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

# One SQLite file is shared by workers in several processes.
SQLITE_BUSY_TIMEOUT_MS = 30_000
SQLITE_POOL_SIZE = 10
SQLITE_MAX_OVERFLOW = 10


def _busy_timeout_ms() -> int:
    raw = (os.environ.get("SQLITE_BUSY_TIMEOUT_MS") or "").strip()
    try:
        value = int(raw) if raw else SQLITE_BUSY_TIMEOUT_MS
    except ValueError:
        value = SQLITE_BUSY_TIMEOUT_MS
    return max(1000, min(int(value), 5 * 60_000))


def apply_sqlite_pragmas(dbapi_connection: Any) -> None:
    cursor = dbapi_connection.cursor()
    try:
        try:
            cursor.execute("PRAGMA journal_mode = WAL")
            cursor.fetchone()
        except Exception:
            # In-memory databases cannot switch to WAL.
            pass
        cursor.execute("PRAGMA synchronous = NORMAL")
        cursor.execute(f"PRAGMA busy_timeout = {_busy_timeout_ms()}")
    finally:
        cursor.close()


def sqlite_file_path(database_url: str) -> Path | None:
    url = make_url(database_url)
    if (url.get_backend_name() or "").lower() != "sqlite":
        return None
    db = str(url.database or "").strip()
    if not db or db == ":memory:":
        return None
    return Path(db).expanduser()


def create_engine(database_url: str) -> AsyncEngine:
    kwargs: dict[str, Any] = {}
    is_sqlite = database_url.lower().startswith("sqlite")
    if is_sqlite:
        kwargs["connect_args"] = {"timeout": _busy_timeout_ms() / 1000.0}
        db_path = sqlite_file_path(database_url)
        if db_path is not None:
            db_path.resolve().parent.mkdir(parents=True, exist_ok=True)
            kwargs.update({"pool_size": SQLITE_POOL_SIZE, "max_overflow": SQLITE_MAX_OVERFLOW})

    engine = create_async_engine(database_url, **kwargs)

    if is_sqlite:
        def _on_connect(dbapi_connection: Any, _record: Any) -> None:
            apply_sqlite_pragmas(dbapi_connection)

        event.listen(engine.sync_engine, "connect", _on_connect)

    return engine
