from __future__ import annotations

import json
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from erpqueue.jobs.errors import JobPermanentError

JobHandler = Callable[[Any], Awaitable[Any]]


@dataclass(slots=True)
class JobRegistry:
    """Handlers keyed by ``(topic, kind)``; exactly one per key."""

    handlers: dict[tuple[str, str], JobHandler] = field(default_factory=dict)

    def register(self, topic: str, kind: str, handler: JobHandler) -> None:
        topic = (topic or "").strip()
        kind = (kind or "").strip()
        if not topic:
            raise ValueError("topic is required")
        if not kind:
            raise ValueError("kind is required")
        self.handlers[(topic, kind)] = handler

    def handler(self, topic: str, kind: str) -> Callable[[JobHandler], JobHandler]:
        def _wrap(fn: JobHandler) -> JobHandler:
            self.register(topic, kind, fn)
            return fn

        return _wrap

    def resolve(self, topic: str, kind: str) -> JobHandler | None:
        return self.handlers.get(((topic or "").strip(), (kind or "").strip()))

    def kinds(self, topic: str) -> list[str]:
        return sorted(k for t, k in self.handlers if t == topic)

    async def dispatch(self, job: dict[str, Any]) -> Any:
        topic = str(job.get("topic") or "").strip()
        kind = str(job.get("kind") or "").strip()
        handler = self.resolve(topic, kind)
        if handler is None:
            raise JobPermanentError(f"Unknown job kind: {topic or '<missing>'}/{kind or '<missing>'}")

        raw = job.get("payload_json")
        try:
            payload = json.loads(raw) if raw else {}
        except (TypeError, ValueError) as exc:
            raise JobPermanentError(f"payload_json is not valid JSON: {exc}") from exc
        return await handler(payload)
