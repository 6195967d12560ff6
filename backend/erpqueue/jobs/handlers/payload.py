from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Sequence
from typing import Any

from erpqueue.core.logging import get_logger
from erpqueue.core.redact import redact_text
from erpqueue.jobs.errors import DeliveryError, JobPermanentError

log = get_logger(__name__)


def require_object(payload: Any) -> dict[str, Any]:
    if not isinstance(payload, dict):
        raise JobPermanentError("payload must be an object")
    return payload


def require_str(payload: dict[str, Any], key: str) -> str:
    value = payload.get(key)
    if not isinstance(value, str) or not value.strip():
        raise JobPermanentError(f"payload.{key} is required")
    return value.strip()


def recipient_list(value: Any, *, key: str) -> list[str]:
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, list):
        raise JobPermanentError(f"payload.{key} must be a string or a list of strings")
    out = [str(v).strip() for v in value if isinstance(v, str) and v.strip()]
    if not out:
        raise JobPermanentError(f"payload.{key} has no recipients")
    return out


async def send_to_all(
    recipients: Sequence[str],
    send_one: Callable[[str], Awaitable[bool]],
    *,
    channel: str,
) -> None:
    """Sends concurrently and fails as a whole if any recipient failed.

    Every send is awaited before deciding, so a retry resends to everyone.
    """
    results = await asyncio.gather(*(send_one(r) for r in recipients), return_exceptions=True)
    failed: list[str] = []
    for recipient, result in zip(recipients, results):
        if isinstance(result, BaseException):
            log.warning(
                "%s_send_failed to=%s err=%s",
                channel,
                recipient,
                redact_text(f"{type(result).__name__}: {result}"),
            )
            failed.append(recipient)
        elif result is False:
            log.warning("%s_send_rejected to=%s", channel, recipient)
            failed.append(recipient)
    if failed:
        first = failed[0] if len(failed) == 1 else None
        raise DeliveryError(
            f"{channel} delivery failed for {len(failed)}/{len(recipients)} recipients",
            recipient=first,
        )
