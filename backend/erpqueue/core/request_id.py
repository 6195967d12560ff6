from __future__ import annotations

import secrets
from collections.abc import Awaitable, Callable
from typing import Any

REQUEST_ID_HEADER = "X-Request-Id"


def new_request_id() -> str:
    return "req_" + secrets.token_hex(8)


def get_or_create_request_id(request: Any) -> str:
    rid = getattr(getattr(request, "state", None), "request_id", None)
    if rid:
        return str(rid)
    headers = getattr(request, "headers", None) or {}
    value = (headers.get(REQUEST_ID_HEADER) or "").strip()
    return value or new_request_id()


async def request_id_middleware(request: Any, call_next: Callable[[Any], Awaitable[Any]]) -> Any:
    rid = get_or_create_request_id(request)
    request.state.request_id = rid
    response = await call_next(request)
    response.headers[REQUEST_ID_HEADER] = rid
    return response
