from __future__ import annotations

import re
from collections.abc import Mapping
from typing import Any

REDACTED = "***"

_SENSITIVE_KEY_PARTS = (
    "password",
    "passwd",
    "secret",
    "token",
    "auth",
    "api_key",
    "apikey",
    "cookie",
)

_AUTH_HEADER_RE = re.compile(r"(?i)\b(Bearer|Basic)\s+([^\s,;]+)")
_URI_USERINFO_RE = re.compile(r"(?i)\b([a-z][a-z0-9+.-]*://)([^/\s:@\"']+):([^\s\"']+)@([^\s\"'@/]+)")
_QUERY_SECRET_RE = re.compile(r"(?i)\b((?:password|token|secret|authtoken)=)([^&\s]+)")


def is_sensitive_key(key: str) -> bool:
    key_l = key.lower()
    return any(part in key_l for part in _SENSITIVE_KEY_PARTS)


def redact_uri_credentials(text: str) -> str:
    # Greedy password match keeps "p@ss" style passwords intact up to the last '@'.
    return _URI_USERINFO_RE.sub(lambda m: f"{m.group(1)}{m.group(2)}:{REDACTED}@{m.group(4)}", text)


def redact_text(text: str) -> str:
    text = redact_uri_credentials(text)
    text = _AUTH_HEADER_RE.sub(lambda m: f"{m.group(1)} {REDACTED}", text)
    text = _QUERY_SECRET_RE.sub(r"\1" + REDACTED, text)
    return text


def redact_any(value: Any) -> Any:
    if value is None:
        return None
    if isinstance(value, str):
        return redact_text(value)
    if isinstance(value, bytes):
        return redact_text(value.decode("utf-8", errors="replace")).encode("utf-8")
    if isinstance(value, Mapping):
        out: dict[Any, Any] = {}
        for k, v in value.items():
            if isinstance(k, str) and is_sensitive_key(k):
                out[k] = REDACTED
            else:
                out[k] = redact_any(v)
        return out
    if isinstance(value, (list, tuple)):
        seq = [redact_any(v) for v in value]
        return type(value)(seq) if isinstance(value, tuple) else seq
    return value
