from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Literal

BackoffType = Literal["none", "exponential"]


@dataclass(frozen=True, slots=True)
class BackoffPolicy:
    type: BackoffType = "none"
    base_delay_ms: int = 0

    def __post_init__(self) -> None:
        if self.type not in ("none", "exponential"):
            raise ValueError(f"Unsupported backoff type: {self.type}")
        if int(self.base_delay_ms) < 0:
            raise ValueError("base_delay_ms must be >= 0")

    @classmethod
    def exponential(cls, base_delay_ms: int) -> BackoffPolicy:
        return cls(type="exponential", base_delay_ms=int(base_delay_ms))

    @classmethod
    def coerce(cls, value: Any) -> BackoffPolicy:
        """Accepts a policy, ``None``/``"none"``, or ``{"type": ..., "delay": ms}``."""
        if isinstance(value, BackoffPolicy):
            return value
        if value is None or value == "none":
            return NO_BACKOFF
        if isinstance(value, dict):
            type_ = str(value.get("type") or "none").strip().lower()
            delay = value.get("base_delay_ms", value.get("delay", 0))
            return cls(type=type_, base_delay_ms=int(delay or 0))  # type: ignore[arg-type]
        raise ValueError(f"Unsupported backoff: {value!r}")


NO_BACKOFF = BackoffPolicy()


def backoff_ms(policy: BackoffPolicy, attempts_made: int) -> int:
    """Delay before the next attempt, given the attempt number that just failed."""
    attempt = int(attempts_made)
    if policy.type == "none" or attempt <= 0:
        return 0
    return int(policy.base_delay_ms) * (2 ** (attempt - 1))
