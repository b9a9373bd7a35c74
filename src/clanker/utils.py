"""Small time and number helpers shared across the runtime."""

from __future__ import annotations

import time
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime

Clock = Callable[[], float]
Sleeper = Callable[[float], Awaitable[None]]

HOUR_MS = 60 * 60 * 1000
DAY_MS = 24 * HOUR_MS


def now_ms() -> float:
    """Wall clock in epoch milliseconds."""
    return time.time() * 1000.0


def iso_from_ms(value_ms: float) -> str:
    return datetime.fromtimestamp(value_ms / 1000.0, UTC).isoformat(timespec="milliseconds")


def ms_from_iso(value: str | None) -> float | None:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed.timestamp() * 1000.0


def clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))
