"""Runtime value objects."""

from __future__ import annotations

import asyncio
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Literal

from clanker.utils import clamp, ms_from_iso

ConfidenceSource = Literal["llm", "fallback", "direct", "exact_name"]
PacingMode = Literal["even", "spontaneous"]

MIN_THRESHOLD = 0.4
MAX_THRESHOLD = 0.95
DEFAULT_THRESHOLD = 0.62


@dataclass(frozen=True)
class IncomingEvent:
    """Normalized inbound chat message."""

    id: str
    channel_id: str
    author_id: str
    content: str
    created_at: float
    referenced_id: str | None = None
    author_name: str = ""
    author_is_bot: bool = False
    mentions_bot: bool = False
    reply_to_author_id: str | None = None


@dataclass
class AddressSignal:
    """How confident we are that a message speaks to the bot.

    ``triggered`` only holds when the address is direct or the confidence
    clears the threshold.
    """

    direct: bool = False
    inferred: bool = False
    triggered: bool = False
    confidence: float = 0.0
    threshold: float = DEFAULT_THRESHOLD
    confidence_source: ConfidenceSource = "fallback"
    reason: str = "llm_decides"

    def __post_init__(self) -> None:
        self.confidence = clamp(float(self.confidence), 0.0, 1.0)
        self.threshold = clamp(float(self.threshold), MIN_THRESHOLD, MAX_THRESHOLD)
        if self.triggered and not self.direct and self.confidence < self.threshold:
            self.triggered = False

    def copy(self) -> AddressSignal:
        return AddressSignal(
            direct=self.direct,
            inferred=self.inferred,
            triggered=self.triggered,
            confidence=self.confidence,
            threshold=self.threshold,
            confidence_source=self.confidence_source,
            reason=self.reason,
        )

    def widen(self, other: AddressSignal | None, *, take_reason: bool = True) -> AddressSignal:
        """Merge ``other`` into this signal. Merging never narrows a flag."""
        if other is None:
            return self
        self.direct = self.direct or other.direct
        self.inferred = self.inferred or other.inferred
        if other.confidence > self.confidence:
            self.confidence = other.confidence
            self.threshold = other.threshold
            self.confidence_source = other.confidence_source
        if other.triggered and not self.triggered:
            self.triggered = True
            if take_reason:
                self.reason = other.reason
        # confidence only grows, so it still clears whichever threshold triggered it
        if self.triggered and not self.direct and self.confidence < self.threshold:
            self.threshold = max(MIN_THRESHOLD, self.confidence)
        return self

    def as_dict(self) -> dict[str, Any]:
        return {
            "direct": self.direct,
            "inferred": self.inferred,
            "triggered": self.triggered,
            "confidence": round(self.confidence, 4),
            "threshold": round(self.threshold, 4),
            "confidence_source": self.confidence_source,
            "reason": self.reason,
        }


@dataclass
class ReplyJob:
    """A queued request to consider replying to one event."""

    event: IncomingEvent
    source: str
    force_respond: bool = False
    address_signal: AddressSignal | None = None
    attempts: int = 0
    enqueued_at: float = 0.0


@dataclass
class ReplyTurn:
    """A coalesced burst handed to the reply dispatcher."""

    channel_id: str
    event: IncomingEvent
    burst: list[IncomingEvent]
    source: str
    force_respond: bool
    address_signal: AddressSignal | None
    trigger_message_ids: list[str]


@dataclass
class ChannelQueue:
    """Pending jobs for one channel plus the worker flag that serializes them."""

    jobs: deque[ReplyJob] = field(default_factory=deque)
    queued_ids: set[str] = field(default_factory=set)
    worker_active: bool = False
    task: asyncio.Task[None] | None = None


@dataclass(frozen=True)
class Budget:
    """Usage of one action category inside a sliding window."""

    kind: str
    window_ms: float
    max_per_window: int
    used: int

    @property
    def remaining(self) -> int:
        return max(0, self.max_per_window - self.used)

    @property
    def can_act(self) -> bool:
        return self.max_per_window > 0 and self.remaining > 0


@dataclass
class GatewayState:
    last_event_at: float = 0.0
    reconnect_attempts: int = 0
    reconnect_in_flight: bool = False
    has_connected_once: bool = False


@dataclass(frozen=True)
class ScheduleDecision:
    """Outcome of one initiative pacing evaluation."""

    should_post: bool
    mode: PacingMode
    trigger: str
    chance: float | None = None
    roll: float | None = None
    elapsed_ms: float | None = None
    required_interval_ms: float | None = None


@dataclass(frozen=True)
class StoredMessage:
    """One row of stored message history."""

    message_id: str
    channel_id: str
    author_id: str
    author_name: str
    is_bot: bool
    content: str
    created_at: float
    referenced_message_id: str | None = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> StoredMessage:
        return cls(
            message_id=str(row["message_id"]),
            channel_id=str(row["channel_id"]),
            author_id=str(row["author_id"]),
            author_name=str(row.get("author_name") or ""),
            is_bot=bool(row.get("is_bot")),
            content=str(row.get("content") or ""),
            created_at=ms_from_iso(row.get("created_at")) or 0.0,
            referenced_message_id=row.get("referenced_message_id"),
        )
