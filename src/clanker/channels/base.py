"""Core transport abstractions."""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Literal

import structlog

from clanker.models import IncomingEvent

logger = structlog.get_logger()

TransportEventKind = Literal[
    "ready",
    "message_create",
    "shard_disconnect",
    "shard_error",
    "shard_resume",
    "error",
    "invalidated",
]


@dataclass
class TransportEvent:
    """Something the realtime connection reported."""

    kind: TransportEventKind
    message: IncomingEvent | None = None
    error: str | None = None
    shard_id: int = 0


class ChatTransport(ABC):
    """Interface implemented by all chat transports.

    Inbound traffic is published as ``TransportEvent`` values on ``events``.
    The queue is bounded; when it is full the oldest event is dropped.
    """

    def __init__(self, *, event_queue_size: int = 500) -> None:
        self.events: asyncio.Queue[TransportEvent] = asyncio.Queue(maxsize=event_queue_size)

    @property
    @abstractmethod
    def bot_user_id(self) -> str | None:
        ...

    @abstractmethod
    def is_ready(self) -> bool:
        ...

    @abstractmethod
    async def login(self) -> None:
        """Connect. Raises ``ConnectionLoss`` when the connection cannot be made."""
        ...

    @abstractmethod
    async def destroy(self) -> None:
        ...

    @abstractmethod
    async def send(self, channel_id: str, payload: str) -> str | None:
        """Post a message. Returns the new message id when the platform reports one."""
        ...

    @abstractmethod
    async def reply(self, event_id: str, payload: str) -> str | None:
        ...

    @abstractmethod
    async def send_typing(self, channel_id: str) -> None:
        ...

    @abstractmethod
    async def react(self, event_id: str, emoji: str) -> None:
        ...

    def publish(self, event: TransportEvent) -> None:
        """Put an event on the queue, dropping the oldest one when full."""
        if self.events.full():
            try:
                dropped = self.events.get_nowait()
            except asyncio.QueueEmpty:
                dropped = None
            if dropped is not None:
                logger.warning("transport.event_dropped", kind=dropped.kind)
        self.events.put_nowait(event)
