from __future__ import annotations

import asyncio
from typing import Any

from clanker.channels.base import ChatTransport
from clanker.config import BotSettings
from clanker.errors import ConnectionLoss, TransientDispatchError
from clanker.models import StoredMessage
from clanker.utils import iso_from_ms, ms_from_iso

START_MS = 1_767_225_600_000.0  # 2026-01-01T00:00:00Z


class FakeClock:
    """Epoch-ms clock whose ``sleep`` advances time instead of waiting."""

    def __init__(self, start: float = START_MS) -> None:
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def advance(self, ms: float) -> None:
        self.now += ms

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds * 1000.0
        await asyncio.sleep(0)


class FakeStore:
    """In-memory stand-in for ``Database`` with the same async surface."""

    def __init__(self, clock: FakeClock, settings: BotSettings | None = None) -> None:
        self.clock = clock
        self.settings = settings or BotSettings()
        self.actions: list[dict[str, Any]] = []
        self.triggers: set[str] = set()
        self.messages: list[StoredMessage] = []

    async def get_settings(self) -> BotSettings:
        return self.settings

    async def log_action(self, kind: str, **kwargs: Any) -> int:
        row = {"kind": kind, "at": self.clock(), **kwargs}
        self.actions.append(row)
        if kind in ("sent_reply", "sent_message", "reply_skipped"):
            metadata = kwargs.get("metadata") or {}
            if metadata.get("trigger_message_id"):
                self.triggers.add(str(metadata["trigger_message_id"]))
            for item in metadata.get("trigger_message_ids") or []:
                self.triggers.add(str(item))
        return len(self.actions)

    def add_action(self, kind: str, at: float, **kwargs: Any) -> None:
        self.actions.append({"kind": kind, "at": at, **kwargs})

    def kinds(self) -> list[str]:
        return [row["kind"] for row in self.actions]

    async def count_actions_since(self, kinds: str | list[str], since_iso: str) -> int:
        kind_list = [kinds] if isinstance(kinds, str) else list(kinds)
        since = ms_from_iso(since_iso) or 0.0
        return sum(1 for row in self.actions if row["kind"] in kind_list and row["at"] >= since)

    async def get_last_action_time(self, kind: str) -> str | None:
        times = [row["at"] for row in self.actions if row["kind"] == kind]
        return iso_from_ms(max(times)) if times else None

    async def has_triggered_response(self, message_id: str) -> bool:
        return str(message_id) in self.triggers

    async def record_message(self, **kwargs: Any) -> None:
        created = kwargs.get("created_at_ms")
        self.messages.append(
            StoredMessage(
                message_id=str(kwargs["message_id"]),
                channel_id=str(kwargs["channel_id"]),
                author_id=str(kwargs["author_id"]),
                author_name=kwargs.get("author_name", ""),
                is_bot=bool(kwargs.get("is_bot")),
                content=kwargs.get("content", ""),
                created_at=self.clock() if created is None else created,
                referenced_message_id=kwargs.get("referenced_message_id"),
            )
        )

    async def get_recent_messages(self, channel_id: str, limit: int = 35) -> list[StoredMessage]:
        rows = [row for row in self.messages if row.channel_id == channel_id]
        rows.sort(key=lambda row: row.created_at, reverse=True)
        return rows[:limit]

    async def get_messages_since(self, channel_id: str, since_ms: float, limit: int = 20) -> list[StoredMessage]:
        rows = [row for row in self.messages if row.channel_id == channel_id and row.created_at >= since_ms]
        rows.sort(key=lambda row: row.created_at)
        return rows[-limit:]

    async def list_active_channels(self, since_ms: float) -> list[str]:
        seen: list[str] = []
        for row in self.messages:
            if row.created_at >= since_ms and row.channel_id not in seen:
                seen.append(row.channel_id)
        return seen


class FakeGeneration:
    def __init__(self, text: str, provider: str = "openai", model: str = "gpt-test") -> None:
        self.text = text
        self.provider = provider
        self.model = model


class FakeGenerator:
    """Returns queued texts in order; an Exception in the queue is raised instead."""

    def __init__(self, *responses: Any) -> None:
        self.responses = list(responses)
        self.calls: list[dict[str, Any]] = []

    async def generate(self, **kwargs: Any) -> FakeGeneration:
        self.calls.append(kwargs)
        if not self.responses:
            raise RuntimeError("no scripted response")
        value = self.responses.pop(0)
        if isinstance(value, Exception):
            raise value
        return FakeGeneration(str(value))


class FakeTransport(ChatTransport):
    """Records outbound calls; ``login`` and the first ``fail_sends`` sends can be scripted to fail."""

    def __init__(self, *, bot_user_id: str = "999", fail_login: bool = False, fail_sends: int = 0) -> None:
        super().__init__(event_queue_size=50)
        self._bot_user_id = bot_user_id
        self.fail_login = fail_login
        self.fail_sends = fail_sends
        self.ready = False
        self.logins = 0
        self.destroys = 0
        self.sent: list[tuple[str, str]] = []
        self.replies: list[tuple[str, str]] = []
        self.reactions: list[tuple[str, str]] = []
        self.typing: list[str] = []
        self._ids = 0

    @property
    def bot_user_id(self) -> str | None:
        return self._bot_user_id

    def is_ready(self) -> bool:
        return self.ready

    async def login(self) -> None:
        self.logins += 1
        if self.fail_login:
            raise ConnectionLoss("gateway unreachable")
        self.ready = True

    async def destroy(self) -> None:
        self.destroys += 1
        self.ready = False

    def _next_id(self, channel_id: str) -> str:
        self._ids += 1
        return f"{channel_id}:bot{self._ids}"

    def _maybe_fail(self) -> None:
        if self.fail_sends > 0:
            self.fail_sends -= 1
            raise TransientDispatchError("send failed")

    async def send(self, channel_id: str, payload: str) -> str | None:
        self._maybe_fail()
        self.sent.append((channel_id, payload))
        return self._next_id(channel_id)

    async def reply(self, event_id: str, payload: str) -> str | None:
        self._maybe_fail()
        self.replies.append((event_id, payload))
        return self._next_id(event_id.split(":", 1)[0])

    async def send_typing(self, channel_id: str) -> None:
        self.typing.append(channel_id)

    async def react(self, event_id: str, emoji: str) -> None:
        self.reactions.append((event_id, emoji))
