"""Telegram chat transport (long polling)."""

from __future__ import annotations

import asyncio
from typing import Any

import httpx
import structlog

from clanker.channels.base import ChatTransport, TransportEvent
from clanker.config import TelegramConfig
from clanker.errors import ConnectionLoss, TransientDispatchError
from clanker.models import IncomingEvent
from clanker.utils import Clock, now_ms

logger = structlog.get_logger()

API_ROOT = "https://api.telegram.org"


def make_event_id(chat_id: Any, message_id: Any) -> str:
    return f"{chat_id}:{message_id}"


def split_event_id(event_id: str) -> tuple[str, int]:
    chat_id, _, message_id = str(event_id).rpartition(":")
    if not chat_id or not message_id.lstrip("-").isdigit():
        raise ValueError(f"Not a telegram event id: {event_id!r}")
    return chat_id, int(message_id)


class TelegramTransport(ChatTransport):
    def __init__(
        self,
        *,
        config: TelegramConfig,
        clock: Clock = now_ms,
        http_transport: httpx.AsyncBaseTransport | None = None,
        api_root: str = API_ROOT,
    ) -> None:
        super().__init__(event_queue_size=config.event_queue_size)
        self.config = config
        self._clock = clock
        self._http_transport = http_transport
        self._api_base = f"{api_root}/bot{config.bot_token.strip()}"

        self._client: httpx.AsyncClient | None = None
        self._task: asyncio.Task[None] | None = None
        self._ready = False
        self._offset = 0
        self._bot_user_id: str | None = None
        self._bot_username: str | None = None

    @property
    def bot_user_id(self) -> str | None:
        return self._bot_user_id

    def is_ready(self) -> bool:
        return self._ready

    async def login(self) -> None:
        timeout = httpx.Timeout(
            connect=10.0,
            read=self.config.poll_timeout_s + 10.0,
            write=10.0,
            pool=10.0,
        )
        self._client = httpx.AsyncClient(timeout=timeout, transport=self._http_transport)
        try:
            await self._load_bot_identity()
        except Exception as e:
            await self._close_client()
            raise ConnectionLoss(f"Telegram login failed: {e}") from e

        self._ready = True
        self.publish(TransportEvent(kind="ready"))
        self._task = asyncio.create_task(self._poll_loop(), name="transport-telegram-poll")
        logger.info("transport.telegram.ready", bot_user_id=self._bot_user_id)

    async def destroy(self) -> None:
        self._ready = False
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None
        await self._close_client()

    async def _close_client(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _load_bot_identity(self) -> None:
        resp = await self._http().get(f"{self._api_base}/getMe")
        resp.raise_for_status()
        payload = resp.json()
        if not payload.get("ok"):
            raise RuntimeError(f"Telegram getMe failed: {payload}")
        result = payload.get("result") or {}
        self._bot_user_id = str(result.get("id")) if result.get("id") is not None else None
        username = result.get("username")
        if isinstance(username, str) and username.strip():
            self._bot_username = username.strip().lower()

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            raise ConnectionLoss("Telegram transport is not logged in")
        return self._client

    # ── Inbound ─────────────────────────────────────────────────────

    async def _poll_loop(self) -> None:
        failing = False
        while True:
            try:
                updates = await self._get_updates()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning("transport.telegram.poll_error", error=str(e))
                if self._ready:
                    self._ready = False
                    self.publish(TransportEvent(kind="shard_disconnect", error=str(e)))
                else:
                    self.publish(TransportEvent(kind="shard_error", error=str(e)))
                failing = True
                await asyncio.sleep(self.config.retry_delay_s)
                continue

            if failing:
                failing = False
                self._ready = True
                self.publish(TransportEvent(kind="shard_resume"))

            for update in updates:
                self._process_update(update)

    async def _get_updates(self) -> list[dict[str, Any]]:
        resp = await self._http().get(
            f"{self._api_base}/getUpdates",
            params={
                "offset": self._offset,
                "timeout": self.config.poll_timeout_s,
            },
        )
        resp.raise_for_status()
        payload = resp.json()
        if not payload.get("ok"):
            raise RuntimeError(f"Telegram getUpdates failed: {payload}")

        result = payload.get("result", [])
        if not isinstance(result, list):
            return []
        return [item for item in result if isinstance(item, dict)]

    def _process_update(self, update: dict[str, Any]) -> None:
        update_id = update.get("update_id")
        if isinstance(update_id, int):
            self._offset = max(self._offset, update_id + 1)

        message = update.get("message")
        if not isinstance(message, dict):
            return
        event = self.to_incoming_event(message)
        if event is None:
            return
        self.publish(TransportEvent(kind="message_create", message=event))

    def to_incoming_event(self, message: dict[str, Any]) -> IncomingEvent | None:
        """Normalize a Telegram message object; None for non-text messages."""
        chat = message.get("chat") or {}
        chat_id = chat.get("id")
        message_id = message.get("message_id")
        text = (message.get("text") or message.get("caption") or "").strip()
        if chat_id is None or message_id is None or not text:
            return None

        sender = message.get("from") or {}
        author_name = str(
            sender.get("username") or sender.get("first_name") or sender.get("id") or ""
        )

        referenced_id = None
        reply_to_author_id = None
        replied = message.get("reply_to_message")
        if isinstance(replied, dict) and replied.get("message_id") is not None:
            referenced_id = make_event_id(chat_id, replied["message_id"])
            replied_from = replied.get("from") or {}
            if replied_from.get("id") is not None:
                reply_to_author_id = str(replied_from["id"])

        date = message.get("date")
        created_at = float(date) * 1000.0 if isinstance(date, (int, float)) else self._clock()

        return IncomingEvent(
            id=make_event_id(chat_id, message_id),
            channel_id=str(chat_id),
            author_id=str(sender.get("id") or ""),
            content=text,
            created_at=created_at,
            referenced_id=referenced_id,
            author_name=author_name,
            author_is_bot=bool(sender.get("is_bot")),
            mentions_bot=self._has_bot_mention(text),
            reply_to_author_id=reply_to_author_id,
        )

    def _has_bot_mention(self, text: str) -> bool:
        if not self._bot_username:
            return False
        return f"@{self._bot_username}" in text.lower()

    # ── Outbound ────────────────────────────────────────────────────

    async def send(self, channel_id: str, payload: str) -> str | None:
        return await self._send_chunks(channel_id, payload, reply_to=None)

    async def reply(self, event_id: str, payload: str) -> str | None:
        chat_id, message_id = split_event_id(event_id)
        return await self._send_chunks(chat_id, payload, reply_to=message_id)

    async def send_typing(self, channel_id: str) -> None:
        try:
            await self._call("sendChatAction", {"chat_id": channel_id, "action": "typing"})
        except TransientDispatchError as e:
            logger.debug("transport.telegram.typing_failed", error=str(e))

    async def react(self, event_id: str, emoji: str) -> None:
        chat_id, message_id = split_event_id(event_id)
        await self._call(
            "setMessageReaction",
            {
                "chat_id": chat_id,
                "message_id": message_id,
                "reaction": [{"type": "emoji", "emoji": emoji}],
            },
        )

    async def _send_chunks(self, chat_id: str, text: str, *, reply_to: int | None) -> str | None:
        sent_id: str | None = None
        for index, chunk in enumerate(self._chunk_text(text)):
            body: dict[str, Any] = {
                "chat_id": chat_id,
                "text": chunk,
                "disable_web_page_preview": True,
            }
            if reply_to is not None and index == 0:
                body["reply_parameters"] = {
                    "message_id": reply_to,
                    "allow_sending_without_reply": True,
                }
            try:
                result = await self._call("sendMessage", body)
            except TransientDispatchError as e:
                if sent_id is None:
                    raise
                # Earlier chunks are already visible; a retry would repeat them.
                logger.warning(
                    "transport.telegram.partial_send",
                    chat_id=chat_id,
                    sent_chunks=index,
                    error=str(e),
                )
                return sent_id
            if isinstance(result, dict) and result.get("message_id") is not None:
                sent_id = make_event_id(chat_id, result["message_id"])
        return sent_id

    async def _call(self, method: str, body: dict[str, Any]) -> Any:
        try:
            resp = await self._http().post(f"{self._api_base}/{method}", json=body)
        except httpx.HTTPError as e:
            raise TransientDispatchError(f"{method} failed: {e}") from e
        if resp.status_code >= 400:
            logger.warning(
                "transport.telegram.send_failed",
                method=method,
                status_code=resp.status_code,
                body=resp.text[:300],
            )
            raise TransientDispatchError(f"{method} returned HTTP {resp.status_code}")
        payload = resp.json()
        if not payload.get("ok"):
            raise TransientDispatchError(f"{method} rejected: {payload.get('description')}")
        return payload.get("result")

    def _chunk_text(self, text: str) -> list[str]:
        content = (text or "").strip()
        if not content:
            return []
        if len(content) <= self.config.max_message_chars:
            return [content]

        chunks: list[str] = []
        start = 0
        while start < len(content):
            end = min(start + self.config.max_message_chars, len(content))
            chunks.append(content[start:end])
            start = end
        return chunks
