"""Sliding-window action budgets and the per-channel speech cooldown."""

from __future__ import annotations

from collections.abc import Iterable
from typing import Protocol

from clanker.config import BotSettings
from clanker.models import Budget
from clanker.utils import DAY_MS, HOUR_MS, Clock, iso_from_ms, now_ms

MESSAGE_ACTION_KINDS = ("sent_reply", "sent_message", "initiative_post")
REACTION_ACTION_KINDS = ("reacted",)
INITIATIVE_ACTION_KINDS = ("initiative_post",)


class ActionCounter(Protocol):
    async def count_actions_since(self, kinds: str | list[str], since_iso: str) -> int:
        ...


class BudgetTracker:
    """Derives budgets from the action log on every query. Nothing is cached."""

    def __init__(self, store: ActionCounter, clock: Clock = now_ms) -> None:
        self.store = store
        self._clock = clock

    async def snapshot(
        self,
        kinds: str | Iterable[str],
        window_ms: float,
        max_per_window: int,
    ) -> Budget:
        kind_list = [kinds] if isinstance(kinds, str) else list(kinds)
        since = iso_from_ms(self._clock() - window_ms)
        used = await self.store.count_actions_since(kind_list, since)
        return Budget(
            kind="+".join(kind_list),
            window_ms=window_ms,
            max_per_window=max(0, int(max_per_window)),
            used=int(used),
        )

    async def message_budget(self, settings: BotSettings) -> Budget:
        return await self.snapshot(
            MESSAGE_ACTION_KINDS,
            HOUR_MS,
            settings.permissions.max_messages_per_hour,
        )

    async def reaction_budget(self, settings: BotSettings) -> Budget:
        return await self.snapshot(
            REACTION_ACTION_KINDS,
            HOUR_MS,
            settings.permissions.max_reactions_per_hour,
        )

    async def initiative_budget(self, settings: BotSettings) -> Budget:
        return await self.snapshot(
            INITIATIVE_ACTION_KINDS,
            DAY_MS,
            settings.initiative.max_posts_per_day,
        )


class SpeechCooldown:
    """Remembers when the bot last spoke in each channel."""

    def __init__(self, clock: Clock = now_ms) -> None:
        self._clock = clock
        self._last_spoke: dict[str, float] = {}

    def mark_spoke(self, channel_id: str, at_ms: float | None = None) -> None:
        self._last_spoke[str(channel_id)] = self._clock() if at_ms is None else at_ms

    def last_spoke_at(self, channel_id: str) -> float | None:
        return self._last_spoke.get(str(channel_id))

    def channels(self) -> list[str]:
        return list(self._last_spoke)

    def wait_ms(self, channel_id: str, settings: BotSettings) -> float:
        """Milliseconds left before the bot may speak in ``channel_id`` again."""
        last = self._last_spoke.get(str(channel_id))
        if last is None:
            return 0.0
        gap_ms = settings.activity.min_seconds_between_messages * 1000.0
        return max(0.0, gap_ms - (self._clock() - last))
