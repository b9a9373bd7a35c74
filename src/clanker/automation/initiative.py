"""Initiative scheduler: decides when the bot posts without being asked."""

from __future__ import annotations

import asyncio
import math
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

import structlog

from clanker.addressing.admission import is_channel_allowed
from clanker.budget import BudgetTracker, SpeechCooldown
from clanker.config import BotSettings
from clanker.models import ScheduleDecision
from clanker.utils import DAY_MS, Clock, Sleeper, clamp, ms_from_iso, now_ms

logger = structlog.get_logger()

INITIATIVE_TICK_MS = 60_000

Poster = Callable[[str, BotSettings, ScheduleDecision], Awaitable[bool]]


# ── Pacing math ─────────────────────────────────────────────────────


def average_interval_ms(settings: BotSettings) -> int:
    per_day = max(settings.initiative.max_posts_per_day, 1)
    return math.floor(DAY_MS / per_day)


def posting_interval_ms(settings: BotSettings) -> float:
    min_by_gap = settings.initiative.min_minutes_between_posts * 60_000
    return max(min_by_gap, average_interval_ms(settings))


def min_gap_ms(settings: BotSettings) -> float:
    return max(1.0, (settings.initiative.min_minutes_between_posts or 0) * 60_000)


def evaluate_spontaneous(
    settings: BotSettings,
    *,
    last_post_at: float | None,
    elapsed_ms: float | None,
    posts_24h: int,
    min_gap: float,
    rng: random.Random,
    tick_ms: float = INITIATIVE_TICK_MS,
) -> ScheduleDecision:
    spontaneity = clamp(settings.initiative.spontaneity or 0, 0, 100) / 100
    max_per_day = max(settings.initiative.max_posts_per_day or 1, 1)
    average = average_interval_ms(settings)

    if not last_post_at or elapsed_ms is None:
        chance = 0.05 + spontaneity * 0.12
        roll = rng.random()
        post = roll < chance
        return ScheduleDecision(
            should_post=post,
            mode="spontaneous",
            trigger="spontaneous_seed_post" if post else "spontaneous_seed_wait",
            chance=round(chance, 4),
            roll=round(roll, 4),
            elapsed_ms=None,
            required_interval_ms=average,
        )

    ramp = max(average - min_gap, tick_ms)
    progress = clamp((elapsed_ms - min_gap) / ramp, 0, 1)
    base = 0.015 + spontaneity * 0.03
    peak = 0.1 + spontaneity * 0.28
    cap_pressure = clamp(posts_24h / max_per_day, 0, 1)
    cap_modifier = 1 - cap_pressure * 0.6
    chance = clamp((base + (peak - base) * progress) * cap_modifier, 0.005, 0.6)
    force_after = max(min_gap, round(average * (1.6 - spontaneity * 0.55)))

    if elapsed_ms >= force_after:
        return ScheduleDecision(
            should_post=True,
            mode="spontaneous",
            trigger="spontaneous_force_due",
            chance=round(chance, 4),
            roll=None,
            elapsed_ms=elapsed_ms,
            required_interval_ms=force_after,
        )

    roll = rng.random()
    post = roll < chance
    return ScheduleDecision(
        should_post=post,
        mode="spontaneous",
        trigger="spontaneous_roll_due" if post else "spontaneous_roll_wait",
        chance=round(chance, 4),
        roll=round(roll, 4),
        elapsed_ms=elapsed_ms,
        required_interval_ms=force_after,
    )


def evaluate_schedule(
    settings: BotSettings,
    *,
    startup: bool,
    last_post_at: float | None,
    elapsed_ms: float | None,
    posts_24h: int,
    rng: random.Random,
    tick_ms: float = INITIATIVE_TICK_MS,
) -> ScheduleDecision:
    """Whether an initiative post is due right now, with the reason why (or why not)."""
    mode = settings.initiative.pacing_mode
    gap = min_gap_ms(settings)
    has_last = bool(last_post_at) and elapsed_ms is not None

    if startup and not settings.initiative.post_on_startup:
        return ScheduleDecision(should_post=False, mode=mode, trigger="startup_disabled")

    if not startup and has_last and elapsed_ms < gap:
        return ScheduleDecision(
            should_post=False,
            mode=mode,
            trigger="min_gap_block",
            elapsed_ms=elapsed_ms,
            required_interval_ms=gap,
        )

    if startup and not last_post_at:
        return ScheduleDecision(should_post=True, mode=mode, trigger="startup_bootstrap")

    if mode == "even":
        required = posting_interval_ms(settings)
        due = not has_last or elapsed_ms >= required
        return ScheduleDecision(
            should_post=due,
            mode=mode,
            trigger="even_due" if due else "even_wait",
            elapsed_ms=elapsed_ms,
            required_interval_ms=required,
        )

    if startup and has_last and elapsed_ms < gap:
        return ScheduleDecision(
            should_post=False,
            mode=mode,
            trigger="startup_min_gap_block",
            elapsed_ms=elapsed_ms,
            required_interval_ms=gap,
        )

    return evaluate_spontaneous(
        settings,
        last_post_at=last_post_at,
        elapsed_ms=elapsed_ms,
        posts_24h=posts_24h,
        min_gap=gap,
        rng=rng,
        tick_ms=tick_ms,
    )


# ── Scheduler ───────────────────────────────────────────────────────


@dataclass
class InitiativeOutcome:
    posted: bool
    reason: str
    decision: ScheduleDecision | None = None
    channel_id: str | None = None


class InitiativeScheduler:
    """Runs the initiative cycle once per tick and once at startup."""

    def __init__(
        self,
        *,
        store,
        budgets: BudgetTracker,
        cooldown: SpeechCooldown,
        poster: Poster,
        rng: random.Random | None = None,
        tick_seconds: float = INITIATIVE_TICK_MS / 1000,
        clock: Clock = now_ms,
        sleep: Sleeper = asyncio.sleep,
    ) -> None:
        self.store = store
        self.budgets = budgets
        self.cooldown = cooldown
        self.poster = poster
        self.rng = rng or random.Random()
        self.tick_seconds = tick_seconds
        self._clock = clock
        self._sleep = sleep
        self._running = False
        self._posting = False
        self._task: asyncio.Task[None] | None = None

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._loop(), name="clanker-initiative-scheduler")

    async def stop(self) -> None:
        self._running = False
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None

    async def _loop(self) -> None:
        while self._running:
            await self._sleep(self.tick_seconds)
            if not self._running:
                break
            try:
                await self.run_cycle()
            except Exception as exc:
                logger.warning("initiative.cycle.error", error=str(exc))
                await self.store.log_action("bot_error", content=f"initiative_cycle: {exc}")

    async def run_cycle(self, *, startup: bool = False) -> InitiativeOutcome:
        if self._posting:
            return self._skip("already_running")
        self._posting = True
        try:
            return await self._run_cycle(startup)
        finally:
            self._posting = False

    async def _run_cycle(self, startup: bool) -> InitiativeOutcome:
        settings: BotSettings = await self.store.get_settings()
        if not settings.initiative.enabled:
            return self._skip("disabled")
        if not settings.permissions.initiative_channel_ids:
            return self._skip("no_channels")
        if settings.initiative.max_posts_per_day <= 0:
            return self._skip("daily_cap_disabled")
        message_budget = await self.budgets.message_budget(settings)
        if not message_budget.can_act:
            return self._skip("message_budget_exhausted")

        daily = await self.budgets.initiative_budget(settings)
        if daily.used >= settings.initiative.max_posts_per_day:
            return self._skip("daily_cap_reached")

        last_post_at = ms_from_iso(await self.store.get_last_action_time("initiative_post"))
        now = self._clock()
        elapsed = now - last_post_at if last_post_at else None
        decision = evaluate_schedule(
            settings,
            startup=startup,
            last_post_at=last_post_at,
            elapsed_ms=elapsed,
            posts_24h=daily.used,
            rng=self.rng,
            tick_ms=self.tick_seconds * 1000,
        )
        logger.info(
            "initiative.decision",
            startup=startup,
            should_post=decision.should_post,
            mode=decision.mode,
            trigger=decision.trigger,
            chance=decision.chance,
            roll=decision.roll,
            elapsed_ms=decision.elapsed_ms,
            required_interval_ms=decision.required_interval_ms,
        )
        if not decision.should_post:
            return InitiativeOutcome(False, decision.trigger, decision)

        channel_id, reason = self.pick_channel(settings)
        if channel_id is None:
            return self._skip(reason, decision)

        posted = await self.poster(channel_id, settings, decision)
        return InitiativeOutcome(
            posted,
            decision.trigger if posted else "post_declined",
            decision,
            channel_id,
        )

    def pick_channel(self, settings: BotSettings) -> tuple[str | None, str]:
        """Random allowed initiative channel whose cooldown has elapsed."""
        ids = [cid.strip() for cid in settings.permissions.initiative_channel_ids if cid.strip()]
        self.rng.shuffle(ids)
        allowed = [cid for cid in ids if is_channel_allowed(settings, cid)]
        if not allowed:
            return None, "no_channel_available"
        for cid in allowed:
            if self.cooldown.wait_ms(cid, settings) <= 0:
                return cid, "picked"
        return None, "cooldown_block"

    def _skip(self, reason: str, decision: ScheduleDecision | None = None) -> InitiativeOutcome:
        logger.debug("initiative.skipped", reason=reason)
        return InitiativeOutcome(False, reason, decision)
