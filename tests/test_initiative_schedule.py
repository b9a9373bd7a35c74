import asyncio
import random

import pytest

from clanker.automation.initiative import (
    InitiativeScheduler,
    average_interval_ms,
    evaluate_schedule,
    posting_interval_ms,
)
from clanker.budget import BudgetTracker, SpeechCooldown
from clanker.config import BotSettings
from clanker.models import ScheduleDecision

from conftest import FakeClock, FakeStore


class _FixedRandom(random.Random):
    def __init__(self, value: float) -> None:
        super().__init__(0)
        self.value = value

    def random(self) -> float:
        return self.value


def _settings(**initiative) -> BotSettings:
    base = {"enabled": True}
    base.update(initiative)
    return BotSettings().merged(
        {"initiative": base, "permissions": {"initiative_channel_ids": ["c1"]}}
    )


def _evaluate(settings: BotSettings, *, elapsed: float | None, startup: bool = False, roll: float = 0.99, posts: int = 0):
    return evaluate_schedule(
        settings,
        startup=startup,
        last_post_at=None if elapsed is None else 1_000.0,
        elapsed_ms=elapsed,
        posts_24h=posts,
        rng=_FixedRandom(roll),
    )


def test_even_pacing_interval() -> None:
    settings = _settings(max_posts_per_day=6, min_minutes_between_posts=120)
    assert average_interval_ms(settings) == 14_400_000
    assert posting_interval_ms(settings) == 14_400_000

    assert _evaluate(settings, elapsed=14_399_000).trigger == "even_wait"
    due = _evaluate(settings, elapsed=14_400_000)
    assert due.should_post is True
    assert due.trigger == "even_due"


def test_min_gap_blocks_every_mode() -> None:
    for mode in ("even", "spontaneous"):
        decision = _evaluate(_settings(pacing_mode=mode), elapsed=60_000, roll=0.0)
        assert decision.should_post is False
        assert decision.trigger == "min_gap_block"


def test_startup_rules() -> None:
    assert _evaluate(_settings(), elapsed=None, startup=True).trigger == "startup_disabled"
    boot = _evaluate(_settings(post_on_startup=True), elapsed=None, startup=True)
    assert boot.should_post is True
    assert boot.trigger == "startup_bootstrap"


def test_spontaneous_seed_roll() -> None:
    settings = _settings(pacing_mode="spontaneous", spontaneity=80)

    posted = _evaluate(settings, elapsed=None, roll=0.1)
    waited = _evaluate(settings, elapsed=None, roll=0.5)

    assert posted.trigger == "spontaneous_seed_post"
    assert waited.trigger == "spontaneous_seed_wait"
    assert posted.chance == pytest.approx(0.146)


def test_spontaneous_force_after_long_silence() -> None:
    settings = _settings(
        pacing_mode="spontaneous",
        spontaneity=80,
        max_posts_per_day=10,
        min_minutes_between_posts=20,
    )

    decision = _evaluate(settings, elapsed=10_100_000, roll=0.99)

    assert decision.should_post is True
    assert decision.trigger == "spontaneous_force_due"
    assert decision.roll is None
    assert decision.required_interval_ms <= 10_100_000


def test_spontaneous_chance_is_bounded_and_drops_near_cap() -> None:
    settings = _settings(pacing_mode="spontaneous", spontaneity=100, max_posts_per_day=10, min_minutes_between_posts=20)

    fresh = _evaluate(settings, elapsed=5_000_000, roll=0.99, posts=0)
    crowded = _evaluate(settings, elapsed=5_000_000, roll=0.99, posts=9)

    assert fresh.trigger == "spontaneous_roll_wait"
    assert 0.005 <= crowded.chance < fresh.chance <= 0.6


def _scheduler(clock: FakeClock, settings: BotSettings, posted: bool = True):
    store = FakeStore(clock, settings)
    cooldown = SpeechCooldown(clock)
    calls: list[tuple[str, ScheduleDecision]] = []

    async def poster(channel_id: str, settings: BotSettings, decision: ScheduleDecision) -> bool:
        calls.append((channel_id, decision))
        if posted:
            await store.log_action("initiative_post", channel_id=channel_id)
        return posted

    scheduler = InitiativeScheduler(
        store=store,
        budgets=BudgetTracker(store, clock),
        cooldown=cooldown,
        poster=poster,
        rng=random.Random(7),
        clock=clock,
        sleep=clock.sleep,
    )
    return scheduler, store, cooldown, calls


def test_cycle_posts_when_due() -> None:
    scheduler, store, _, calls = _scheduler(FakeClock(), _settings())

    outcome = asyncio.run(scheduler.run_cycle())

    assert outcome.posted is True
    assert outcome.channel_id == "c1"
    assert calls[0][1].trigger == "even_due"


def test_cycle_early_exits() -> None:
    clock = FakeClock()
    disabled = BotSettings()
    assert asyncio.run(_scheduler(clock, disabled)[0].run_cycle()).reason == "disabled"

    no_channels = BotSettings().merged({"initiative": {"enabled": True}})
    assert asyncio.run(_scheduler(clock, no_channels)[0].run_cycle()).reason == "no_channels"

    no_cap = _settings(max_posts_per_day=0)
    assert asyncio.run(_scheduler(clock, no_cap)[0].run_cycle()).reason == "daily_cap_disabled"


def test_cycle_respects_daily_cap() -> None:
    clock = FakeClock()
    scheduler, store, _, calls = _scheduler(clock, _settings(max_posts_per_day=2))
    store.add_action("initiative_post", clock() - 10 * 60 * 60 * 1000)
    store.add_action("initiative_post", clock() - 5 * 60 * 60 * 1000)

    outcome = asyncio.run(scheduler.run_cycle())

    assert outcome.reason == "daily_cap_reached"
    assert calls == []


def test_cycle_respects_message_budget() -> None:
    clock = FakeClock()
    settings = _settings().merged({"permissions": {"max_messages_per_hour": 1}})
    scheduler, store, _, _ = _scheduler(clock, settings)
    store.add_action("sent_reply", clock())

    assert asyncio.run(scheduler.run_cycle()).reason == "message_budget_exhausted"


def test_cycle_respects_channel_cooldown() -> None:
    clock = FakeClock()
    scheduler, _, cooldown, calls = _scheduler(clock, _settings())
    cooldown.mark_spoke("c1")

    outcome = asyncio.run(scheduler.run_cycle())

    assert outcome.reason == "cooldown_block"
    assert calls == []


def test_declined_post_is_reported() -> None:
    scheduler, _, _, _ = _scheduler(FakeClock(), _settings(), posted=False)
    assert asyncio.run(scheduler.run_cycle()).reason == "post_declined"


def test_blocked_channels_are_never_picked() -> None:
    settings = _settings().merged({"permissions": {"blocked_channel_ids": ["c1"]}})
    scheduler, _, _, _ = _scheduler(FakeClock(), settings)
    assert scheduler.pick_channel(settings) == (None, "no_channel_available")
