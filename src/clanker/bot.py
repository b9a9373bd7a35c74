"""Runtime handle that wires every clanker component together."""

from __future__ import annotations

import asyncio
import random
from typing import Any

import structlog

from clanker.addressing.admission import (
    ReplyAdmissionPolicy,
    gate_failure,
    is_channel_allowed,
)
from clanker.addressing.confidence import AddressConfidenceClassifier
from clanker.automation.initiative import InitiativeScheduler
from clanker.budget import BudgetTracker, SpeechCooldown
from clanker.channels.base import ChatTransport, TransportEvent
from clanker.config import BotSettings, ClankerConfig
from clanker.db.engine import Database
from clanker.errors import ConnectionLoss, TransientDispatchError
from clanker.gateway.monitor import GatewayResilienceMonitor
from clanker.llm.gateway import LLMGateway
from clanker.logging import bind_runtime
from clanker.models import IncomingEvent, ReplyTurn, ScheduleDecision, StoredMessage
from clanker.prompts import (
    build_initiative_prompt,
    build_reply_prompt,
    build_system_prompt,
    parse_reply_directive,
)
from clanker.queue.reply_queue import PerChannelReplyQueue
from clanker.utils import HOUR_MS, Clock, Sleeper, iso_from_ms, now_ms

logger = structlog.get_logger()

STARTUP_FOLLOWUP_WINDOW = 5


def event_from_stored(row: StoredMessage) -> IncomingEvent:
    return IncomingEvent(
        id=row.message_id,
        channel_id=row.channel_id,
        author_id=row.author_id,
        content=row.content,
        created_at=row.created_at,
        referenced_id=row.referenced_message_id,
        author_name=row.author_name,
        author_is_bot=row.is_bot,
    )


def has_followup_after(
    messages: list[StoredMessage],
    index: int,
    bot_user_id: str | None,
    window: int = STARTUP_FOLLOWUP_WINDOW,
) -> bool:
    """The bot already answered ``messages[index]`` (oldest-first list) by reply or nearby turn."""
    if not bot_user_id or not 0 <= index < len(messages):
        return False
    trigger_id = messages[index].message_id
    later = messages[index + 1 :]
    for row in later:
        if row.author_id == bot_user_id and row.referenced_message_id == trigger_id:
            return True
    return any(row.author_id == bot_user_id for row in later[: max(1, window)])


class ClankerBot:
    """Explicit runtime context passed to every component."""

    def __init__(
        self,
        *,
        config: ClankerConfig,
        store: Database,
        transport: ChatTransport,
        generator: LLMGateway | Any,
        rng: random.Random | None = None,
        clock: Clock = now_ms,
        sleep: Sleeper = asyncio.sleep,
    ) -> None:
        self.config = config
        self.store = store
        self.transport = transport
        self.generator = generator
        self.rng = rng or random.Random()
        self._clock = clock
        self._sleep = sleep

        self.budgets = BudgetTracker(store, clock)
        self.cooldown = SpeechCooldown(clock)
        self.classifier = AddressConfidenceClassifier(generator)
        self.policy = ReplyAdmissionPolicy(self.classifier, self.rng)
        self.queue = PerChannelReplyQueue(
            store=store,
            dispatch=self.dispatch_reply,
            budgets=self.budgets,
            cooldown=self.cooldown,
            bot_user_id=lambda: self.transport.bot_user_id,
            clock=clock,
            sleep=sleep,
        )
        self.monitor = GatewayResilienceMonitor(
            transport=transport,
            store=store,
            config=config.gateway,
            clock=clock,
            sleep=sleep,
        )
        self.initiative = InitiativeScheduler(
            store=store,
            budgets=self.budgets,
            cooldown=self.cooldown,
            poster=self.post_initiative,
            rng=self.rng,
            tick_seconds=config.initiative_tick_seconds,
            clock=clock,
            sleep=sleep,
        )

        self._stopping = False
        self._dispatcher_task: asyncio.Task[None] | None = None
        self._startup_task: asyncio.Task[None] | None = None

    @property
    def bot_user_id(self) -> str | None:
        return self.transport.bot_user_id

    # ── Lifecycle ───────────────────────────────────────────────────

    async def start(self) -> None:
        self._stopping = False
        try:
            await self.transport.login()
        except ConnectionLoss as exc:
            logger.error("clanker.login_failed", error=str(exc))
            await self.store.log_action("bot_error", content=f"gateway_login_failed: {exc}")
            self.monitor.schedule_reconnect(
                "initial_login_failed",
                self.config.gateway.reconnect_base_delay_seconds * 1000.0,
            )

        await self.monitor.start()
        await self.initiative.start()
        settings = await self.store.get_settings()
        bind_runtime(bot_name=settings.bot_name, bot_user_id=self.bot_user_id)
        self._dispatcher_task = asyncio.create_task(self._consume_events(), name="clanker-dispatcher")
        self._startup_task = asyncio.create_task(self._delayed_startup(), name="clanker-startup")
        logger.info("clanker.started")

    async def stop(self) -> None:
        self._stopping = True
        await self.initiative.stop()
        await self.monitor.stop()
        await self.queue.stop()
        for task in (self._startup_task, self._dispatcher_task):
            if task and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._startup_task = None
        self._dispatcher_task = None
        try:
            await self.transport.destroy()
        except Exception as exc:
            logger.warning("clanker.transport_destroy_failed", error=str(exc))
        logger.info("clanker.stopped")

    async def _consume_events(self) -> None:
        while not self._stopping:
            event = await self.transport.events.get()
            try:
                await self.handle_transport_event(event)
            except Exception as exc:
                logger.exception("clanker.event_failed", kind=event.kind, error=str(exc))

    async def _delayed_startup(self) -> None:
        await self._sleep(self.config.startup_task_delay_seconds)
        try:
            await self.run_startup_tasks()
        except Exception as exc:
            logger.warning("clanker.startup_tasks_failed", error=str(exc))
            await self.store.log_action("bot_error", content=f"startup_tasks: {exc}")

    async def run_startup_tasks(self) -> None:
        settings = await self.store.get_settings()
        await self.run_startup_catchup(settings)
        await self.initiative.run_cycle(startup=True)

    # ── Inbound ─────────────────────────────────────────────────────

    async def handle_transport_event(self, event: TransportEvent) -> None:
        await self.monitor.handle_event(event)
        if event.kind == "message_create" and event.message is not None:
            await self.handle_message(event.message)

    async def handle_message(self, event: IncomingEvent) -> bool:
        """Record an inbound message and queue it for a reply when admitted."""
        if self._stopping:
            return False
        settings = await self.store.get_settings()
        await self.store.record_message(
            message_id=event.id,
            channel_id=event.channel_id,
            author_id=event.author_id,
            author_name=event.author_name,
            is_bot=event.author_is_bot or event.author_id == self.bot_user_id,
            content=event.content,
            created_at_ms=event.created_at,
            referenced_message_id=event.referenced_id,
        )

        recent = await self.store.get_recent_messages(
            event.channel_id, settings.memory.max_recent_messages
        )
        decision = await self.policy.evaluate(settings, event, recent, self.bot_user_id)
        if not decision.admitted:
            return False
        return await self.queue.enqueue(
            event,
            source="message_event",
            force_respond=decision.force_respond,
            address_signal=decision.signal,
        )

    # ── Replies ─────────────────────────────────────────────────────

    async def dispatch_reply(self, turn: ReplyTurn, settings: BotSettings) -> bool:
        """Generate and send a reply for a burst. False when nothing was sent."""
        channel_id = turn.channel_id
        if not settings.permissions.allow_replies:
            return False
        if not (await self.budgets.message_budget(settings)).can_act:
            return False
        if self.cooldown.wait_ms(channel_id, settings) > 0:
            return False

        recent = await self.store.get_recent_messages(channel_id, settings.memory.max_recent_messages)
        can_react = (
            settings.permissions.allow_reactions
            and (await self.budgets.reaction_budget(settings)).can_act
        )
        await self.transport.send_typing(channel_id)
        generation = await self.generator.generate(
            system_prompt=build_system_prompt(settings),
            user_prompt=build_reply_prompt(turn, recent, settings, allow_reaction=can_react),
            settings=settings.llm,
            trace={"channel_id": channel_id, "message_id": turn.event.id, "source": turn.source},
        )
        directive = parse_reply_directive(generation.text)
        metadata: dict[str, Any] = {
            "trigger_message_id": turn.event.id,
            "trigger_message_ids": turn.trigger_message_ids,
            "source": turn.source,
            "force_respond": turn.force_respond,
            "address_signal": turn.address_signal.as_dict() if turn.address_signal else None,
            "llm_provider": generation.provider,
            "llm_model": generation.model,
        }

        react = bool(directive.reaction and can_react)

        if directive.skip or not directive.text:
            if react:
                await self._react(turn, directive.reaction)
            await self.store.log_action(
                "reply_skipped",
                channel_id=channel_id,
                message_id=turn.event.id,
                user_id=turn.event.author_id,
                content="[SKIP]",
                metadata=metadata,
            )
            logger.info("clanker.reply_skipped", channel_id=channel_id, message_id=turn.event.id)
            return False

        as_reply = turn.force_respond or bool(turn.address_signal and turn.address_signal.direct)
        if as_reply:
            sent_id = await self.transport.reply(turn.event.id, directive.text)
        else:
            sent_id = await self.transport.send(channel_id, directive.text)

        kind = "sent_reply" if as_reply else "sent_message"
        await self.store.log_action(
            kind,
            channel_id=channel_id,
            message_id=sent_id,
            user_id=self.bot_user_id,
            content=directive.text,
            metadata=metadata,
        )
        await self._remember_own_message(channel_id, sent_id, directive.text, turn.event.id if as_reply else None)
        self.cooldown.mark_spoke(channel_id)
        # React only once the reply is out.
        if react:
            await self._react(turn, directive.reaction)
        logger.info(
            "clanker.reply_sent",
            kind=kind,
            channel_id=channel_id,
            trigger_message_ids=turn.trigger_message_ids,
            source=turn.source,
        )
        return True

    async def _react(self, turn: ReplyTurn, emoji: str) -> None:
        try:
            await self.transport.react(turn.event.id, emoji)
        except TransientDispatchError as exc:
            logger.warning("clanker.react_failed", message_id=turn.event.id, error=str(exc))
            return
        await self.store.log_action(
            "reacted",
            channel_id=turn.channel_id,
            message_id=turn.event.id,
            user_id=self.bot_user_id,
            content=emoji,
        )

    async def _remember_own_message(
        self,
        channel_id: str,
        message_id: str | None,
        content: str,
        referenced_id: str | None,
    ) -> None:
        if not message_id or not self.bot_user_id:
            return
        await self.store.record_message(
            message_id=message_id,
            channel_id=channel_id,
            author_id=self.bot_user_id,
            author_name=(await self.store.get_settings()).bot_name,
            is_bot=True,
            content=content,
            created_at_ms=self._clock(),
            referenced_message_id=referenced_id,
        )

    # ── Initiative ──────────────────────────────────────────────────

    async def post_initiative(
        self,
        channel_id: str,
        settings: BotSettings,
        decision: ScheduleDecision,
    ) -> bool:
        recent = await self.store.get_recent_messages(channel_id, settings.memory.max_recent_messages)
        generation = await self.generator.generate(
            system_prompt=build_system_prompt(settings),
            user_prompt=build_initiative_prompt(channel_id, recent, settings),
            settings=settings.llm,
            trace={"channel_id": channel_id, "source": "initiative", "trigger": decision.trigger},
        )
        directive = parse_reply_directive(generation.text)
        if directive.skip or not directive.text:
            logger.info("initiative.skipped_by_model", channel_id=channel_id)
            return False
        try:
            sent_id = await self.transport.send(channel_id, directive.text)
        except TransientDispatchError as exc:
            logger.warning("initiative.post_failed", channel_id=channel_id, error=str(exc))
            await self.store.log_action(
                "bot_error",
                channel_id=channel_id,
                content=f"initiative_post_failed: {exc}",
            )
            return False

        await self.store.log_action(
            "initiative_post",
            channel_id=channel_id,
            message_id=sent_id,
            user_id=self.bot_user_id,
            content=directive.text,
            metadata={
                "pacing": {
                    "mode": decision.mode,
                    "trigger": decision.trigger,
                    "chance": decision.chance,
                    "roll": decision.roll,
                    "elapsed_ms": decision.elapsed_ms,
                    "required_interval_ms": decision.required_interval_ms,
                },
                "llm_provider": generation.provider,
                "llm_model": generation.model,
            },
        )
        await self._remember_own_message(channel_id, sent_id, directive.text, None)
        self.cooldown.mark_spoke(channel_id)
        logger.info("initiative.posted", channel_id=channel_id, trigger=decision.trigger)
        return True

    # ── Startup catch-up ────────────────────────────────────────────

    async def run_startup_catchup(self, settings: BotSettings) -> int:
        """Queue forced replies for recent direct messages nobody answered while offline."""
        startup = settings.startup
        if not startup.catchup_enabled or not settings.permissions.allow_replies:
            return 0

        since = self._clock() - startup.catchup_lookback_hours * HOUR_MS
        channels = [
            channel_id
            for channel_id in await self.store.list_active_channels(since)
            if is_channel_allowed(settings, channel_id)
        ]
        queued_total = 0
        for channel_id in channels:
            messages = await self.store.get_messages_since(
                channel_id, since, limit=startup.catchup_max_messages_per_channel
            )
            queued = 0
            for index in range(len(messages) - 1, -1, -1):
                if queued >= startup.max_catchup_replies_per_channel:
                    break
                row = messages[index]
                if row.is_bot or row.author_id == self.bot_user_id:
                    continue
                event = event_from_stored(row)
                if gate_failure(settings, event, self.bot_user_id):
                    continue
                if await self.store.has_triggered_response(event.id):
                    continue
                history = list(reversed(messages[: index + 1]))
                signal = await self.policy.address_signal(settings, event, history, self.bot_user_id)
                if not signal.triggered:
                    continue
                if has_followup_after(messages, index, self.bot_user_id):
                    continue
                if await self.queue.enqueue(
                    event,
                    source="startup_catchup",
                    force_respond=True,
                    address_signal=signal,
                ):
                    queued += 1
            queued_total += queued
        logger.info("clanker.startup_catchup", channels=len(channels), queued=queued_total)
        return queued_total

    # ── Introspection ───────────────────────────────────────────────

    def runtime_state(self) -> dict[str, Any]:
        last_spoke = [
            at for at in (self.cooldown.last_spoke_at(cid) for cid in self.cooldown.channels()) if at
        ]
        return {
            "is_ready": self.transport.is_ready(),
            "bot_user_id": self.bot_user_id,
            "last_bot_message_at": iso_from_ms(max(last_spoke)) if last_spoke else None,
            "reply_queue": {
                "channels": self.queue.channel_count(),
                "pending": self.queue.pending_count(),
            },
            "gateway": self.monitor.snapshot(),
        }
