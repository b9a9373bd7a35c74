"""Per-channel reply queue.

Each channel owns a ``ChannelQueue``. One worker task drains it at a time;
``worker_active`` is the only mutual exclusion. A drain iteration reads a fresh
settings snapshot, drops heads that no longer pass the gates, waits out the
coalescing window and the send budget, then dispatches a burst of adjacent
messages as one turn.
"""

from __future__ import annotations

import asyncio
import math
from collections.abc import Awaitable, Callable
from typing import Any, Protocol

import structlog

from clanker.addressing.admission import gate_failure, should_force_respond
from clanker.budget import BudgetTracker, SpeechCooldown
from clanker.config import BotSettings
from clanker.models import AddressSignal, ChannelQueue, IncomingEvent, ReplyJob, ReplyTurn
from clanker.utils import Clock, Sleeper, clamp, now_ms

logger = structlog.get_logger()

MAX_COALESCE_WINDOW_SECONDS = 20
MAX_COALESCE_MESSAGES = 20
MAX_EDGE_GRACE_MS = 1000

Dispatcher = Callable[[ReplyTurn, BotSettings], Awaitable[bool]]


class QueueStore(Protocol):
    async def get_settings(self) -> BotSettings: ...

    async def has_triggered_response(self, message_id: str) -> bool: ...

    async def log_action(self, kind: str, **kwargs: Any) -> Any: ...


def coalesce_window_ms(settings: BotSettings) -> float:
    seconds = clamp(settings.activity.reply_coalesce_window_seconds or 0, 0, MAX_COALESCE_WINDOW_SECONDS)
    return math.floor(seconds * 1000)


def coalesce_max_messages(settings: BotSettings) -> int:
    return int(clamp(settings.activity.reply_coalesce_max_messages or 1, 1, MAX_COALESCE_MESSAGES))


def coalesce_wait_ms(
    settings: BotSettings,
    event: IncomingEvent,
    now: float,
    *,
    allow_edge_grace: bool = False,
) -> float:
    """How long to hold ``event`` so that follow-up messages can join its burst.

    With ``allow_edge_grace`` a message that only just aged past the window gets
    a short extra wait, so a reply to a lone message does not race a follow-up
    that is already on the wire.
    """
    window = coalesce_window_ms(settings)
    if window <= 0:
        return 0.0
    created_at = event.created_at if event.created_at > 0 else now
    age = now - created_at
    wait = max(0.0, window - age)
    if wait > 0:
        return wait
    if not allow_edge_grace:
        return 0.0
    grace = clamp(settings.queue.coalesce_edge_grace_ms, 0, MAX_EDGE_GRACE_MS)
    if grace <= 0:
        return 0.0
    overrun = age - window
    if overrun >= grace:
        return 0.0
    return max(0.0, grace - overrun)


def merge_burst_signal(burst: list[ReplyJob]) -> tuple[AddressSignal, bool]:
    """Merged address signal for a burst plus whether the burst is forced."""
    latest = burst[-1]
    merged = latest.address_signal.copy() if latest.address_signal else AddressSignal()
    for job in burst:
        merged.widen(job.address_signal)

    forced = any(
        (job.force_respond and (job.address_signal is None or should_force_respond(job.address_signal)))
        or should_force_respond(job.address_signal)
        for job in burst
    )
    if forced and not merged.triggered:
        merged.triggered = True
        merged.reason = "direct"
        merged.confidence = 1.0
        merged.confidence_source = "direct"
    return merged, forced


def build_turn(channel_id: str, burst: list[ReplyJob]) -> ReplyTurn:
    latest = burst[-1]
    signal, forced = merge_burst_signal(burst)
    source = latest.source or "message_event"
    if len(burst) > 1:
        source = f"{source}_coalesced"
    trigger_ids: list[str] = []
    for job in burst:
        if job.event.id and job.event.id not in trigger_ids:
            trigger_ids.append(job.event.id)
    return ReplyTurn(
        channel_id=channel_id,
        event=latest.event,
        burst=[job.event for job in burst],
        source=source,
        force_respond=forced,
        address_signal=signal,
        trigger_message_ids=trigger_ids,
    )


class PerChannelReplyQueue:
    def __init__(
        self,
        *,
        store: QueueStore,
        dispatch: Dispatcher,
        budgets: BudgetTracker,
        cooldown: SpeechCooldown,
        bot_user_id: Callable[[], str | None] = lambda: None,
        clock: Clock = now_ms,
        sleep: Sleeper = asyncio.sleep,
    ) -> None:
        self.store = store
        self.dispatch = dispatch
        self.budgets = budgets
        self.cooldown = cooldown
        self._bot_user_id = bot_user_id
        self._clock = clock
        self._sleep = sleep
        self._queues: dict[str, ChannelQueue] = {}
        self._stopping = False

    # ── Introspection ───────────────────────────────────────────────

    def pending_count(self, channel_id: str | None = None) -> int:
        if channel_id is not None:
            queue = self._queues.get(channel_id)
            return len(queue.jobs) if queue else 0
        return sum(len(queue.jobs) for queue in self._queues.values())

    def channel_count(self) -> int:
        return len(self._queues)

    # ── Enqueue ─────────────────────────────────────────────────────

    async def enqueue(
        self,
        event: IncomingEvent,
        *,
        source: str = "message_event",
        force_respond: bool = False,
        address_signal: AddressSignal | None = None,
    ) -> bool:
        """Queue ``event`` for a reply attempt. False when it was rejected."""
        if self._stopping or not event.id:
            return False
        if await self.store.has_triggered_response(event.id):
            return False
        settings = await self.store.get_settings()
        limit = settings.queue.max_per_channel

        queue = self._queues.setdefault(event.channel_id, ChannelQueue())
        if event.id in queue.queued_ids:
            return False
        if len(queue.jobs) >= limit:
            logger.warning(
                "reply_queue.overflow",
                channel_id=event.channel_id,
                message_id=event.id,
                limit=limit,
            )
            await self.store.log_action(
                "bot_error",
                channel_id=event.channel_id,
                message_id=event.id,
                user_id=event.author_id,
                content=f"reply_queue_overflow: limit={limit}",
            )
            return False

        queue.jobs.append(
            ReplyJob(
                event=event,
                source=source,
                force_respond=force_respond,
                address_signal=address_signal,
                enqueued_at=self._clock(),
            )
        )
        queue.queued_ids.add(event.id)
        self._ensure_worker(event.channel_id)
        return True

    def _ensure_worker(self, channel_id: str) -> None:
        queue = self._queues.get(channel_id)
        if queue is None or queue.worker_active or self._stopping:
            return
        queue.worker_active = True
        queue.task = asyncio.create_task(self._drain(channel_id), name=f"reply-queue-{channel_id}")

    # ── Queue primitives ────────────────────────────────────────────

    def _pop_head(self, queue: ChannelQueue) -> ReplyJob | None:
        if not queue.jobs:
            return None
        job = queue.jobs.popleft()
        queue.queued_ids.discard(job.event.id)
        return job

    def _take_burst(self, queue: ChannelQueue, settings: BotSettings) -> list[ReplyJob]:
        first = self._pop_head(queue)
        if first is None:
            return []
        burst = [first]
        window = coalesce_window_ms(settings)
        max_messages = coalesce_max_messages(settings)
        if window <= 0 or max_messages <= 1:
            return burst

        last_at = first.event.created_at if first.event.created_at > 0 else self._clock()
        while len(burst) < max_messages and queue.jobs:
            candidate = queue.jobs[0]
            created_at = candidate.event.created_at if candidate.event.created_at > 0 else last_at
            if abs(created_at - last_at) > window:
                break
            job = self._pop_head(queue)
            if job is None:
                break
            burst.append(job)
            last_at = created_at
        return burst

    def _requeue(self, queue: ChannelQueue, jobs: list[ReplyJob]) -> None:
        """Put ``jobs`` back at the head in their original order."""
        for job in reversed(jobs):
            queue.jobs.appendleft(job)
            queue.queued_ids.add(job.event.id)

    async def send_wait_ms(self, channel_id: str, settings: BotSettings) -> float:
        """Cooldown left in the channel, else the rate-limit wait when the hourly budget is spent."""
        cooldown = self.cooldown.wait_ms(channel_id, settings)
        if cooldown > 0:
            return cooldown
        budget = await self.budgets.message_budget(settings)
        if not budget.can_act:
            return settings.queue.rate_limit_wait_seconds * 1000.0
        return 0.0

    async def _nap(self, wait_ms: float, settings: BotSettings) -> None:
        cap = settings.queue.rate_limit_wait_seconds * 1000.0
        await self._sleep(min(wait_ms, cap) / 1000.0)

    # ── Drain loop ──────────────────────────────────────────────────

    async def _drain(self, channel_id: str) -> None:
        queue = self._queues[channel_id]
        try:
            while not self._stopping and queue.jobs:
                await self._drain_once(channel_id, queue)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception("reply_queue.worker_crashed", channel_id=channel_id, error=str(e))
            await self.store.log_action(
                "bot_error",
                channel_id=channel_id,
                content=f"reply_queue_restart: {e}",
            )
        finally:
            queue.worker_active = False
            queue.task = None
            if not queue.jobs:
                if self._queues.get(channel_id) is queue:
                    del self._queues[channel_id]
            elif not self._stopping:
                self._ensure_worker(channel_id)

    async def _drain_once(self, channel_id: str, queue: ChannelQueue) -> None:
        head = queue.jobs[0]
        settings = await self.store.get_settings()

        dropped = gate_failure(settings, head.event, self._bot_user_id())
        if dropped is None and await self.store.has_triggered_response(head.event.id):
            dropped = "already_answered"
        if dropped is not None:
            if queue.jobs and queue.jobs[0] is head:
                self._pop_head(queue)
            logger.info(
                "reply_queue.dropped",
                channel_id=channel_id,
                message_id=head.event.id,
                reason=dropped,
            )
            return

        now = self._clock()
        anchor = queue.jobs[-1].event
        wait = coalesce_wait_ms(settings, anchor, now)
        if wait > 0:
            await self._nap(wait, settings)
            return
        if len(queue.jobs) <= 1:
            wait = coalesce_wait_ms(settings, head.event, now, allow_edge_grace=True)
            if wait > 0:
                await self._nap(wait, settings)
                return

        wait = await self.send_wait_ms(channel_id, settings)
        if wait > 0:
            await self._nap(wait, settings)
            return

        burst = self._take_burst(queue, settings)
        if not burst:
            return
        turn = build_turn(channel_id, burst)

        try:
            sent = await self.dispatch(turn, settings)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            await self._handle_send_failure(channel_id, queue, burst, turn, settings, e)
            return

        if sent or not turn.force_respond or self._stopping:
            return
        if await self.store.has_triggered_response(turn.event.id):
            return
        latest = await self.store.get_settings()
        if gate_failure(latest, turn.event, self._bot_user_id()) is not None:
            return
        retry_wait = await self.send_wait_ms(channel_id, latest)
        if retry_wait > 0:
            self._requeue(queue, burst)
            logger.info(
                "reply_queue.requeued",
                channel_id=channel_id,
                message_ids=turn.trigger_message_ids,
                wait_ms=retry_wait,
            )
            await self._nap(retry_wait, latest)

    async def _handle_send_failure(
        self,
        channel_id: str,
        queue: ChannelQueue,
        burst: list[ReplyJob],
        turn: ReplyTurn,
        settings: BotSettings,
        error: Exception,
    ) -> None:
        max_attempts = max(job.attempts for job in burst)
        if max_attempts < settings.queue.send_max_retries and not self._stopping:
            next_attempt = max_attempts + 1
            for job in burst:
                job.attempts += 1
            self._requeue(queue, burst)
            logger.warning(
                "reply_queue.send_retry",
                channel_id=channel_id,
                message_ids=turn.trigger_message_ids,
                attempt=next_attempt,
                error=str(error),
            )
            await self._sleep(settings.queue.send_retry_base_seconds * next_attempt)
            return

        logger.error(
            "reply_queue.send_failed",
            channel_id=channel_id,
            message_ids=turn.trigger_message_ids,
            error=str(error),
        )
        await self.store.log_action(
            "bot_error",
            channel_id=channel_id,
            message_id=turn.event.id,
            user_id=turn.event.author_id,
            content=f"reply_queue_send_failed: {error}",
        )

    # ── Shutdown ────────────────────────────────────────────────────

    async def stop(self) -> None:
        self._stopping = True
        tasks = []
        for queue in self._queues.values():
            queue.jobs.clear()
            queue.queued_ids.clear()
            if queue.task is not None and not queue.task.done():
                queue.task.cancel()
                tasks.append(queue.task)
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._queues.clear()
