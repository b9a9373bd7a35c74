"""Connection liveness watchdog with capped exponential reconnect backoff."""

from __future__ import annotations

import asyncio
from typing import Any, Protocol

import structlog

from clanker.channels.base import ChatTransport, TransportEvent
from clanker.config import GatewayConfig
from clanker.models import GatewayState
from clanker.utils import Clock, Sleeper, iso_from_ms, now_ms

logger = structlog.get_logger()


class ActionLog(Protocol):
    async def log_action(self, kind: str, **kwargs: Any) -> Any: ...


def backoff_delay_ms(attempts: int, base_ms: float, max_ms: float) -> float:
    """``base * 2**(attempts-1)`` capped at ``max_ms``."""
    return min(base_ms * 2 ** max(attempts - 1, 0), max_ms)


class GatewayResilienceMonitor:
    """Keeps the realtime connection alive.

    Every liveness signal calls ``mark_event``. The watchdog reconnects when the
    transport is not ready and has been silent for longer than the stale
    threshold. Failed reconnects retry forever with capped backoff. At most one
    reconnect runs and at most one retry timer is pending at any time.
    """

    def __init__(
        self,
        *,
        transport: ChatTransport,
        store: ActionLog,
        config: GatewayConfig,
        clock: Clock = now_ms,
        sleep: Sleeper = asyncio.sleep,
    ) -> None:
        self.transport = transport
        self.store = store
        self.config = config
        self._clock = clock
        self._sleep = sleep
        self.state = GatewayState()
        self._stopping = False
        self._watchdog_task: asyncio.Task[None] | None = None
        self._reconnect_timer: asyncio.Task[None] | None = None
        self._reconnect_running: asyncio.Task[Any] | None = None

    @property
    def stale_ms(self) -> float:
        return self.config.stale_seconds * 1000.0

    def next_backoff_ms(self) -> float:
        return backoff_delay_ms(
            self.state.reconnect_attempts,
            self.config.reconnect_base_delay_seconds * 1000.0,
            self.config.reconnect_max_delay_seconds * 1000.0,
        )

    @property
    def has_pending_reconnect(self) -> bool:
        return self._reconnect_timer is not None and not self._reconnect_timer.done()

    # ── Lifecycle ───────────────────────────────────────────────────

    async def start(self) -> None:
        self._stopping = False
        self.mark_event()
        if self._watchdog_task is None or self._watchdog_task.done():
            self._watchdog_task = asyncio.create_task(self._watchdog(), name="gateway-watchdog")

    async def stop(self) -> None:
        self._stopping = True
        for task in (self._watchdog_task, self._reconnect_timer, self._reconnect_running):
            if task and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._watchdog_task = None
        self._reconnect_timer = None
        self._reconnect_running = None

    async def _watchdog(self) -> None:
        while not self._stopping:
            await self._sleep(self.config.watchdog_interval_seconds)
            try:
                await self.ensure_healthy()
            except Exception as exc:
                logger.warning("gateway.watchdog.error", error=str(exc))
                await self._log_error(f"gateway_watchdog: {exc}")

    # ── Liveness signals ────────────────────────────────────────────

    def mark_event(self) -> None:
        self.state.last_event_at = self._clock()

    def on_ready(self) -> None:
        self.state.has_connected_once = True
        self.state.reconnect_attempts = 0
        self.mark_event()
        logger.info("gateway.ready", bot_user_id=self.transport.bot_user_id)

    async def handle_event(self, event: TransportEvent) -> None:
        if event.kind == "ready":
            self.on_ready()
            return
        self.mark_event()
        if event.kind == "shard_disconnect":
            logger.warning("gateway.shard_disconnect", shard_id=event.shard_id, error=event.error)
            await self._log_error(
                f"gateway_shard_disconnect: shard={event.shard_id} code={event.error or 'unknown'}"
            )
        elif event.kind == "shard_error":
            logger.warning("gateway.shard_error", shard_id=event.shard_id, error=event.error)
            await self._log_error(f"gateway_shard_error: shard={event.shard_id} {event.error}")
        elif event.kind == "error":
            logger.error("gateway.error", error=event.error)
            await self._log_error(f"gateway_error: {event.error}")
        elif event.kind == "invalidated":
            logger.warning("gateway.session_invalidated")
            await self._log_error("gateway_session_invalidated")
            self.schedule_reconnect(
                "session_invalidated",
                self.config.invalidated_reconnect_delay_seconds * 1000.0,
            )

    # ── Health & reconnect ──────────────────────────────────────────

    async def ensure_healthy(self) -> None:
        if self._stopping or self.state.reconnect_in_flight or not self.state.has_connected_once:
            return
        if self.transport.is_ready():
            self.mark_event()
            return
        elapsed = self._clock() - self.state.last_event_at
        if elapsed < self.stale_ms:
            return
        await self.reconnect(f"stale_gateway_{int(elapsed)}ms")

    def schedule_reconnect(self, reason: str, delay_ms: float) -> None:
        if self._stopping or self.has_pending_reconnect:
            return
        self._reconnect_timer = asyncio.create_task(
            self._delayed_reconnect(reason, delay_ms),
            name="gateway-reconnect-timer",
        )

    async def _delayed_reconnect(self, reason: str, delay_ms: float) -> None:
        await self._sleep(delay_ms / 1000.0)
        # Free the timer slot so a failed attempt can schedule its retry.
        self._reconnect_timer = None
        current = asyncio.current_task()
        self._reconnect_running = current
        try:
            await self.reconnect(reason)
        except Exception as exc:
            logger.error("gateway.reconnect.crash", error=str(exc))
            await self._log_error(f"gateway_reconnect_crash: {exc}")
        finally:
            if self._reconnect_running is current:
                self._reconnect_running = None

    async def reconnect(self, reason: str) -> None:
        if self._stopping or self.state.reconnect_in_flight:
            return
        self.state.reconnect_in_flight = True
        self.mark_event()
        logger.warning("gateway.reconnect.start", reason=reason)
        await self._log_error(f"gateway_reconnect_start: {reason}")

        try:
            try:
                await self.transport.destroy()
            except Exception as exc:
                logger.debug("gateway.destroy_failed", error=str(exc))
            await self.transport.login()
            if self._stopping:
                logger.info("gateway.reconnect.discarded", reason=reason)
                await self.transport.destroy()
                return
            self.mark_event()
            self.state.reconnect_attempts = 0
            logger.info("gateway.reconnect.ok", reason=reason)
        except Exception as exc:
            self.state.reconnect_attempts += 1
            delay = self.next_backoff_ms()
            logger.warning(
                "gateway.reconnect.failed",
                attempt=self.state.reconnect_attempts,
                next_retry_ms=delay,
                error=str(exc),
            )
            await self._log_error(
                f"gateway_reconnect_failed: {exc}",
                metadata={"attempt": self.state.reconnect_attempts, "next_retry_ms": delay},
            )
            self.schedule_reconnect("retry_after_reconnect_failure", delay)
        finally:
            self.state.reconnect_in_flight = False

    async def _log_error(self, content: str, metadata: dict[str, Any] | None = None) -> None:
        await self.store.log_action(
            "bot_error",
            user_id=self.transport.bot_user_id,
            content=content,
            metadata=metadata,
        )

    def snapshot(self) -> dict[str, Any]:
        return {
            "has_connected_once": self.state.has_connected_once,
            "reconnect_in_flight": self.state.reconnect_in_flight,
            "reconnect_attempts": self.state.reconnect_attempts,
            "last_event_at": iso_from_ms(self.state.last_event_at) if self.state.last_event_at else None,
        }
