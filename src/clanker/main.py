"""clanker — service entrypoint."""

from __future__ import annotations

import asyncio
import contextlib
import signal
import sys

import structlog

from clanker.bot import ClankerBot
from clanker.channels.telegram.transport import TelegramTransport
from clanker.config import ClankerConfig, ensure_runtime_env, get_config
from clanker.db.engine import Database
from clanker.errors import ConfigurationError
from clanker.llm.gateway import LLMGateway
from clanker.logging import setup_logging

logger = structlog.get_logger()


async def run(config: ClankerConfig) -> None:
    """Start every component and block until SIGINT/SIGTERM."""
    db = Database(
        config.data_dir,
        journal_mode=config.db_journal_mode,
        busy_timeout_ms=config.db_busy_timeout_ms,
        default_settings=config.settings,
    )
    await db.initialize()

    transport = TelegramTransport(config=config.telegram)
    bot = ClankerBot(
        config=config,
        store=db,
        transport=transport,
        generator=LLMGateway(config.llm),
    )

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, stop_event.set)

    settings = await db.get_settings()
    logger.info("clanker.starting", bot_name=settings.bot_name, model=settings.llm.model)
    await bot.start()
    try:
        await stop_event.wait()
    finally:
        logger.info("clanker.shutting_down")
        await bot.stop()
        await db.close()
        logger.info("clanker.stopped")


def main() -> None:
    config = get_config()
    try:
        setup_logging(level=config.log_level, fmt=config.log_format)
        ensure_runtime_env(config)
    except ConfigurationError as exc:
        logger.error("clanker.config_error", error=str(exc))
        sys.exit(1)
    asyncio.run(run(config))


if __name__ == "__main__":
    main()
