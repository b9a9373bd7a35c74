"""structlog setup for the clanker process."""

from __future__ import annotations

import logging
import sys
from typing import Any, TextIO

import structlog

from clanker.errors import ConfigurationError

NOISY_LOGGERS = ("httpcore", "httpx", "litellm", "LiteLLM", "aiosqlite")
LOG_FORMATS = ("json", "console")


def _resolve_level(level: str) -> int:
    value = logging.getLevelName(str(level or "INFO").strip().upper())
    if not isinstance(value, int):
        raise ConfigurationError(f"Unknown log level: {level!r}")
    return value


def setup_logging(level: str = "INFO", fmt: str = "json", *, stream: TextIO | None = None) -> None:
    """Route structlog and stdlib logging through one handler.

    ``json`` emits one object per line with structured tracebacks; ``console``
    is for local runs and only colours output when the stream is a terminal.
    """
    if fmt not in LOG_FORMATS:
        raise ConfigurationError(f"Unknown log format: {fmt!r} (expected one of {', '.join(LOG_FORMATS)})")
    stream = stream or sys.stdout

    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if fmt == "console":
        render_chain: list[structlog.types.Processor] = [
            structlog.dev.ConsoleRenderer(colors=stream.isatty()),
        ]
    else:
        render_chain = [
            structlog.processors.dict_tracebacks,
            structlog.processors.JSONRenderer(),
        ]

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(stream)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, *render_chain],
            foreign_pre_chain=shared_processors,
        )
    )

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(_resolve_level(level))

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def bind_runtime(**fields: Any) -> None:
    """Attach fields (bot name, bot user id) to every later log line."""
    structlog.contextvars.bind_contextvars(**{k: v for k, v in fields.items() if v is not None})
