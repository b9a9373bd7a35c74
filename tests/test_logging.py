import io
import json
import logging

import pytest
import structlog

from clanker.errors import ConfigurationError
from clanker.logging import bind_runtime, setup_logging


@pytest.fixture(autouse=True)
def _restore_logging():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    structlog.contextvars.clear_contextvars()
    structlog.reset_defaults()
    root.handlers[:] = handlers
    root.setLevel(level)


def _lines(buffer: io.StringIO) -> list[dict]:
    return [json.loads(line) for line in buffer.getvalue().splitlines() if line.strip()]


def test_json_lines_carry_event_and_context() -> None:
    buffer = io.StringIO()
    setup_logging("DEBUG", "json", stream=buffer)
    bind_runtime(bot_name="clanker conk", bot_user_id=None)

    structlog.get_logger("clanker.test").info("reply_queue.overflow", channel_id="c", limit=60)

    line = _lines(buffer)[-1]
    assert line["event"] == "reply_queue.overflow"
    assert line["level"] == "info"
    assert line["limit"] == 60
    assert line["bot_name"] == "clanker conk"
    assert "bot_user_id" not in line


def test_level_filters_and_noisy_loggers_are_quieted() -> None:
    buffer = io.StringIO()
    setup_logging("warning", "json", stream=buffer)

    structlog.get_logger("clanker.test").info("dropped")
    logging.getLogger("httpx").info("also dropped")
    structlog.get_logger("clanker.test").warning("kept")

    assert [line["event"] for line in _lines(buffer)] == ["kept"]
    assert logging.getLogger("httpx").level == logging.WARNING


def test_bad_level_or_format_is_a_configuration_error() -> None:
    with pytest.raises(ConfigurationError):
        setup_logging("LOUD", "json", stream=io.StringIO())
    with pytest.raises(ConfigurationError):
        setup_logging("INFO", "xml", stream=io.StringIO())
