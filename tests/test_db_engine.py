import json

import pytest
import pytest_asyncio

from clanker.config import BotSettings
from clanker.db.engine import Database
from clanker.utils import HOUR_MS, iso_from_ms

from conftest import FakeClock


@pytest_asyncio.fixture
async def db(tmp_path):
    database = Database(str(tmp_path), clock=FakeClock())
    await database.initialize()
    yield database
    await database.close()


def test_database_rejects_unknown_journal_mode(tmp_path) -> None:
    with pytest.raises(ValueError, match="Unsupported SQLite journal mode"):
        Database(str(tmp_path), journal_mode="MEMORY")


@pytest.mark.asyncio
async def test_database_initializes_schema(db: Database) -> None:
    row = await db.fetch_one("SELECT 1 as ok")
    assert row == {"ok": 1}
    mode = await db.fetch_one("PRAGMA journal_mode")
    assert str(next(iter(mode.values()))).lower() == "wal"


@pytest.mark.asyncio
async def test_replies_index_their_triggers(db: Database) -> None:
    await db.log_action(
        "sent_reply",
        channel_id="c",
        content="hi",
        metadata={"trigger_message_id": "c:2", "trigger_message_ids": ["c:1", "c:2"]},
    )
    await db.log_action("reacted", channel_id="c", metadata={"trigger_message_id": "c:3"})

    assert await db.has_triggered_response("c:1") is True
    assert await db.has_triggered_response("c:2") is True
    assert await db.has_triggered_response("c:3") is False
    assert await db.has_triggered_response("") is False


@pytest.mark.asyncio
async def test_skips_count_as_answered(db: Database) -> None:
    await db.log_action("reply_skipped", metadata={"trigger_message_ids": ["c:9"]})
    assert await db.has_triggered_response("c:9") is True


@pytest.mark.asyncio
async def test_count_actions_since_window(db: Database) -> None:
    clock = db._clock
    await db.log_action("sent_reply")
    clock.advance(2 * HOUR_MS)
    await db.log_action("sent_message")
    await db.log_action("initiative_post")
    await db.log_action("bot_error")

    since = iso_from_ms(clock() - HOUR_MS)
    assert await db.count_actions_since(["sent_reply", "sent_message", "initiative_post"], since) == 2
    assert await db.count_actions_since("sent_reply", since) == 0
    assert await db.count_actions_since([], since) == 0
    assert await db.get_last_action_time("sent_reply") == iso_from_ms(clock() - 2 * HOUR_MS)
    assert await db.get_last_action_time("reacted") is None


@pytest.mark.asyncio
async def test_action_metadata_is_stored_as_json(db: Database) -> None:
    await db.log_action("bot_error", content="x", metadata={"attempt": 2})

    rows = await db.fetch_all("SELECT content, metadata FROM actions WHERE kind = ?", ("bot_error",))

    assert json.loads(rows[0]["metadata"]) == {"attempt": 2}
    assert rows[0]["content"] == "x"


@pytest.mark.asyncio
async def test_message_history_ordering(db: Database) -> None:
    base = db._clock()
    for i in range(4):
        await db.record_message(
            message_id=f"c:{i}",
            channel_id="c",
            author_id="u1",
            author_name="ana",
            content=f"m{i}",
            created_at_ms=base + i * 1_000,
        )
    await db.record_message(message_id="d:1", channel_id="d", author_id="u2", created_at_ms=base - HOUR_MS)

    recent = await db.get_recent_messages("c", limit=2)
    since = await db.get_messages_since("c", base + 1_000, limit=10)

    assert [row.message_id for row in recent] == ["c:3", "c:2"]
    assert [row.message_id for row in since] == ["c:1", "c:2", "c:3"]
    assert recent[0].created_at == base + 3_000
    assert await db.list_active_channels(base) == ["c"]


@pytest.mark.asyncio
async def test_settings_persist_across_connections(tmp_path) -> None:
    seed = BotSettings(bot_name="seeded")
    first = Database(str(tmp_path), default_settings=seed)
    await first.initialize()
    assert (await first.get_settings()).bot_name == "seeded"
    await first.update_settings({"activity": {"reply_level": 90}})
    await first.close()

    second = Database(str(tmp_path), default_settings=seed)
    await second.initialize()
    settings = await second.get_settings()
    await second.close()

    assert settings.bot_name == "seeded"
    assert settings.activity.reply_level == 90
