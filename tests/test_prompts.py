from clanker.config import BotSettings
from clanker.models import AddressSignal, IncomingEvent, ReplyTurn, StoredMessage
from clanker.prompts import (
    SKIP_SENTINEL,
    build_initiative_prompt,
    build_reply_prompt,
    build_system_prompt,
    normalize_skip_sentinel,
    parse_reply_directive,
    sanitize_bot_text,
)


def _turn(*, direct: bool) -> ReplyTurn:
    event = IncomingEvent(id="c:2", channel_id="c", author_id="u1", content="anyone up?", created_at=2.0, author_name="ana")
    return ReplyTurn(
        channel_id="c",
        event=event,
        burst=[event],
        source="message_event",
        force_respond=False,
        address_signal=AddressSignal(direct=direct, triggered=direct, confidence=1.0 if direct else 0.0),
        trigger_message_ids=["c:2"],
    )


def test_reaction_directive_is_split_off() -> None:
    directive = parse_reply_directive("lol that's cursed [[REACT:🔥]]")
    assert directive.text == "lol that's cursed"
    assert directive.reaction == "🔥"
    assert directive.skip is False


def test_long_reaction_form_is_accepted() -> None:
    assert parse_reply_directive("ok [[REACTION: 👀 ]]").reaction == "👀"


def test_reaction_only_reply_skips_the_text() -> None:
    directive = parse_reply_directive("[[REACT:😂]]")
    assert directive.skip is True
    assert directive.reaction == "😂"


def test_skip_sentinel_handling() -> None:
    assert parse_reply_directive("[skip]").skip is True
    assert normalize_skip_sentinel("fair enough [SKIP]") == "fair enough"
    assert normalize_skip_sentinel("   ") == ""


def test_sanitize_strips_mass_mentions_and_truncates() -> None:
    assert sanitize_bot_text("hey @everyone") == "hey"
    clipped = sanitize_bot_text("x" * 50, max_len=10)
    assert len(clipped) == 10
    assert clipped.endswith("…")


def test_system_prompt_mentions_name_and_skip() -> None:
    prompt = build_system_prompt(BotSettings(bot_name="zed"))
    assert "zed" in prompt
    assert SKIP_SENTINEL in prompt


def test_reply_prompt_orders_history_oldest_first() -> None:
    recent = [
        StoredMessage("c:2", "c", "u1", "ana", False, "second", 2.0),
        StoredMessage("c:1", "c", "u2", "bo", False, "first", 1.0),
    ]
    prompt = build_reply_prompt(_turn(direct=False), recent, BotSettings(), allow_reaction=True)

    assert prompt.index("bo: first") < prompt.index("ana: second")
    assert "not addressed directly" in prompt
    assert "[[REACT:" in prompt


def test_direct_reply_prompt_asks_for_an_answer() -> None:
    prompt = build_reply_prompt(_turn(direct=True), [], BotSettings())
    assert "addressed directly" in prompt
    assert "[[REACT:" not in prompt


def test_initiative_prompt_handles_empty_history() -> None:
    prompt = build_initiative_prompt("c", [], BotSettings())
    assert "(no recent messages)" in prompt
