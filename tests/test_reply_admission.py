import asyncio
import random

from clanker.addressing.admission import (
    ReplyAdmissionPolicy,
    gate_failure,
    has_conversation_context,
    should_force_respond,
)
from clanker.addressing.confidence import AddressConfidenceClassifier
from clanker.config import BotSettings
from clanker.models import AddressSignal, IncomingEvent, StoredMessage

from conftest import FakeGenerator

BOT_ID = "999"


class _FixedRandom(random.Random):
    def __init__(self, value: float) -> None:
        super().__init__(0)
        self.value = value

    def random(self) -> float:
        return self.value


def _event(content: str = "hello", **kwargs) -> IncomingEvent:
    fields = {
        "id": "c:10",
        "channel_id": "c",
        "author_id": "u1",
        "content": content,
        "created_at": 10_000.0,
        "author_name": "ana",
    }
    fields.update(kwargs)
    return IncomingEvent(**fields)


def _row(message_id: str, author_id: str, at: float, **kwargs) -> StoredMessage:
    return StoredMessage(
        message_id=message_id,
        channel_id="c",
        author_id=author_id,
        author_name=kwargs.get("author_name", author_id),
        is_bot=author_id == BOT_ID,
        content=kwargs.get("content", "..."),
        created_at=at,
        referenced_message_id=kwargs.get("referenced_message_id"),
    )


def _policy(generator=None, roll: float = 0.5) -> ReplyAdmissionPolicy:
    return ReplyAdmissionPolicy(AddressConfidenceClassifier(generator), _FixedRandom(roll))


def _signal(policy, event, recent=(), settings=None) -> AddressSignal:
    return asyncio.run(policy.address_signal(settings or BotSettings(), event, list(recent), BOT_ID))


def test_hard_gates() -> None:
    settings = BotSettings()
    assert gate_failure(settings, _event(), BOT_ID) is None
    assert gate_failure(settings, _event(author_id=BOT_ID), BOT_ID) == "self_author"
    assert gate_failure(settings, _event(author_is_bot=True), BOT_ID) == "bot_author"

    blocked = settings.merged({"permissions": {"blocked_user_ids": ["u1"]}})
    assert gate_failure(blocked, _event(), BOT_ID) == "user_blocked"

    allow_list = settings.merged({"permissions": {"allowed_channel_ids": ["other"]}})
    assert gate_failure(allow_list, _event(), BOT_ID) == "channel_not_allowed"

    off = settings.merged({"permissions": {"allow_replies": False}})
    assert gate_failure(off, _event(), BOT_ID) == "replies_disabled"


def test_platform_mention_is_direct() -> None:
    signal = _signal(_policy(), _event(mentions_bot=True))
    assert signal.direct and signal.triggered
    assert signal.confidence == 1.0
    assert signal.reason == "direct"
    assert should_force_respond(signal) is True


def test_reply_to_bot_message_is_direct() -> None:
    recent = [_row("c:9", BOT_ID, 9_000.0)]
    signal = _signal(_policy(), _event(referenced_id="c:9"), recent)
    assert signal.direct is True


def test_exact_name_is_direct() -> None:
    signal = _signal(_policy(), _event("clanker what do you think"))
    assert signal.reason == "name_exact"
    assert signal.confidence_source == "exact_name"
    assert should_force_respond(signal) is True


def test_no_conversation_context_skips_classifier() -> None:
    generator = FakeGenerator('{"confidence": 1, "addressed": true}')
    signal = _signal(_policy(generator), _event("clank?"), [_row("c:5", "u2", 5_000.0)])

    assert signal.triggered is False
    assert signal.reason == "no_context"
    assert generator.calls == []


def test_classifier_runs_when_bot_spoke_last() -> None:
    generator = FakeGenerator('{"confidence": 0.9, "addressed": true, "reason": "follow_up"}')
    recent = [_row("c:9", BOT_ID, 9_000.0), _row("c:8", "u1", 8_000.0)]

    signal = _signal(_policy(generator), _event("and what about tomorrow"), recent)

    assert signal.inferred and signal.triggered
    assert signal.direct is False
    assert signal.reason == "llm_direct_address"
    assert signal.confidence_source == "llm"
    assert should_force_respond(signal) is False


def test_conversation_context_rules() -> None:
    event = _event()
    bot_last = [_row("c:9", BOT_ID, 9.0)]
    both_recent = [_row("c:9", "u2", 9.0), _row("c:8", BOT_ID, 8.0), _row("c:7", "u1", 7.0)]
    bot_absent = [_row("c:9", "u2", 9.0), _row("c:8", "u1", 8.0)]

    assert has_conversation_context(event, bot_last, BOT_ID, 5) is True
    assert has_conversation_context(event, both_recent, BOT_ID, 5) is True
    assert has_conversation_context(event, both_recent, BOT_ID, 2) is False
    assert has_conversation_context(event, bot_absent, BOT_ID, 5) is False


def test_decide_paths() -> None:
    settings = BotSettings()
    ambient = AddressSignal()
    triggered = AddressSignal(triggered=True, confidence=0.9, reason="llm_direct_address")

    assert _policy().decide(settings, ambient, force_respond=True).reason == "forced"
    assert _policy().decide(settings, triggered).reason == "triggered"
    assert _policy(roll=0.1).decide(settings, ambient).reason == "eagerness_admit"
    assert _policy(roll=0.5).decide(settings, ambient).reason == "eagerness_skip"

    quiet = settings.merged({"permissions": {"allow_initiative_replies": False}})
    decision = _policy(roll=0.0).decide(quiet, ambient)
    assert decision.admitted is False
    assert decision.reason == "ambient_disabled"


def test_evaluate_stops_at_gates() -> None:
    decision = asyncio.run(
        _policy().evaluate(BotSettings(), _event(author_is_bot=True), [], BOT_ID)
    )
    assert decision.admitted is False
    assert decision.reason == "bot_author"


def test_blocked_user_is_refused_even_when_forced() -> None:
    settings = BotSettings().merged({"permissions": {"blocked_user_ids": ["u1"]}})
    event = _event("@clanker answer me", mentions_bot=True)

    decision = asyncio.run(_policy(roll=0.0).evaluate(settings, event, [], BOT_ID, force_respond=True))

    assert decision.admitted is False
    assert decision.reason == "user_blocked"


def test_evaluate_carries_forcing_signal() -> None:
    decision = asyncio.run(_policy().evaluate(BotSettings(), _event("hi", mentions_bot=True), [], BOT_ID))

    assert decision.admitted is True
    assert decision.force_respond is True
    assert decision.signal.direct is True


def test_signal_invariant_is_enforced() -> None:
    signal = AddressSignal(triggered=True, confidence=0.3, threshold=0.6)
    assert signal.triggered is False
    assert AddressSignal(threshold=2.0).threshold == 0.95
