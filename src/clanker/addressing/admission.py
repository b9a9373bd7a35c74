"""Reply admission: hard gates, the address signal, and ambient eagerness."""

from __future__ import annotations

import random
from collections.abc import Sequence
from dataclasses import dataclass

import structlog

from clanker.addressing.confidence import AddressConfidenceClassifier, is_bot_name_addressed
from clanker.config import BotSettings
from clanker.models import DEFAULT_THRESHOLD, AddressSignal, IncomingEvent, StoredMessage

logger = structlog.get_logger()

EXACT_NAME_CONFIDENCE = 0.95
NON_FORCING_REASONS = frozenset({"name_variant", "llm_direct_address"})


@dataclass
class AdmissionDecision:
    admitted: bool
    reason: str
    signal: AddressSignal | None = None
    force_respond: bool = False


def should_force_respond(signal: AddressSignal | None) -> bool:
    """Triggered signals force a reply unless they came from a soft name or model guess."""
    if signal is None or not signal.triggered:
        return False
    return (signal.reason or "").strip().lower() not in NON_FORCING_REASONS


def gate_failure(settings: BotSettings, event: IncomingEvent, bot_user_id: str | None) -> str | None:
    """First hard gate that rejects ``event``, or None when all pass."""
    permissions = settings.permissions
    if not permissions.allow_replies:
        return "replies_disabled"
    if bot_user_id and event.author_id == bot_user_id:
        return "self_author"
    if event.author_is_bot:
        return "bot_author"
    if event.channel_id in permissions.blocked_channel_ids:
        return "channel_not_allowed"
    if permissions.allowed_channel_ids and event.channel_id not in permissions.allowed_channel_ids:
        return "channel_not_allowed"
    if event.author_id in permissions.blocked_user_ids:
        return "user_blocked"
    return None


def is_channel_allowed(settings: BotSettings, channel_id: str) -> bool:
    permissions = settings.permissions
    if channel_id in permissions.blocked_channel_ids:
        return False
    if permissions.allowed_channel_ids and channel_id not in permissions.allowed_channel_ids:
        return False
    return True


def has_conversation_context(
    event: IncomingEvent,
    recent_messages: Sequence[StoredMessage],
    bot_user_id: str | None,
    window: int,
) -> bool:
    """The bot spoke last, or the bot and the author both spoke recently.

    ``recent_messages`` is newest first. The event itself is ignored.
    """
    if not bot_user_id:
        return False
    prior = [row for row in recent_messages if row.message_id != event.id]
    if not prior:
        return False
    if prior[0].author_id == bot_user_id:
        return True
    authors = {row.author_id for row in prior[: max(1, window)]}
    return bot_user_id in authors and event.author_id in authors


def _referenced_author(event: IncomingEvent, recent_messages: Sequence[StoredMessage]) -> str | None:
    if event.reply_to_author_id:
        return event.reply_to_author_id
    if not event.referenced_id:
        return None
    for row in recent_messages:
        if row.message_id == event.referenced_id:
            return row.author_id
    return None


class ReplyAdmissionPolicy:
    """Decides whether an inbound message deserves a reply attempt."""

    def __init__(
        self,
        classifier: AddressConfidenceClassifier,
        rng: random.Random | None = None,
    ) -> None:
        self.classifier = classifier
        self.rng = rng or random.Random()

    async def address_signal(
        self,
        settings: BotSettings,
        event: IncomingEvent,
        recent_messages: Sequence[StoredMessage],
        bot_user_id: str | None,
    ) -> AddressSignal:
        by_platform = event.mentions_bot or bool(
            bot_user_id and _referenced_author(event, recent_messages) == bot_user_id
        )
        if by_platform:
            return AddressSignal(
                direct=True,
                triggered=True,
                confidence=1.0,
                threshold=DEFAULT_THRESHOLD,
                confidence_source="direct",
                reason="direct",
            )
        if is_bot_name_addressed(event.content, settings.bot_name):
            return AddressSignal(
                direct=True,
                triggered=True,
                confidence=EXACT_NAME_CONFIDENCE,
                threshold=DEFAULT_THRESHOLD,
                confidence_source="exact_name",
                reason="name_exact",
            )

        window = settings.memory.context_window_messages
        if not has_conversation_context(event, recent_messages, bot_user_id, window):
            return AddressSignal(reason="no_context")

        participants = sorted(
            {row.author_name for row in recent_messages if row.author_name and not row.is_bot}
        )
        scored = await self.classifier.score(
            transcript=event.content,
            bot_name=settings.bot_name,
            settings=settings,
            speaker_name=event.author_name,
            participant_names=participants,
            threshold=DEFAULT_THRESHOLD,
            fallback_confidence=0.0,
            trace={"channel_id": event.channel_id, "message_id": event.id},
        )
        inferred = scored.addressed
        triggered = inferred and scored.confidence >= scored.threshold
        return AddressSignal(
            direct=False,
            inferred=inferred,
            triggered=triggered,
            confidence=scored.confidence,
            threshold=scored.threshold,
            confidence_source=scored.source,
            reason="llm_direct_address" if triggered else "llm_decides",
        )

    def decide(
        self,
        settings: BotSettings,
        signal: AddressSignal,
        force_respond: bool = False,
    ) -> AdmissionDecision:
        if force_respond:
            return AdmissionDecision(True, "forced", signal, True)
        if signal.triggered:
            return AdmissionDecision(True, "triggered", signal, should_force_respond(signal))
        if not settings.permissions.allow_initiative_replies:
            return AdmissionDecision(False, "ambient_disabled", signal)
        eagerness = settings.activity.reply_level / 100.0
        if self.rng.random() < eagerness:
            return AdmissionDecision(True, "eagerness_admit", signal)
        return AdmissionDecision(False, "eagerness_skip", signal)

    async def evaluate(
        self,
        settings: BotSettings,
        event: IncomingEvent,
        recent_messages: Sequence[StoredMessage],
        bot_user_id: str | None,
        force_respond: bool = False,
    ) -> AdmissionDecision:
        failed = gate_failure(settings, event, bot_user_id)
        if failed:
            logger.debug("addressing.gated", message_id=event.id, reason=failed)
            return AdmissionDecision(False, failed)
        signal = await self.address_signal(settings, event, recent_messages, bot_user_id)
        decision = self.decide(settings, signal, force_respond)
        logger.info(
            "addressing.admission",
            channel_id=event.channel_id,
            message_id=event.id,
            admitted=decision.admitted,
            reason=decision.reason,
            signal=signal.as_dict(),
        )
        return decision
