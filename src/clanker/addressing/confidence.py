"""Direct-address scoring: name matching plus an LLM classifier that fails closed."""

from __future__ import annotations

import json
import re
import unicodedata
from dataclasses import dataclass
from typing import Any, Literal, Protocol

import structlog

from clanker.config import BotSettings, LLMSettings
from clanker.errors import ClassificationDegradation
from clanker.models import DEFAULT_THRESHOLD, MAX_THRESHOLD, MIN_THRESHOLD
from clanker.utils import clamp

logger = structlog.get_logger()

ADDRESS_JSON_SCHEMA: dict[str, Any] = {
    "title": "direct_address",
    "type": "object",
    "additionalProperties": False,
    "required": ["confidence", "addressed", "reason"],
    "properties": {
        "confidence": {"type": "number", "minimum": 0, "maximum": 1},
        "addressed": {"type": "boolean"},
        "reason": {"type": "string", "maxLength": 120},
    },
}

CUE_GENERIC_TOKENS = frozenset({"bot", "assistant", "ai", "the"})
WAKE_GENERIC_TOKENS = frozenset({"bot", "ai", "assistant"})
MIN_NAME_TOKEN_LEN = 4
MAX_PARTICIPANTS = 12

_TOKEN_RE = re.compile(r"[^\W_]+")
_FENCE_OPEN_RE = re.compile(r"^```(?:json)?\s*", re.IGNORECASE)
_FENCE_CLOSE_RE = re.compile(r"```$")
_REASON_RE = re.compile(r"[^\w.-]+")


class Generator(Protocol):
    async def generate(
        self,
        *,
        system_prompt: str,
        user_prompt: str,
        settings: LLMSettings,
        trace: dict[str, Any] | None = None,
        json_schema: dict[str, Any] | None = None,
    ) -> Any:
        ...


@dataclass
class AddressConfidenceResult:
    confidence: float
    threshold: float
    addressed: bool
    reason: str
    source: Literal["llm", "fallback"]
    llm_provider: str | None = None
    llm_model: str | None = None
    llm_response: str | None = None
    error: str | None = None


# ── Name matching ───────────────────────────────────────────────────


def tokenize(value: str | None) -> list[str]:
    """Lowercase, strip accents, split on anything that is not a letter or digit."""
    normalized = unicodedata.normalize("NFKD", str(value or "").strip().lower())
    stripped = "".join(ch for ch in normalized if not unicodedata.combining(ch))
    return _TOKEN_RE.findall(stripped)


def _consonants(value: str) -> set[str]:
    return {ch for ch in value.lower() if "a" <= ch <= "z" and ch not in "aeiou"}


def _shared_consonants(left: str, right: str) -> int:
    return len(_consonants(left) & _consonants(right))


def levenshtein(left: str, right: str) -> int:
    previous = list(range(len(right) + 1))
    for i, lch in enumerate(left, start=1):
        current = [i]
        for j, rch in enumerate(right, start=1):
            cost = 0 if lch == rch else 1
            current.append(min(previous[j] + 1, current[j - 1] + 1, previous[j - 1] + cost))
        previous = current
    return previous[-1]


def _primary_cue_token(tokens: list[str]) -> str:
    long_tokens = [t for t in tokens if len(t) >= MIN_NAME_TOKEN_LEN]
    candidates = [t for t in long_tokens if t not in CUE_GENERIC_TOKENS] or long_tokens
    if not candidates:
        return ""
    return sorted(candidates, key=len, reverse=True)[0]


def is_likely_name_cue(token: str, primary: str) -> bool:
    token = (token or "").strip().lower()
    primary = (primary or "").strip().lower()
    if len(token) < MIN_NAME_TOKEN_LEN or len(primary) < MIN_NAME_TOKEN_LEN:
        return False
    if token == primary:
        return True
    if token[:3] == primary[:3]:
        return True
    shared = _shared_consonants(token, primary)
    if token[:2] == primary[:2] and shared >= 2:
        return True
    if shared >= 3:
        return True
    similarity = 1 - levenshtein(token, primary) / max(len(token), len(primary))
    return similarity >= 0.58 and shared >= 2


def has_name_cue(transcript: str, bot_name: str) -> bool:
    """Whether any word in ``transcript`` plausibly sounds like the bot's name."""
    primary = _primary_cue_token(tokenize(bot_name))
    if not primary:
        return False
    return any(is_likely_name_cue(token, primary) for token in tokenize(transcript))


def _contains_sequence(tokens: list[str], sequence: list[str]) -> bool:
    if not sequence or len(sequence) > len(tokens):
        return False
    width = len(sequence)
    return any(tokens[i : i + width] == sequence for i in range(len(tokens) - width + 1))


def is_bot_name_addressed(transcript: str, bot_name: str) -> bool:
    """Exact wake-name match: full name, the name run together, or its main word."""
    tokens = tokenize(transcript)
    name_tokens = tokenize(bot_name)
    if not tokens or not name_tokens:
        return False
    if _contains_sequence(tokens, name_tokens):
        return True
    if len(name_tokens) >= 2:
        merged = "".join(name_tokens)
        if len(merged) >= MIN_NAME_TOKEN_LEN and merged in tokens:
            return True
    candidates = [t for t in name_tokens if len(t) >= MIN_NAME_TOKEN_LEN]
    if not candidates:
        return False
    primary = next((t for t in candidates if t not in WAKE_GENERIC_TOKENS), candidates[0])
    return primary in tokens


# ── Classifier ──────────────────────────────────────────────────────


def normalize_threshold(value: float | None) -> float:
    return clamp(float(value or 0) or DEFAULT_THRESHOLD, MIN_THRESHOLD, MAX_THRESHOLD)


def normalize_reason(value: Any) -> str:
    text = str(value or "").strip().lower()
    return _REASON_RE.sub("_", text)[:120]


def _first_number(values: list[Any]) -> float | None:
    for value in values:
        if isinstance(value, bool) or value is None:
            continue
        try:
            number = float(value)
        except (TypeError, ValueError):
            continue
        if number == number and number not in (float("inf"), float("-inf")):
            return number
    return None


def _first_bool(values: list[Any]) -> bool | None:
    for value in values:
        if isinstance(value, bool):
            return value
        text = str(value if value is not None else "").strip().lower()
        if text in ("true", "yes", "1"):
            return True
        if text in ("false", "no", "0"):
            return False
    return None


def parse_address_response(raw: str, threshold: float) -> tuple[float, bool, str] | None:
    """Parse the classifier's JSON. None when the response breaks the contract."""
    text = (raw or "").strip()
    if not text:
        return None
    text = _FENCE_CLOSE_RE.sub("", _FENCE_OPEN_RE.sub("", text)).strip()
    try:
        row = json.loads(text)
    except ValueError:
        return None
    if not isinstance(row, dict):
        return None

    number = _first_number([row.get("confidence"), row.get("score"), row.get("probability")])
    flag = _first_bool([row.get("addressed"), row.get("directAddressed"), row.get("direct")])
    decision = str(row.get("decision") or row.get("answer") or "").strip().upper()
    from_decision = True if decision == "YES" else False if decision == "NO" else None
    if number is None and flag is None and from_decision is None:
        return None

    if number is not None:
        confidence = clamp(number, 0.0, 1.0)
    else:
        confidence = 1.0 if (flag is True or from_decision is True) else 0.0
    if flag is not None:
        addressed = flag
    elif from_decision is not None:
        addressed = from_decision
    else:
        addressed = confidence >= threshold
    return confidence, addressed, normalize_reason(row.get("reason"))


class AddressConfidenceClassifier:
    """Scores how likely a message is aimed at the bot. Never raises."""

    def __init__(self, generator: Generator | None) -> None:
        self.generator = generator

    async def score(
        self,
        *,
        transcript: str,
        bot_name: str,
        settings: BotSettings,
        speaker_name: str | None = None,
        participant_names: list[str] | None = None,
        mode: Literal["text", "voice"] = "text",
        threshold: float = DEFAULT_THRESHOLD,
        fallback_confidence: float = 0.0,
        trace: dict[str, Any] | None = None,
    ) -> AddressConfidenceResult:
        threshold = normalize_threshold(threshold)
        fallback_confidence = clamp(float(fallback_confidence or 0), 0.0, 1.0)
        transcript = (transcript or "").strip()
        bot_name = (bot_name or "").strip() or "the bot"
        mode = "voice" if mode == "voice" else "text"

        try:
            if not transcript:
                raise ClassificationDegradation("empty_transcript")
            if self.generator is None:
                raise ClassificationDegradation("llm_unavailable")
            return await self._score_with_model(
                transcript=transcript,
                bot_name=bot_name,
                settings=settings,
                speaker_name=speaker_name,
                participant_names=participant_names or [],
                mode=mode,
                threshold=threshold,
                fallback_confidence=fallback_confidence,
                trace=trace or {},
            )
        except ClassificationDegradation as degraded:
            logger.info(
                "addressing.classifier.degraded",
                reason=degraded.reason,
                error=degraded.detail,
            )
            return AddressConfidenceResult(
                confidence=fallback_confidence,
                threshold=threshold,
                addressed=fallback_confidence >= threshold,
                reason=degraded.reason,
                source="fallback",
                llm_provider=degraded.provider,
                llm_model=degraded.model,
                llm_response=degraded.response,
                error=degraded.detail if degraded.reason == "llm_error" else None,
            )

    async def _score_with_model(
        self,
        *,
        transcript: str,
        bot_name: str,
        settings: BotSettings,
        speaker_name: str | None,
        participant_names: list[str],
        mode: str,
        threshold: float,
        fallback_confidence: float,
        trace: dict[str, Any],
    ) -> AddressConfidenceResult:
        assert self.generator is not None
        llm_settings = settings.llm.model_copy(
            update={
                "model": settings.llm.classifier_model or settings.llm.model,
                "temperature": 0.0,
                "max_output_tokens": 80,
            }
        )
        system_prompt, user_prompt = build_address_prompts(
            transcript=transcript,
            bot_name=bot_name,
            speaker_name=speaker_name,
            participant_names=participant_names,
            mode=mode,
        )
        try:
            generation = await self.generator.generate(
                system_prompt=system_prompt,
                user_prompt=user_prompt,
                settings=llm_settings,
                trace={
                    "source": "direct_address_confidence",
                    "event": f"{mode}_classification",
                    **trace,
                },
                json_schema=ADDRESS_JSON_SCHEMA,
            )
        except Exception as e:
            raise ClassificationDegradation("llm_error", str(e)) from e

        raw = str(getattr(generation, "text", "") or "").strip()
        provider = getattr(generation, "provider", None)
        model = getattr(generation, "model", None) or llm_settings.model
        parsed = parse_address_response(raw, threshold)
        if parsed is None:
            raise ClassificationDegradation(
                "llm_contract_violation",
                raw[:200] or None,
                provider=provider,
                model=model,
                response=raw or None,
            )

        confidence, addressed, reason = parsed
        confidence = clamp(max(confidence, fallback_confidence), 0.0, 1.0)
        addressed = addressed or confidence >= threshold
        return AddressConfidenceResult(
            confidence=confidence,
            threshold=threshold,
            addressed=addressed,
            reason=reason or ("llm_direct_address" if addressed else "llm_not_direct_address"),
            source="llm",
            llm_provider=provider,
            llm_model=model,
            llm_response=raw or None,
        )


def build_address_prompts(
    *,
    transcript: str,
    bot_name: str,
    speaker_name: str | None,
    participant_names: list[str],
    mode: str,
) -> tuple[str, str]:
    participants = [name.strip() for name in participant_names if name and name.strip()]
    participants = participants[:MAX_PARTICIPANTS]
    speaker = (speaker_name or "").strip()
    user_lines = [
        f"Mode: {mode}",
        f"Bot name: {bot_name}",
        f"Speaker: {speaker}" if speaker else "",
        f"Participants: {', '.join(participants)}" if participants else "Participants: none provided",
        f'Transcript: "{transcript}"',
    ]
    system_lines = [
        f"Classify whether the speaker is addressing {bot_name} right now.",
        "Return strict JSON only with keys: confidence (0..1), addressed (boolean), "
        "reason (short snake_case or kebab-case).",
        "confidence means probability the utterance is directed at the bot, "
        "not just a rhyme/soundalike token.",
        "Treat clear direct questions/requests to the bot as high confidence.",
        "If the utterance is clearly aimed at another named participant, confidence should be low.",
        "Do not use rhyme-only similarity as direct-address evidence.",
    ]
    return "\n".join(system_lines), "\n".join(line for line in user_lines if line)
