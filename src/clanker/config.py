"""clanker configuration — loads from clanker.yaml + .env.

Two layers live here:

- ``ClankerConfig``: process-level settings (credentials, paths, logging,
  connection tuning). Read once at startup.
- ``BotSettings``: runtime behaviour (activity, permissions, initiative...).
  Seeded from the ``settings`` section of clanker.yaml and owned by the store
  afterwards. Every model is frozen so a fetched snapshot cannot change under
  a running drain loop.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from clanker.errors import ConfigurationError


def _load_yaml_config() -> dict[str, Any]:
    """Load clanker.yaml from CLANKER_CONFIG_PATH or default locations."""
    config_path = os.getenv("CLANKER_CONFIG_PATH")
    search_paths = (
        [Path(config_path)]
        if config_path
        else [
            Path("/etc/clanker/clanker.yaml"),
            Path("data/clanker.yaml"),
            Path("clanker.yaml"),
        ]
    )
    for path in search_paths:
        if path.exists():
            with open(path) as f:
                return yaml.safe_load(f) or {}
    return {}


def _parse_id_list(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return []
        if text.startswith("["):
            import json

            try:
                parsed = json.loads(text)
            except Exception:
                parsed = None
            if isinstance(parsed, list):
                return [str(item).strip() for item in parsed if str(item).strip()]
        return [item.strip() for item in text.split(",") if item.strip()]
    if isinstance(value, (list, tuple, set)):
        return [str(item).strip() for item in value if str(item).strip()]
    return [str(value).strip()] if str(value).strip() else []


# ── Runtime behaviour settings ──────────────────────────────────────


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")


class ActivitySettings(_Frozen):
    """How chatty the bot is."""

    reply_level: int = Field(default=35, ge=0, le=100, description="Ambient reply eagerness (percent)")
    min_seconds_between_messages: float = Field(default=20, ge=0, le=3600)
    reply_coalesce_window_seconds: float = Field(default=4, ge=0, le=20)
    reply_coalesce_max_messages: int = Field(default=6, ge=1, le=20)


class PermissionSettings(_Frozen):
    """Hard gates and hourly budgets."""

    allow_replies: bool = True
    allow_initiative_replies: bool = True
    allow_reactions: bool = True
    initiative_channel_ids: list[str] = Field(default_factory=list)
    allowed_channel_ids: list[str] = Field(default_factory=list)
    blocked_channel_ids: list[str] = Field(default_factory=list)
    blocked_user_ids: list[str] = Field(default_factory=list)
    max_messages_per_hour: int = Field(default=20, ge=0, le=1000)
    max_reactions_per_hour: int = Field(default=24, ge=0, le=1000)

    @field_validator(
        "initiative_channel_ids",
        "allowed_channel_ids",
        "blocked_channel_ids",
        "blocked_user_ids",
        mode="before",
    )
    @classmethod
    def _parse_ids(cls, value: Any) -> list[str]:
        return _parse_id_list(value)


class InitiativeSettings(_Frozen):
    """Unsolicited posting."""

    enabled: bool = False
    max_posts_per_day: int = Field(default=6, ge=0, le=100)
    min_minutes_between_posts: float = Field(default=120, ge=0, le=24 * 60)
    pacing_mode: Literal["even", "spontaneous"] = "even"
    spontaneity: int = Field(default=65, ge=0, le=100)
    post_on_startup: bool = False

    @field_validator("pacing_mode", mode="before")
    @classmethod
    def _normalize_mode(cls, value: Any) -> str:
        return "spontaneous" if str(value or "").strip().lower() == "spontaneous" else "even"


class MemorySettings(_Frozen):
    max_recent_messages: int = Field(default=35, ge=1, le=200)
    context_window_messages: int = Field(
        default=5,
        ge=1,
        le=50,
        description="Recent turns searched for the bot/author conversation precondition",
    )


class StartupSettings(_Frozen):
    catchup_enabled: bool = True
    catchup_lookback_hours: float = Field(default=6, ge=0, le=72)
    catchup_max_messages_per_channel: int = Field(default=20, ge=1, le=200)
    max_catchup_replies_per_channel: int = Field(default=2, ge=0, le=20)


class ReplyQueueSettings(_Frozen):
    """Tuned queue constants, exposed so they can be adjusted without a release."""

    max_per_channel: int = Field(default=60, ge=1, le=1000)
    rate_limit_wait_seconds: float = Field(default=15, gt=0, le=600)
    send_retry_base_seconds: float = Field(default=2.5, ge=0, le=120)
    send_max_retries: int = Field(default=2, ge=0, le=10)
    coalesce_edge_grace_ms: float = Field(default=250, ge=0, le=1000)


class LLMSettings(_Frozen):
    """Per-call generation parameters handed to the generator."""

    model: str = Field(default="openai/gpt-4.1-mini", description="LiteLLM model identifier")
    classifier_model: str | None = Field(
        default=None,
        description="Model for address classification; falls back to `model`",
    )
    temperature: float = Field(default=0.9, ge=0.0, le=2.0)
    max_output_tokens: int = Field(default=220, gt=0)


class BotSettings(_Frozen):
    """Immutable snapshot of runtime behaviour settings."""

    bot_name: str = "clanker conk"
    persona: str = "playful, chaotic-good, slangy, never toxic"
    activity: ActivitySettings = Field(default_factory=ActivitySettings)
    permissions: PermissionSettings = Field(default_factory=PermissionSettings)
    initiative: InitiativeSettings = Field(default_factory=InitiativeSettings)
    memory: MemorySettings = Field(default_factory=MemorySettings)
    startup: StartupSettings = Field(default_factory=StartupSettings)
    queue: ReplyQueueSettings = Field(default_factory=ReplyQueueSettings)
    llm: LLMSettings = Field(default_factory=LLMSettings)

    def merged(self, patch: dict[str, Any]) -> BotSettings:
        """Return a validated copy with ``patch`` deep-merged on top."""
        return BotSettings.model_validate(_deep_merge(self.model_dump(), patch))


def _deep_merge(base: dict[str, Any], patch: dict[str, Any]) -> dict[str, Any]:
    out = dict(base)
    for key, value in (patch or {}).items():
        if isinstance(value, dict) and isinstance(out.get(key), dict):
            out[key] = _deep_merge(out[key], value)
        else:
            out[key] = value
    return out


# ── Process configuration ───────────────────────────────────────────


class LLMConfig(BaseSettings):
    """LLM provider credentials."""

    api_key: str = Field(default="", description="API key for the LLM provider")
    api_base: str | None = Field(default=None, description="Custom API base URL")
    fallback_models: list[str] = Field(default_factory=list)

    model_config = SettingsConfigDict(env_prefix="CLANKER_LLM_")


class TelegramConfig(BaseSettings):
    """Telegram transport configuration."""

    bot_token: str = Field(default="", description="Telegram bot token")
    poll_timeout_s: int = Field(default=25, ge=1, le=60)
    retry_delay_s: int = Field(default=3, ge=1, le=30)
    max_message_chars: int = Field(default=3500, ge=200, le=4000)
    event_queue_size: int = Field(default=500, ge=10, le=10_000)

    model_config = SettingsConfigDict(env_prefix="CLANKER_TELEGRAM_")


class GatewayConfig(BaseModel):
    """Connection liveness tuning."""

    stale_seconds: float = Field(default=120, gt=0)
    watchdog_interval_seconds: float = Field(default=30, gt=0)
    reconnect_base_delay_seconds: float = Field(default=5, gt=0)
    reconnect_max_delay_seconds: float = Field(default=60, gt=0)
    invalidated_reconnect_delay_seconds: float = Field(default=2, ge=0)


class ClankerConfig(BaseSettings):
    """Root clanker configuration."""

    # Paths
    data_dir: str = Field(default="data")
    db_journal_mode: Literal["WAL", "DELETE"] = Field(default="WAL")
    db_busy_timeout_ms: int = Field(default=5000, ge=100, le=120000)

    # Scheduling
    initiative_tick_seconds: float = Field(default=60, gt=0)
    startup_task_delay_seconds: float = Field(default=4.5, ge=0)

    # Sub-configs
    llm: LLMConfig = Field(default_factory=LLMConfig)
    telegram: TelegramConfig = Field(default_factory=TelegramConfig)
    gateway: GatewayConfig = Field(default_factory=GatewayConfig)
    settings: BotSettings = Field(default_factory=BotSettings)

    # Logging
    log_level: str = Field(default="INFO")
    log_format: str = Field(default="json", description="'json' or 'console'")

    model_config = SettingsConfigDict(
        env_prefix="CLANKER_",
        env_nested_delimiter="__",
    )

    @classmethod
    def load(cls) -> ClankerConfig:
        """Load config from YAML + env vars (env takes precedence)."""
        yaml_cfg = _load_yaml_config()

        llm_data = yaml_cfg.pop("llm", {})
        telegram_data = yaml_cfg.pop("telegram", {})

        # Only pass YAML sub-configs if they have data;
        # otherwise let pydantic-settings pick up env vars
        kwargs: dict[str, Any] = {**yaml_cfg}
        if llm_data:
            kwargs["llm"] = LLMConfig(**llm_data)
        if telegram_data:
            kwargs["telegram"] = TelegramConfig(**telegram_data)

        return cls(**kwargs)


def ensure_runtime_env(config: ClankerConfig) -> None:
    """Fail fast when a credential the runtime cannot start without is missing."""
    if not config.telegram.bot_token.strip():
        raise ConfigurationError("Missing CLANKER_TELEGRAM_BOT_TOKEN in environment.")


# Singleton
_config: ClankerConfig | None = None


def get_config() -> ClankerConfig:
    """Get or create the global config."""
    global _config
    if _config is None:
        _config = ClankerConfig.load()
    return _config
