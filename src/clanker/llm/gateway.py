"""LiteLLM gateway — async text generation for replies, posts and classification."""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any

import litellm
import structlog

from clanker.config import LLMConfig, LLMSettings

logger = structlog.get_logger()

# Suppress litellm's noisy logging
litellm.suppress_debug_info = True
litellm.drop_params = True


@dataclass
class GenerationResult:
    text: str
    provider: str
    model: str


def _provider_of(model: str) -> str:
    return model.split("/", 1)[0] if "/" in model else "openai"


def _message_text(response: Any) -> str:
    try:
        content = response.choices[0].message.content
    except (AttributeError, IndexError, KeyError, TypeError):
        return ""
    return str(content or "").strip()


class LLMGateway:
    """Async wrapper around LiteLLM for multi-provider model access."""

    def __init__(self, config: LLMConfig) -> None:
        self.config = config
        self.total_tokens_used = 0
        self.total_cost = 0.0
        self.request_count = 0

    async def generate(
        self,
        *,
        system_prompt: str,
        user_prompt: str,
        settings: LLMSettings,
        trace: dict[str, Any] | None = None,
        json_schema: dict[str, Any] | None = None,
    ) -> GenerationResult:
        """Run one completion. Raises when the primary and every fallback fail."""
        model = settings.model
        messages = [
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": user_prompt},
        ]
        kwargs: dict[str, Any] = {
            "model": model,
            "messages": messages,
            "temperature": settings.temperature,
            "max_tokens": settings.max_output_tokens,
        }
        if self.config.api_key:
            kwargs["api_key"] = self.config.api_key
        if self.config.api_base:
            kwargs["api_base"] = self.config.api_base
        if json_schema:
            kwargs["response_format"] = {
                "type": "json_schema",
                "json_schema": {
                    "name": str(json_schema.get("title") or "structured_output"),
                    "schema": json_schema,
                    "strict": True,
                },
            }

        start = time.monotonic()
        self.request_count += 1
        request_id = self.request_count
        trace = trace or {}

        logger.info(
            "llm.request",
            request_id=request_id,
            model=model,
            structured=bool(json_schema),
            **trace,
        )

        try:
            response = await litellm.acompletion(**kwargs)
        except Exception as e:
            logger.error("llm.error", request_id=request_id, error=str(e), model=model)

            for fallback in self.config.fallback_models:
                logger.info("llm.fallback", fallback_model=fallback)
                try:
                    kwargs["model"] = fallback
                    response = await litellm.acompletion(**kwargs)
                    logger.info("llm.fallback.success", model=fallback)
                    return GenerationResult(
                        text=_message_text(response),
                        provider=_provider_of(fallback),
                        model=fallback,
                    )
                except Exception as fallback_err:
                    logger.error("llm.fallback.error", model=fallback, error=str(fallback_err))

            raise

        self._track_usage(response, request_id, start)
        return GenerationResult(
            text=_message_text(response),
            provider=_provider_of(model),
            model=model,
        )

    def _track_usage(self, response: Any, request_id: int, start: float) -> None:
        usage = getattr(response, "usage", None)
        if not usage:
            return
        tokens = getattr(usage, "total_tokens", 0) or 0
        self.total_tokens_used += tokens
        try:
            cost = litellm.completion_cost(completion_response=response)
        except Exception:
            cost = 0.0  # Local models have no cost
        self.total_cost += cost
        logger.info(
            "llm.response",
            request_id=request_id,
            tokens=tokens,
            cost=f"${cost:.6f}",
            duration=f"{time.monotonic() - start:.2f}s",
        )

    @property
    def stats(self) -> dict[str, Any]:
        """Return usage statistics."""
        return {
            "total_tokens": self.total_tokens_used,
            "total_cost": f"${self.total_cost:.6f}",
            "request_count": self.request_count,
        }
