"""Error taxonomy for the clanker runtime.

Only ``ConfigurationError`` is allowed to end the process. Everything else is
caught at a component boundary and turned into a skip, a retry, or a log line.
"""

from __future__ import annotations


class ClankerError(Exception):
    """Base class for runtime errors."""


class ConfigurationError(ClankerError):
    """A required credential or setting is missing at startup."""


class TransientDispatchError(ClankerError):
    """An outbound send failed in a way that is worth retrying."""


class ClassificationDegradation(ClankerError):
    """The address classifier could not use the model and fell back."""

    def __init__(
        self,
        reason: str,
        detail: str | None = None,
        *,
        provider: str | None = None,
        model: str | None = None,
        response: str | None = None,
    ) -> None:
        super().__init__(detail or reason)
        self.reason = reason
        self.detail = detail
        self.provider = provider
        self.model = model
        self.response = response


class ConnectionLoss(ClankerError):
    """The realtime connection could not be (re)established."""
