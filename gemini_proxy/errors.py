from __future__ import annotations

from typing import Any


class GeminiProxyError(Exception):
    """Base error."""


class InvalidRequestError(GeminiProxyError):
    """Raised when the inbound chat payload cannot be forwarded."""

    def __init__(self, message: str, received_body: Any = None) -> None:
        super().__init__(message)
        self.message = message
        self.received_body = received_body


class InvalidConfigurationError(GeminiProxyError):
    """Raised before any upstream call when a required secret is missing."""
