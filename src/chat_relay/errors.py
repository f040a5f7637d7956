"""Error taxonomy for the chat relay.

Every error raised before streaming starts is a ``RelayError`` and is rendered by the
API layer as a single JSON body ``{"error": message, **extra}`` with ``status_code``.
Errors that happen after the stream has started never leave the relay as exceptions;
they become a terminal ``error`` event instead.
"""

import math
from datetime import datetime
from typing import Any, Dict, Optional


class RelayError(Exception):
    """Base exception for relay errors."""

    status_code = 500
    public_message = "Internal server error"

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        headers: Optional[Dict[str, str]] = None,
        extra: Optional[Dict[str, Any]] = None,
    ):
        self.message = message or self.public_message
        self.headers = headers or {}
        self.extra = extra or {}
        super().__init__(self.message)

    def to_body(self) -> Dict[str, Any]:
        return {"error": self.message, **self.extra}


class Unauthenticated(RelayError):
    status_code = 401
    public_message = "Unauthorized"


class RateLimited(RelayError):
    status_code = 429
    public_message = "Too many requests. Please try again later."

    def __init__(self, message: Optional[str] = None, *, retry_after: int, **kwargs):
        headers = kwargs.pop("headers", None) or {}
        headers["Retry-After"] = str(retry_after)
        super().__init__(message, headers=headers, **kwargs)
        self.retry_after = retry_after


class QuotaExceeded(RateLimited):
    public_message = "Monthly message limit reached. Upgrade your plan for more."


class ValidationFailed(RelayError):
    status_code = 400
    public_message = "Validation failed"

    def __init__(self, detail: str, **kwargs):
        super().__init__(f"Validation failed: {detail}", **kwargs)
        self.detail = detail


class ModelForbidden(RelayError):
    status_code = 403

    def __init__(self, tier: str, model: str, **kwargs):
        super().__init__(
            f"Your subscription tier ({tier}) does not include access to {model}",
            **kwargs,
        )
        self.tier = tier
        self.model = model


class UnknownModel(RelayError):
    status_code = 400

    def __init__(self, model: str, **kwargs):
        super().__init__(f"Unknown model: {model}", **kwargs)
        self.model = model


class MissingCredential(RelayError):
    """No API key is configured for the vendor; the vendor name is kept server-side."""

    status_code = 500
    public_message = "Model provider is not configured"

    def __init__(self, vendor: str, **kwargs):
        super().__init__(**kwargs)
        self.vendor = vendor


class UpstreamProviderError(RelayError):
    status_code = 502
    public_message = "An internal error occurred while generating the response"

    def __init__(self, detail: str, **kwargs):
        super().__init__(**kwargs)
        self.detail = detail

    def __str__(self) -> str:
        return self.detail


class PersistenceFailed(RelayError):
    status_code = 500

    def __init__(self, detail: str, **kwargs):
        super().__init__(**kwargs)
        self.detail = detail

    def __str__(self) -> str:
        return self.detail


class InternalError(RelayError):
    status_code = 500


def retry_after_seconds(reset_at: datetime, now: Optional[datetime] = None) -> int:
    """Whole seconds until ``reset_at``, never less than 1."""
    now = now or datetime.now(reset_at.tzinfo)
    return max(1, math.ceil((reset_at - now).total_seconds()))
