"""Exception types shared by the HTTP layer and the core services.

Each carries the HTTP status the REST layer maps it to. Tool and
gateway failures are not exceptions; they travel as ToolCallResult data.
"""

from __future__ import annotations

from typing import Any


class MarginaliaError(Exception):
    """Base class for errors surfaced to API callers."""

    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_body(self) -> dict[str, Any]:
        return {"error": self.message}


class ValidationFailed(MarginaliaError):
    """Request input rejected; carries a field-level error list."""

    status_code = 400

    def __init__(self, details: list[dict[str, str]], message: str = "Validation failed") -> None:
        super().__init__(message)
        self.details = details

    def to_body(self) -> dict[str, Any]:
        return {"error": self.message, "details": self.details}


class BadRequest(MarginaliaError):
    status_code = 400


class Unauthorized(MarginaliaError):
    status_code = 401


class Forbidden(MarginaliaError):
    status_code = 403


class NotFound(MarginaliaError):
    status_code = 404


class Conflict(MarginaliaError):
    status_code = 409


class LimitExceeded(MarginaliaError):
    """Quota exhausted for the caller's tier. Not retryable."""

    status_code = 429

    def __init__(
        self,
        code: str,
        message: str,
        plan: str,
        used: int,
        limit: int,
        is_trial: bool,
        trial_expires_at: str | None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.plan = plan
        self.used = used
        self.limit = limit
        self.is_trial = is_trial
        self.trial_expires_at = trial_expires_at

    def to_body(self) -> dict[str, Any]:
        return {
            "error": "Message limit reached",
            "code": self.code,
            "message": self.message,
            "plan": self.plan,
            "used": self.used,
            "limit": self.limit,
            "isTrial": self.is_trial,
            "trialExpiresAt": self.trial_expires_at,
        }


class UpstreamError(MarginaliaError):
    """Model provider failed or broke the stream."""

    status_code = 503
