"""Exception taxonomy for the conversation engine.

Only configuration problems and concurrent-send misuse escape to callers
as exceptions. Backend failures inside a turn are converted into error
events; the rest are recovered where they occur.
"""

from __future__ import annotations

from typing import Any, Mapping


class TernError(Exception):
    """Base class for all engine errors."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "details": self.details,
        }


class ConfigurationError(TernError):
    """Unknown backend id, empty model id, or an out-of-range tunable."""


class ConversationBusyError(TernError):
    """A send was attempted while another one owns the history."""


class BackendError(TernError):
    """A backend call failed.

    ``status`` is the HTTP status when one was received. ``code`` and
    ``error_type`` carry transport-level identifiers (``ETIMEDOUT``,
    ``timeout``) when the failure never reached HTTP.
    """

    def __init__(
        self,
        message: str,
        status: int | None = None,
        code: str | None = None,
        error_type: str | None = None,
        body: str | None = None,
        headers: Mapping[str, str] | None = None,
    ):
        super().__init__(message, {"status": status, "code": code})
        self.status = status
        self.code = code
        self.error_type = error_type
        self.body = body
        self.headers = dict(headers or {})

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        result.update({"status": self.status, "body": self.body})
        return result


class BackendTimeoutError(BackendError):
    """A backend call timed out; ``message`` carries remediation steps."""


class BackendRateLimitedError(BackendError):
    def __init__(self, message: str, quota_kind: str | None = None, **kwargs: Any):
        kwargs.setdefault("status", 429)
        super().__init__(message, **kwargs)
        self.quota_kind = quota_kind


class BackendMalformedResponseError(BackendError):
    """The backend answered with something that cannot be interpreted."""


class TokenCountUnavailableError(TernError):
    """The backend could not count tokens; callers fall back to estimation."""


class CompressionFailedError(TernError):
    """Summarization did not produce a usable summary."""


class OperationCancelled(TernError):
    """The caller's cancellation token fired before the operation finished."""
