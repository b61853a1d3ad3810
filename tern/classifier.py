"""Error classification, quota detection and user-facing error text.

Raw errors arrive in many shapes: backend exceptions with an HTTP status,
strings carrying a JSON error body (sometimes with a second JSON document
encoded in its ``message``), parsed API error dicts, or anything else.
``classify_error`` normalizes them and ``format_api_error`` turns them into
the text shown to the user, including tier-aware rate-limit guidance.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from enum import StrEnum
from typing import Any, Mapping

from tern.config import DEFAULT_FLASH_MODEL, DEFAULT_MODEL, AuthType, UserTier
from tern.errors import BackendError

logger = logging.getLogger(__name__)

UPGRADE_URL = "https://goo.gle/set-up-gemini-code-assist"
API_KEY_URL = "https://aistudio.google.com/apikey"
VERTEX_QUOTA_URL = "https://cloud.google.com/vertex-ai/docs/quotas"

_QUOTA_MARKER = "Quota exceeded for quota metric"
_PRO_QUOTA_PREFIX = "Quota exceeded for quota metric 'Gemini"
_PRO_QUOTA_SUFFIX = "Pro Requests'"

UNKNOWN_ERROR_MESSAGE = "An unknown error occurred."


class QuotaKind(StrEnum):
    PRO = "pro"
    GENERIC = "generic"


@dataclass(frozen=True)
class StructuredError:
    message: str
    status: int | None = None


@dataclass(frozen=True)
class EmbeddedJsonError:
    """A JSON API error found inside a string, unwrapped one level."""

    message: str
    status: str | None = None
    code: int | None = None


@dataclass(frozen=True)
class OpaqueError:
    message: str


ClassifiedError = StructuredError | EmbeddedJsonError | OpaqueError


@dataclass(frozen=True)
class Diagnosis:
    """Everything the engine needs to react to one failure."""

    error: ClassifiedError
    status: int | None
    quota_kind: QuotaKind | None
    message: str

    @property
    def rate_limited(self) -> bool:
        return self.status == 429

    @property
    def quota_exceeded(self) -> bool:
        return self.rate_limited and self.quota_kind is not None


# ------------------------------------------------------------------
# Shape detection
# ------------------------------------------------------------------


def _is_api_error(value: Any) -> bool:
    return (
        isinstance(value, Mapping)
        and isinstance(value.get("error"), Mapping)
        and "message" in value["error"]
    )


def _parse_embedded_json(text: str) -> dict[str, Any] | None:
    start = text.find("{")
    if start == -1:
        return None
    try:
        parsed, _ = json.JSONDecoder().raw_decode(text[start:])
    except json.JSONDecodeError:
        return None
    return parsed if isinstance(parsed, dict) else None


def _unwrap_api_error(parsed: Mapping[str, Any]) -> EmbeddedJsonError:
    error = parsed["error"]
    message = str(error.get("message", ""))
    try:
        nested = json.loads(message)
    except (json.JSONDecodeError, TypeError):
        nested = None
    if _is_api_error(nested):
        message = str(nested["error"]["message"])
    code = error.get("code")
    return EmbeddedJsonError(
        message=message,
        status=error.get("status"),
        code=code if isinstance(code, int) else None,
    )


def get_error_status(error: Any) -> int | None:
    """HTTP status from ``status``, ``status_code`` or ``response.status_code``."""
    if isinstance(error, Mapping):
        if _is_api_error(error):
            code = error["error"].get("code")
            return code if isinstance(code, int) else None
        status = error.get("status")
        return status if isinstance(status, int) else None
    for attr in ("status", "status_code"):
        value = getattr(error, attr, None)
        if isinstance(value, int):
            return value
    response = getattr(error, "response", None)
    if response is not None:
        value = getattr(response, "status_code", None) or getattr(response, "status", None)
        if isinstance(value, int):
            return value
    return None


def _error_texts(error: Any) -> list[str]:
    """All message strings worth scanning for quota markers."""
    if isinstance(error, str):
        return [error]
    if isinstance(error, Mapping):
        if _is_api_error(error):
            return [str(error["error"]["message"])]
        message = error.get("message")
        return [message] if isinstance(message, str) else []
    texts: list[str] = []
    message = getattr(error, "message", None)
    if isinstance(message, str):
        texts.append(message)
    elif isinstance(error, BaseException):
        texts.append(str(error))
    body = getattr(error, "body", None)
    if isinstance(body, str):
        texts.append(body)
    response = getattr(error, "response", None)
    data = getattr(response, "data", None) if response is not None else None
    if isinstance(data, str):
        texts.append(data)
    elif _is_api_error(data):
        texts.append(str(data["error"]["message"]))
    return texts


def is_pro_quota_exceeded(error: Any) -> bool:
    return any(
        _PRO_QUOTA_PREFIX in text and _PRO_QUOTA_SUFFIX in text
        for text in _error_texts(error)
    )


def is_generic_quota_exceeded(error: Any) -> bool:
    return any(_QUOTA_MARKER in text for text in _error_texts(error))


def quota_kind(error: Any) -> QuotaKind | None:
    if is_pro_quota_exceeded(error):
        return QuotaKind.PRO
    if is_generic_quota_exceeded(error):
        return QuotaKind.GENERIC
    return None


# ------------------------------------------------------------------
# Classification
# ------------------------------------------------------------------


def classify_error(error: Any) -> ClassifiedError:
    if isinstance(error, str):
        parsed = _parse_embedded_json(error)
        if parsed is not None and _is_api_error(parsed):
            return _unwrap_api_error(parsed)
        return OpaqueError(message=error)
    if _is_api_error(error):
        return _unwrap_api_error(error)
    if isinstance(error, Mapping) and isinstance(error.get("message"), str):
        return StructuredError(message=error["message"], status=get_error_status(error))
    if isinstance(error, BaseException):
        message = getattr(error, "message", None)
        if not isinstance(message, str):
            message = str(error) or error.__class__.__name__
        return StructuredError(message=message, status=get_error_status(error))
    return OpaqueError(message=UNKNOWN_ERROR_MESSAGE)


# ------------------------------------------------------------------
# User-facing text
# ------------------------------------------------------------------


def rate_limit_message(
    auth_type: AuthType | None,
    error: Any,
    user_tier: UserTier | None = None,
    current_model: str | None = None,
    fallback_model: str | None = None,
) -> str:
    current = current_model or DEFAULT_MODEL
    fallback = fallback_model or DEFAULT_FLASH_MODEL

    if auth_type == AuthType.OAUTH_LOGIN:
        paid = user_tier in (UserTier.LEGACY, UserTier.STANDARD)
        kind = quota_kind(error)
        if kind == QuotaKind.PRO:
            if paid:
                return (
                    f"\nYou have reached your daily {current} quota limit. You will be "
                    f"switched to the {fallback} model for the rest of this session. "
                    f"Thank you for using a paid plan. To keep using {current} today, "
                    f"consider using /auth to switch to a paid API key from {API_KEY_URL}"
                )
            return (
                f"\nYou have reached your daily {current} quota limit. You will be "
                f"switched to the {fallback} model for the rest of this session. To "
                f"increase your limits, upgrade to a plan with higher limits at "
                f"{UPGRADE_URL}, or use /auth to switch to a paid API key from {API_KEY_URL}"
            )
        if kind == QuotaKind.GENERIC:
            if paid:
                return (
                    f"\nYou have reached your daily quota limit for {current}. "
                    f"{fallback} can be used for the rest of this session. Thank you "
                    f"for using a paid plan. To keep using {current} today, consider "
                    f"using /auth to switch to a paid API key from {API_KEY_URL}"
                )
            return (
                f"\nYou have reached your daily quota limit for {current}. {fallback} "
                f"can be used for the rest of this session. To increase your limits, "
                f"upgrade to a plan with higher limits at {UPGRADE_URL}, or use /auth "
                f"to switch to a paid API key from {API_KEY_URL}"
            )
        suffix = " Thank you for using a paid plan." if paid else ""
        return (
            f"\nPossible quota limitations in place or slow response times detected "
            f"for {current}. Switching to the {fallback} model for the rest of this "
            f"session.{suffix}"
        )

    if auth_type == AuthType.API_KEY:
        return (
            f"\nPlease wait and try again later, or continue with {fallback} instead "
            f"of {current}. To increase your limits, request a quota increase "
            f"through AI Studio ({API_KEY_URL}), or switch to another /auth method"
        )
    if auth_type == AuthType.ENTERPRISE:
        return (
            f"\nPlease wait and try again later, or continue with {fallback} instead "
            f"of {current}. To increase your limits, request a quota increase "
            f"through Vertex ({VERTEX_QUOTA_URL}), or switch to another /auth method"
        )
    return (
        f"\nPossible quota limitations in place or slow response times detected "
        f"for {current}. Switching to the {fallback} model for the rest of this session."
    )


def format_api_error(
    error: Any,
    auth_type: AuthType | None = None,
    user_tier: UserTier | None = None,
    current_model: str | None = None,
    fallback_model: str | None = None,
) -> str:
    classified = classify_error(error)
    if isinstance(classified, StructuredError):
        text = f"[API Error: {classified.message}]"
        if classified.status == 429:
            text += rate_limit_message(
                auth_type, error, user_tier, current_model, fallback_model
            )
        return text
    if isinstance(classified, EmbeddedJsonError):
        text = f"[API Error: {classified.message} (Status: {classified.status})]"
        if classified.code == 429:
            text += rate_limit_message(
                auth_type, classified.message, user_tier, current_model, fallback_model
            )
        return text
    return f"[API Error: {classified.message}]"


def diagnose(
    error: Any,
    auth_type: AuthType | None = None,
    user_tier: UserTier | None = None,
    current_model: str | None = None,
    fallback_model: str | None = None,
) -> Diagnosis:
    classified = classify_error(error)
    if isinstance(classified, EmbeddedJsonError):
        status = classified.code
    elif isinstance(classified, StructuredError):
        status = classified.status
    else:
        status = None
    kind = quota_kind(error) if status == 429 else None
    message = format_api_error(error, auth_type, user_tier, current_model, fallback_model)
    return Diagnosis(error=classified, status=status, quota_kind=kind, message=message)
