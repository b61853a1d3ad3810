"""Backend contract and the behaviour every adapter shares.

``BaseBackend`` wraps each adapter's wire-level ``_generate`` /
``_generate_stream`` / ``_count_tokens`` / ``_embed`` with timing,
one telemetry record per call, timeout classification and token-count
fallback. Adapters only translate between the content model and their
protocol.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, fields, replace
from enum import StrEnum
from typing import Any, AsyncIterator, Mapping, Protocol

import httpx

from tern.cancellation import CancellationToken
from tern.classifier import quota_kind
from tern.config import Settings
from tern.content import FunctionCall, Message, Part, UsageMetadata
from tern.errors import (
    BackendError,
    BackendRateLimitedError,
    BackendTimeoutError,
    TokenCountUnavailableError,
)
from tern.telemetry import ApiCallRecord, TelemetrySink
from tern.tokens import rough_count

logger = logging.getLogger(__name__)

_TIMEOUT_MARKERS = (
    "timeout",
    "timed out",
    "connection timeout",
    "request timeout",
    "read timeout",
    "etimedout",
    "esockettimedout",
    "request timed out",
    "deadline exceeded",
)
_TIMEOUT_CODES = ("ETIMEDOUT", "ESOCKETTIMEDOUT")


# ------------------------------------------------------------------
# Request / response model
# ------------------------------------------------------------------


@dataclass
class SamplingParams:
    temperature: float | None = None
    top_p: float | None = None
    top_k: int | None = None
    max_tokens: int | None = None
    presence_penalty: float | None = None
    frequency_penalty: float | None = None
    repetition_penalty: float | None = None

    def overlay(self, other: SamplingParams) -> SamplingParams:
        """Values set on ``other`` win over values set here."""
        updates = {
            f.name: getattr(other, f.name)
            for f in fields(other)
            if getattr(other, f.name) is not None
        }
        return replace(self, **updates)

    @classmethod
    def from_settings(cls, settings: Settings) -> SamplingParams:
        return cls(**{f.name: getattr(settings, f.name) for f in fields(cls)})


@dataclass
class ToolDeclaration:
    name: str
    description: str = ""
    parameters: dict[str, Any] = field(default_factory=lambda: {"type": "object", "properties": {}})


@dataclass
class GenerationRequest:
    model: str
    history: list[Message] = field(default_factory=list)
    new_message: Message | None = None
    system_instruction: str | list[Part] | None = None
    tools: list[ToolDeclaration] = field(default_factory=list)
    sampling: SamplingParams = field(default_factory=SamplingParams)
    cancellation: CancellationToken | None = None
    response_schema: dict[str, Any] | None = None
    prompt_id: str | None = None

    @property
    def contents(self) -> list[Message]:
        if self.new_message is None:
            return list(self.history)
        return [*self.history, self.new_message]

    def system_text(self) -> str | None:
        """System instruction flattened into one block."""
        if self.system_instruction is None:
            return None
        if isinstance(self.system_instruction, str):
            return self.system_instruction or None
        text = "\n".join(p.text for p in self.system_instruction if p.text)
        return text or None


class FinishReason(StrEnum):
    STOP = "STOP"
    MAX_TOKENS = "MAX_TOKENS"
    SAFETY = "SAFETY"
    OTHER = "OTHER"


@dataclass
class GenerationResponse:
    """A full response, or one streamed chunk of it."""

    parts: list[Part] = field(default_factory=list)
    finish_reason: FinishReason | None = None
    usage: UsageMetadata | None = None
    model_version: str | None = None

    @property
    def text(self) -> str:
        return "".join(p.text for p in self.parts if p.text is not None and not p.thought)

    @property
    def function_calls(self) -> list[FunctionCall]:
        return [p.function_call for p in self.parts if p.function_call is not None]


class ContentGenerator(Protocol):
    """The four-operation contract shared by every backend adapter."""

    backend_id: str

    async def generate(self, request: GenerationRequest) -> GenerationResponse: ...

    def generate_stream(self, request: GenerationRequest) -> AsyncIterator[GenerationResponse]: ...

    async def count_tokens(self, contents: list[Message], model: str) -> int: ...

    async def embed(self, texts: list[str]) -> list[list[float]]: ...

    async def close(self) -> None: ...


# ------------------------------------------------------------------
# Shared helpers
# ------------------------------------------------------------------


def estimate_tokens(contents: list[Message]) -> int:
    payload = json.dumps([m.model_dump(mode="json", exclude_defaults=True) for m in contents])
    return rough_count(payload)


def parse_arguments(raw: str | None) -> dict[str, Any]:
    """Parse streamed tool-call arguments; anything unusable becomes ``{}``."""
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("Malformed tool-call arguments, using empty object: %s", raw[:200])
        return {}
    return parsed if isinstance(parsed, dict) else {}


def is_timeout_error(error: BaseException) -> bool:
    if isinstance(error, (httpx.TimeoutException, asyncio.TimeoutError, TimeoutError)):
        return True
    message = str(error).lower()
    if any(marker in message for marker in _TIMEOUT_MARKERS):
        return True
    if getattr(error, "code", None) in _TIMEOUT_CODES:
        return True
    return getattr(error, "error_type", None) == "timeout" or getattr(error, "type", None) == "timeout"


def timeout_message(seconds: float, streaming: bool, setting_name: str) -> str:
    if streaming:
        return (
            f"Streaming request timed out after {seconds:g}s. The request may be "
            f"too complex or the connection may be unstable.\n\n"
            f"Troubleshooting tips:\n"
            f"- Reduce input length or complexity\n"
            f"- Increase the timeout in config: {setting_name}\n"
            f"- Check network stability for streaming connections\n"
            f"- Consider non-streaming mode for very long inputs"
        )
    return (
        f"Request timed out after {seconds:g}s. Try reducing input length or "
        f"increasing the timeout in config.\n\n"
        f"Troubleshooting tips:\n"
        f"- Reduce input length or complexity\n"
        f"- Increase the timeout in config: {setting_name}\n"
        f"- Check network connectivity\n"
        f"- Consider using streaming mode for long responses"
    )


def http_error(status: int, body: str, headers: Mapping[str, str] | None = None) -> BackendError:
    """Build a typed error from a non-2xx response body."""
    message = body[:500] or f"HTTP {status}"
    error_type = None
    try:
        parsed = json.loads(body)
    except json.JSONDecodeError:
        parsed = None
    if isinstance(parsed, dict) and isinstance(parsed.get("error"), dict):
        error = parsed["error"]
        message = str(error.get("message") or message)
        error_type = error.get("status") or error.get("type")
    if status == 429:
        return BackendRateLimitedError(
            message,
            quota_kind=quota_kind(message),
            error_type=error_type,
            body=body,
            headers=headers,
        )
    return BackendError(message, status=status, error_type=error_type, body=body, headers=headers)


async def iter_sse_data(response: httpx.Response) -> AsyncIterator[dict[str, Any]]:
    """Yield decoded JSON payloads of ``data:`` lines; stop at ``[DONE]``."""
    async for line in response.aiter_lines():
        if not line.startswith("data:"):
            continue
        payload = line[5:].strip()
        if not payload:
            continue
        if payload == "[DONE]":
            return
        try:
            yield json.loads(payload)
        except json.JSONDecodeError:
            logger.warning("Skipping malformed SSE payload: %s", payload[:200])


# ------------------------------------------------------------------
# Base adapter
# ------------------------------------------------------------------


class BaseBackend(ABC):
    backend_id: str = "base"
    timeout_setting: str = "TERN_API_TIMEOUT_READ"

    def __init__(
        self,
        settings: Settings,
        telemetry: TelemetrySink | None = None,
        http: httpx.AsyncClient | None = None,
    ) -> None:
        self._settings = settings
        self._telemetry = telemetry
        self._http = http

    @abstractmethod
    def _build_client(self) -> httpx.AsyncClient: ...

    @abstractmethod
    async def _generate(self, request: GenerationRequest) -> GenerationResponse: ...

    @abstractmethod
    def _generate_stream(self, request: GenerationRequest) -> AsyncIterator[GenerationResponse]: ...

    @abstractmethod
    async def _embed(self, texts: list[str]) -> list[list[float]]: ...

    async def _count_tokens(self, contents: list[Message], model: str) -> int:
        raise TokenCountUnavailableError(f"{self.backend_id} backend has no token counter")

    @property
    def timeout_seconds(self) -> float:
        return self._settings.api_timeout_read

    @property
    def http(self) -> httpx.AsyncClient:
        if self._http is None:
            self._http = self._build_client()
        return self._http

    async def close(self) -> None:
        if self._http is not None:
            await self._http.aclose()
            self._http = None

    # ------------------------------------------------------------------
    # Public contract
    # ------------------------------------------------------------------

    async def generate(self, request: GenerationRequest) -> GenerationResponse:
        started = time.monotonic()
        try:
            response = await self._generate(request)
        except Exception as exc:
            error = self._annotate(exc, streaming=False)
            await self._record_failure(request, started, error, "generate")
            if error is exc:
                raise
            raise error from exc
        await self._emit(request.model, started, response.usage, None, "generate", request.prompt_id)
        return response

    async def generate_stream(self, request: GenerationRequest) -> AsyncIterator[GenerationResponse]:
        started = time.monotonic()
        usage: UsageMetadata | None = None
        finished = False
        try:
            async for chunk in self._generate_stream(request):
                if chunk.usage is not None:
                    usage = chunk.usage
                yield chunk
            finished = True
        except Exception as exc:
            finished = True
            error = self._annotate(exc, streaming=True)
            await self._record_failure(request, started, error, "generate_stream")
            if error is exc:
                raise
            raise error from exc
        finally:
            if not finished:
                # Cancelled or abandoned by the consumer
                estimate = UsageMetadata(prompt_tokens=estimate_tokens(request.contents), estimated=True)
                await self._emit(
                    request.model, started, estimate, "cancelled", "generate_stream", request.prompt_id
                )
        await self._emit(request.model, started, usage, None, "generate_stream", request.prompt_id)

    async def count_tokens(self, contents: list[Message], model: str) -> int:
        try:
            return await self._count_tokens(contents, model)
        except (TokenCountUnavailableError, BackendError, httpx.HTTPError) as exc:
            logger.debug("Token count unavailable (%s), estimating", exc)
            return estimate_tokens(contents)

    async def embed(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []
        started = time.monotonic()
        try:
            vectors = await self._embed(texts)
        except Exception as exc:
            error = self._annotate(exc, streaming=False)
            await self._emit(self._embedding_model, started, None, str(error), "embed", None)
            if error is exc:
                raise
            raise error from exc
        await self._emit(self._embedding_model, started, None, None, "embed", None)
        return vectors

    @property
    def _embedding_model(self) -> str:
        return self._settings.embedding_model

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _annotate(self, exc: Exception, streaming: bool) -> Exception:
        if isinstance(exc, BackendTimeoutError):
            return exc
        if is_timeout_error(exc):
            code = getattr(exc, "code", None)
            return BackendTimeoutError(
                timeout_message(self.timeout_seconds, streaming, self.timeout_setting),
                status=getattr(exc, "status", None),
                code=code if isinstance(code, str) else None,
                error_type="timeout",
            )
        if isinstance(exc, httpx.HTTPError):
            return BackendError(str(exc) or exc.__class__.__name__)
        return exc

    async def _record_failure(
        self, request: GenerationRequest, started: float, error: Exception, operation: str
    ) -> None:
        try:
            prompt_tokens = await self.count_tokens(request.contents, request.model)
        except Exception:
            prompt_tokens = estimate_tokens(request.contents)
        usage = UsageMetadata(
            prompt_tokens=prompt_tokens, total_tokens=prompt_tokens, estimated=True
        )
        logger.warning("%s call to %s failed: %s", self.backend_id, request.model, error)
        await self._emit(request.model, started, usage, str(error), operation, request.prompt_id)

    async def _emit(
        self,
        model: str,
        started: float,
        usage: UsageMetadata | None,
        error_message: str | None,
        operation: str,
        prompt_id: str | None,
    ) -> None:
        duration_ms = int((time.monotonic() - started) * 1000)
        if error_message is None:
            logger.debug("%s %s on %s took %dms", self.backend_id, operation, model, duration_ms)
        if self._telemetry is None:
            return
        record = ApiCallRecord(
            model=model,
            backend_id=self.backend_id,
            duration_ms=duration_ms,
            usage=usage or UsageMetadata(),
            error_message=error_message,
            operation=operation,
            prompt_id=prompt_id,
        )
        try:
            await self._telemetry.record(record)
        except Exception:
            logger.warning("Telemetry sink failed", exc_info=True)
