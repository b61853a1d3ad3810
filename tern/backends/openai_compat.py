"""Adapter for OpenAI-compatible chat-completions endpoints.

Chat backends carry tool calls on assistant messages and tool results as
separate ``tool`` messages keyed by call id, and many of them reject an
assistant tool call without its result (or the reverse). Outbound message
lists are therefore repaired and merged before every call.
"""

from __future__ import annotations

import json
import logging
from typing import Any, AsyncIterator

import httpx

from tern.backends.base import (
    BaseBackend,
    FinishReason,
    GenerationRequest,
    GenerationResponse,
    estimate_tokens,
    http_error,
    iter_sse_data,
    parse_arguments,
)
from tern.content import Message, Part, Role, UsageMetadata
from tern.errors import BackendMalformedResponseError
from tern.tokens import split_total

logger = logging.getLogger(__name__)

_FINISH_REASONS = {
    "stop": FinishReason.STOP,
    "length": FinishReason.MAX_TOKENS,
    "content_filter": FinishReason.SAFETY,
    "tool_calls": FinishReason.STOP,
    "function_call": FinishReason.STOP,
}


def map_finish_reason(reason: str | None) -> FinishReason | None:
    if not reason:
        return None
    return _FINISH_REASONS.get(reason, FinishReason.OTHER)


# ------------------------------------------------------------------
# Outbound conversion
# ------------------------------------------------------------------


def to_openai_messages(request: GenerationRequest) -> list[dict[str, Any]]:
    """Convert a request into a repaired, merged chat message list."""
    messages: list[dict[str, Any]] = []
    system = request.system_text()
    if system:
        messages.append({"role": "system", "content": system})

    for message in request.contents:
        responses = message.function_responses
        if responses:
            for response in responses:
                messages.append(
                    {
                        "role": "tool",
                        "tool_call_id": response.id or "",
                        "content": json.dumps(response.response),
                    }
                )
            if message.text:
                messages.append({"role": "user", "content": message.text})
            continue

        calls = message.function_calls
        if message.role == Role.MODEL and calls:
            text = message.text
            messages.append(
                {
                    "role": "assistant",
                    "content": text or None,
                    "tool_calls": [
                        {
                            "id": call.id or f"call_{i}",
                            "type": "function",
                            "function": {"name": call.name, "arguments": json.dumps(call.args)},
                        }
                        for i, call in enumerate(calls)
                    ],
                }
            )
            continue

        text = message.text
        if text:
            role = "assistant" if message.role == Role.MODEL else "user"
            messages.append({"role": role, "content": text})

    return merge_consecutive_assistant_messages(clean_orphaned_tool_calls(messages))


def _repair_once(messages: list[dict[str, Any]]) -> list[dict[str, Any]]:
    cleaned: list[dict[str, Any]] = []
    for i, message in enumerate(messages):
        role = message.get("role")
        if role == "assistant" and message.get("tool_calls"):
            later_results = {
                m.get("tool_call_id") for m in messages[i + 1 :] if m.get("role") == "tool"
            }
            valid = [tc for tc in message["tool_calls"] if tc.get("id") in later_results]
            if valid:
                cleaned.append({**message, "tool_calls": valid})
            elif isinstance(message.get("content"), str) and message["content"].strip():
                kept = {k: v for k, v in message.items() if k != "tool_calls"}
                cleaned.append(kept)
        elif role == "tool":
            earlier_calls = {
                tc.get("id")
                for m in messages[:i]
                if m.get("role") == "assistant"
                for tc in m.get("tool_calls") or []
            }
            if message.get("tool_call_id") and message["tool_call_id"] in earlier_calls:
                cleaned.append(message)
        else:
            cleaned.append(message)
    return cleaned


def clean_orphaned_tool_calls(messages: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Drop tool calls without results and results without calls, to a fixed point.

    Dropping one side can orphan the other, so repair repeats until a pass
    changes nothing (two passes for any realistic history).
    """
    current = messages
    while True:
        repaired = _repair_once(current)
        if repaired == current:
            return repaired
        current = repaired


def merge_consecutive_assistant_messages(messages: list[dict[str, Any]]) -> list[dict[str, Any]]:
    merged: list[dict[str, Any]] = []
    for message in messages:
        previous = merged[-1] if merged else None
        if message.get("role") == "assistant" and previous and previous.get("role") == "assistant":
            texts = [c for c in (previous.get("content"), message.get("content")) if c]
            combined: dict[str, Any] = {
                "role": "assistant",
                "content": "".join(texts) if texts else None,
            }
            calls = (previous.get("tool_calls") or []) + (message.get("tool_calls") or [])
            if calls:
                combined["tool_calls"] = calls
            merged[-1] = combined
        else:
            merged.append(dict(message))
    return merged


# ------------------------------------------------------------------
# Inbound conversion
# ------------------------------------------------------------------


def usage_from_openai(raw: dict[str, Any] | None) -> UsageMetadata | None:
    if not raw:
        return None
    prompt = raw.get("prompt_tokens") or 0
    completion = raw.get("completion_tokens") or 0
    total = raw.get("total_tokens") or 0
    estimated = False
    if total and not prompt and not completion:
        prompt, completion = split_total(total)
        estimated = True
    cached = (raw.get("prompt_tokens_details") or {}).get("cached_tokens") or 0
    return UsageMetadata(
        prompt_tokens=prompt,
        completion_tokens=completion,
        total_tokens=total or prompt + completion,
        cached_tokens=cached,
        estimated=estimated,
    )


def parse_completion(data: dict[str, Any]) -> GenerationResponse:
    choices = data.get("choices") or []
    parts: list[Part] = []
    finish_reason = None
    if choices:
        choice = choices[0]
        message = choice.get("message") or {}
        if message.get("content"):
            parts.append(Part.from_text(message["content"]))
        for call in message.get("tool_calls") or []:
            function = call.get("function") or {}
            if not function.get("name"):
                continue
            parts.append(
                Part.from_function_call(
                    function["name"], parse_arguments(function.get("arguments")), id=call.get("id")
                )
            )
        finish_reason = map_finish_reason(choice.get("finish_reason"))
    return GenerationResponse(
        parts=parts,
        finish_reason=finish_reason,
        usage=usage_from_openai(data.get("usage")),
        model_version=data.get("model"),
    )


class ToolCallAccumulator:
    """Reassembles streamed tool calls keyed by call index.

    Fragments for one index arrive across chunks (id, then name, then
    argument text). Calls are only released by ``flush()`` once the stream
    signals completion for the choice.
    """

    def __init__(self) -> None:
        self._calls: dict[int, dict[str, str]] = {}

    def add(self, deltas: list[dict[str, Any]]) -> None:
        for delta in deltas:
            index = delta.get("index", 0)
            entry = self._calls.setdefault(index, {"id": "", "name": "", "arguments": ""})
            if delta.get("id"):
                entry["id"] = delta["id"]
            function = delta.get("function") or {}
            if function.get("name"):
                entry["name"] = function["name"]
            if function.get("arguments"):
                entry["arguments"] += function["arguments"]

    def flush(self) -> list[Part]:
        parts = [
            Part.from_function_call(
                entry["name"], parse_arguments(entry["arguments"]), id=entry["id"] or None
            )
            for _, entry in sorted(self._calls.items())
            if entry["name"]
        ]
        self._calls.clear()
        return parts

    def __len__(self) -> int:
        return len(self._calls)


def parse_stream_chunk(data: dict[str, Any], accumulator: ToolCallAccumulator) -> GenerationResponse | None:
    """Translate one streamed chunk; ``None`` when it carries nothing to surface."""
    usage = usage_from_openai(data.get("usage"))
    choices = data.get("choices") or []
    if not choices:
        return GenerationResponse(usage=usage) if usage else None

    choice = choices[0]
    delta = choice.get("delta") or {}
    parts: list[Part] = []
    if delta.get("reasoning_content"):
        parts.append(Part(text=delta["reasoning_content"], thought=True))
    if delta.get("content"):
        parts.append(Part.from_text(delta["content"]))
    if delta.get("tool_calls"):
        accumulator.add(delta["tool_calls"])

    finish_reason = map_finish_reason(choice.get("finish_reason"))
    if finish_reason is not None:
        parts.extend(accumulator.flush())

    if not parts and finish_reason is None and usage is None:
        return None
    return GenerationResponse(
        parts=parts, finish_reason=finish_reason, usage=usage, model_version=data.get("model")
    )


# ------------------------------------------------------------------
# Adapter
# ------------------------------------------------------------------


class OpenAICompatibleBackend(BaseBackend):
    backend_id = "openai"
    timeout_setting = "TERN_OPENAI_TIMEOUT_MS"

    @property
    def timeout_seconds(self) -> float:
        return self._settings.openai_timeout_ms / 1000

    @property
    def _embedding_model(self) -> str:
        return self._settings.openai_embedding_model

    def _build_client(self) -> httpx.AsyncClient:
        settings = self._settings
        headers = {"content-type": "application/json"}
        if settings.openai_api_key:
            headers["authorization"] = f"Bearer {settings.openai_api_key}"
        else:
            logger.warning("OPENAI_API_KEY is not set -- requests are sent unauthenticated")
        return httpx.AsyncClient(
            base_url=settings.openai_base_url,
            headers=headers,
            timeout=httpx.Timeout(self.timeout_seconds, connect=settings.api_timeout_connect),
            limits=httpx.Limits(max_connections=10, max_keepalive_connections=5),
            transport=httpx.AsyncHTTPTransport(retries=3),
        )

    def sampling_parameters(self, request: GenerationRequest) -> dict[str, Any]:
        """Configured values win over request values, which win over defaults."""
        settings = self._settings
        sampling = request.sampling

        def pick(name: str, default: Any = None) -> Any:
            configured = getattr(settings, name)
            if configured is not None:
                return configured
            requested = getattr(sampling, name)
            return requested if requested is not None else default

        params: dict[str, Any] = {
            "temperature": pick("temperature", 0.0),
            "top_p": pick("top_p", 1.0),
        }
        optional = {
            "max_tokens": pick("max_tokens"),
            "top_k": pick("top_k"),
            "repetition_penalty": pick("repetition_penalty"),
            "presence_penalty": pick("presence_penalty"),
            "frequency_penalty": pick("frequency_penalty"),
        }
        params.update({k: v for k, v in optional.items() if v is not None})
        return params

    def build_payload(self, request: GenerationRequest, stream: bool = False) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": request.model,
            "messages": to_openai_messages(request),
            **self.sampling_parameters(request),
        }
        if request.tools:
            payload["tools"] = [
                {
                    "type": "function",
                    "function": {
                        "name": t.name,
                        "description": t.description,
                        "parameters": t.parameters,
                    },
                }
                for t in request.tools
            ]
        if request.response_schema is not None:
            payload["response_format"] = {"type": "json_object"}
        if stream:
            payload["stream"] = True
            payload["stream_options"] = {"include_usage": True}
        return payload

    async def _generate(self, request: GenerationRequest) -> GenerationResponse:
        response = await self.http.post("/chat/completions", json=self.build_payload(request))
        if response.status_code != 200:
            raise http_error(response.status_code, response.text, response.headers)
        return parse_completion(response.json())

    async def _generate_stream(self, request: GenerationRequest) -> AsyncIterator[GenerationResponse]:
        accumulator = ToolCallAccumulator()
        async with self.http.stream(
            "POST", "/chat/completions", json=self.build_payload(request, stream=True)
        ) as response:
            if response.status_code != 200:
                body = (await response.aread()).decode(errors="replace")
                raise http_error(response.status_code, body, response.headers)
            async for data in iter_sse_data(response):
                chunk = parse_stream_chunk(data, accumulator)
                if chunk is not None:
                    yield chunk
        if len(accumulator):
            logger.warning(
                "Stream ended without finish_reason; dropping %d incomplete tool call(s)",
                len(accumulator),
            )

    async def _count_tokens(self, contents: list[Message], model: str) -> int:
        # No tokenizer endpoint on chat-completions backends.
        return estimate_tokens(contents)

    async def _embed(self, texts: list[str]) -> list[list[float]]:
        response = await self.http.post(
            "/embeddings", json={"model": self._settings.openai_embedding_model, "input": texts}
        )
        if response.status_code != 200:
            raise http_error(response.status_code, response.text, response.headers)
        data = response.json().get("data") or []
        if len(data) != len(texts):
            raise BackendMalformedResponseError(f"Expected {len(texts)} embeddings, got {len(data)}")
        ordered = sorted(data, key=lambda item: item.get("index", 0))
        return [item["embedding"] for item in ordered]
