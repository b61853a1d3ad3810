"""Adapter for the native multi-part generative-language protocol.

The wire format mirrors the content model closely: messages become
``contents`` with ``user``/``model`` roles and typed parts. Streaming uses
``:streamGenerateContent?alt=sse`` where every ``data:`` line is a complete
partial response.
"""

from __future__ import annotations

import logging
from typing import Any, AsyncIterator

import httpx

from tern.backends.base import (
    BaseBackend,
    FinishReason,
    GenerationRequest,
    GenerationResponse,
    http_error,
    iter_sse_data,
)
from tern.content import (
    FunctionCall,
    FunctionResponse,
    InlineData,
    Message,
    Part,
    Role,
    UsageMetadata,
)
from tern.errors import BackendError, BackendMalformedResponseError, TokenCountUnavailableError
from tern.tokens import split_total

logger = logging.getLogger(__name__)

_API_VERSION = "v1beta"

_FINISH_REASONS = {
    "STOP": FinishReason.STOP,
    "MAX_TOKENS": FinishReason.MAX_TOKENS,
    "SAFETY": FinishReason.SAFETY,
    "RECITATION": FinishReason.SAFETY,
    "BLOCKLIST": FinishReason.SAFETY,
    "PROHIBITED_CONTENT": FinishReason.SAFETY,
}


# ------------------------------------------------------------------
# Wire conversion
# ------------------------------------------------------------------


def part_to_wire(part: Part) -> dict[str, Any]:
    if part.text is not None:
        wire: dict[str, Any] = {"text": part.text}
        if part.thought:
            wire["thought"] = True
        return wire
    if part.function_call is not None:
        call: dict[str, Any] = {"name": part.function_call.name, "args": part.function_call.args}
        if part.function_call.id:
            call["id"] = part.function_call.id
        return {"functionCall": call}
    if part.function_response is not None:
        response: dict[str, Any] = {
            "name": part.function_response.name,
            "response": part.function_response.response,
        }
        if part.function_response.id:
            response["id"] = part.function_response.id
        return {"functionResponse": response}
    assert part.inline_data is not None
    return {"inlineData": {"mimeType": part.inline_data.mime_type, "data": part.inline_data.data}}


def message_to_wire(message: Message) -> dict[str, Any]:
    # The protocol has no tool role; function responses travel as user turns.
    role = "model" if message.role == Role.MODEL else "user"
    return {"role": role, "parts": [part_to_wire(p) for p in message.parts]}


def part_from_wire(raw: dict[str, Any]) -> Part | None:
    if "text" in raw:
        return Part(text=raw["text"] or "", thought=bool(raw.get("thought")))
    if "functionCall" in raw:
        call = raw["functionCall"] or {}
        args = call.get("args")
        return Part(
            function_call=FunctionCall(
                id=call.get("id"),
                name=call.get("name"),
                args=args if isinstance(args, dict) else {},
            )
        )
    if "functionResponse" in raw:
        resp = raw["functionResponse"] or {}
        return Part(
            function_response=FunctionResponse(
                id=resp.get("id"),
                name=resp.get("name") or "",
                response=resp.get("response") or {},
            )
        )
    if "inlineData" in raw:
        data = raw["inlineData"] or {}
        return Part(inline_data=InlineData(mime_type=data.get("mimeType", ""), data=data.get("data", "")))
    return None


def usage_from_wire(raw: dict[str, Any] | None) -> UsageMetadata | None:
    if not raw:
        return None
    prompt = raw.get("promptTokenCount") or 0
    completion = raw.get("candidatesTokenCount") or 0
    total = raw.get("totalTokenCount") or 0
    estimated = False
    if total and not prompt and not completion:
        prompt, completion = split_total(total)
        estimated = True
    return UsageMetadata(
        prompt_tokens=prompt,
        completion_tokens=completion,
        total_tokens=total or prompt + completion,
        cached_tokens=raw.get("cachedContentTokenCount") or 0,
        thought_tokens=raw.get("thoughtsTokenCount") or 0,
        estimated=estimated,
    )


def parse_response(data: dict[str, Any]) -> GenerationResponse:
    if isinstance(data.get("error"), dict):
        error = data["error"]
        raise BackendError(
            str(error.get("message", "stream error")),
            status=error.get("code") if isinstance(error.get("code"), int) else None,
            error_type=error.get("status"),
        )
    parts: list[Part] = []
    finish_reason = None
    candidates = data.get("candidates") or []
    if candidates:
        candidate = candidates[0]
        for raw in (candidate.get("content") or {}).get("parts") or []:
            part = part_from_wire(raw)
            if part is not None:
                parts.append(part)
        if candidate.get("finishReason"):
            finish_reason = _FINISH_REASONS.get(candidate["finishReason"], FinishReason.OTHER)
    return GenerationResponse(
        parts=parts,
        finish_reason=finish_reason,
        usage=usage_from_wire(data.get("usageMetadata")),
        model_version=data.get("modelVersion"),
    )


# ------------------------------------------------------------------
# Adapter
# ------------------------------------------------------------------


class NativeBackend(BaseBackend):
    backend_id = "native"

    def _build_client(self) -> httpx.AsyncClient:
        settings = self._settings
        headers = {"content-type": "application/json"}
        if settings.gemini_api_key:
            headers["x-goog-api-key"] = settings.gemini_api_key
        else:
            logger.warning("GEMINI_API_KEY is not set -- native backend calls will fail")
        timeout = httpx.Timeout(
            connect=settings.api_timeout_connect,
            read=settings.api_timeout_read,
            write=10.0,
            pool=10.0,
        )
        limits = httpx.Limits(max_connections=10, max_keepalive_connections=5)
        return httpx.AsyncClient(
            base_url=settings.native_base_url,
            headers=headers,
            timeout=timeout,
            limits=limits,
        )

    def build_payload(self, request: GenerationRequest) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "contents": [message_to_wire(m) for m in request.contents],
        }
        system = request.system_text()
        if system:
            payload["systemInstruction"] = {"parts": [{"text": system}]}
        if request.tools:
            payload["tools"] = [
                {
                    "functionDeclarations": [
                        {"name": t.name, "description": t.description, "parameters": t.parameters}
                        for t in request.tools
                    ]
                }
            ]
        sampling = request.sampling
        config = {
            "temperature": sampling.temperature,
            "topP": sampling.top_p,
            "topK": sampling.top_k,
            "maxOutputTokens": sampling.max_tokens,
            "presencePenalty": sampling.presence_penalty,
            "frequencyPenalty": sampling.frequency_penalty,
        }
        generation_config = {k: v for k, v in config.items() if v is not None}
        if request.response_schema is not None:
            generation_config["responseMimeType"] = "application/json"
            generation_config["responseSchema"] = request.response_schema
        if generation_config:
            payload["generationConfig"] = generation_config
        return payload

    def _path(self, model: str, method: str) -> str:
        return f"/{_API_VERSION}/models/{model}:{method}"

    async def _generate(self, request: GenerationRequest) -> GenerationResponse:
        response = await self.http.post(
            self._path(request.model, "generateContent"), json=self.build_payload(request)
        )
        if response.status_code != 200:
            raise http_error(response.status_code, response.text, response.headers)
        return parse_response(response.json())

    async def _generate_stream(self, request: GenerationRequest) -> AsyncIterator[GenerationResponse]:
        async with self.http.stream(
            "POST",
            self._path(request.model, "streamGenerateContent"),
            params={"alt": "sse"},
            json=self.build_payload(request),
        ) as response:
            if response.status_code != 200:
                body = (await response.aread()).decode(errors="replace")
                raise http_error(response.status_code, body, response.headers)
            async for data in iter_sse_data(response):
                yield parse_response(data)

    async def _count_tokens(self, contents: list[Message], model: str) -> int:
        response = await self.http.post(
            self._path(model, "countTokens"),
            json={"contents": [message_to_wire(m) for m in contents]},
        )
        if response.status_code != 200:
            raise TokenCountUnavailableError(
                f"countTokens returned {response.status_code}", {"body": response.text[:500]}
            )
        total = response.json().get("totalTokens")
        if not isinstance(total, int):
            raise TokenCountUnavailableError("countTokens response has no totalTokens")
        return total

    async def _embed(self, texts: list[str]) -> list[list[float]]:
        model = self._settings.embedding_model
        response = await self.http.post(
            self._path(model, "batchEmbedContents"),
            json={
                "requests": [
                    {"model": f"models/{model}", "content": {"parts": [{"text": t}]}}
                    for t in texts
                ]
            },
        )
        if response.status_code != 200:
            raise http_error(response.status_code, response.text, response.headers)
        embeddings = response.json().get("embeddings") or []
        if len(embeddings) != len(texts):
            raise BackendMalformedResponseError(
                f"Expected {len(texts)} embeddings, got {len(embeddings)}"
            )
        vectors = [e.get("values") or [] for e in embeddings]
        if any(not v for v in vectors):
            raise BackendMalformedResponseError("Backend returned an empty embedding")
        return vectors
