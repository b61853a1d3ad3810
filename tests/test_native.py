"""Tests for the native multi-part protocol adapter."""

import json

import httpx
import pytest

from tern.backends.base import FinishReason, GenerationRequest, SamplingParams, ToolDeclaration
from tern.backends.native import NativeBackend, message_to_wire, parse_response, usage_from_wire
from tern.classifier import QuotaKind
from tern.content import Message, Part, Role
from tern.errors import BackendError, BackendMalformedResponseError, BackendRateLimitedError
from tern.telemetry import SessionMetrics

from tests.conftest import make_settings

BASE_URL = "https://native.test"


def _make_backend(handler, telemetry=None) -> NativeBackend:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url=BASE_URL)
    return NativeBackend(make_settings(), telemetry, client)


def _candidate(parts, finish=None, usage=None) -> dict:
    data = {"candidates": [{"content": {"role": "model", "parts": parts}}]}
    if finish:
        data["candidates"][0]["finishReason"] = finish
    if usage:
        data["usageMetadata"] = usage
    return data


class TestWire:
    def test_tool_role_travels_as_user(self):
        """1. Function responses are sent under the user role."""
        msg = Message(
            role=Role.TOOL, parts=[Part.from_function_response("ls", {"output": "x"}, id="c1")]
        )
        wire = message_to_wire(msg)
        assert wire["role"] == "user"
        assert wire["parts"][0]["functionResponse"] == {
            "name": "ls",
            "response": {"output": "x"},
            "id": "c1",
        }

    def test_parse_response_parts_and_finish(self):
        """2. Text, thoughts and calls are parsed in order."""
        response = parse_response(
            _candidate(
                [
                    {"text": "plan", "thought": True},
                    {"text": "Hi"},
                    {"functionCall": {"name": "ls", "args": {"path": "."}}},
                ],
                finish="STOP",
            )
        )
        assert response.parts[0].thought is True
        assert response.text == "Hi"
        assert response.function_calls[0].name == "ls"
        assert response.finish_reason == FinishReason.STOP

    def test_unknown_finish_reason(self):
        response = parse_response(_candidate([{"text": "x"}], finish="SOMETHING_NEW"))
        assert response.finish_reason == FinishReason.OTHER

    def test_error_payload_raises(self):
        with pytest.raises(BackendError) as info:
            parse_response({"error": {"code": 500, "message": "internal", "status": "INTERNAL"}})
        assert info.value.status == 500

    def test_usage_total_only(self):
        usage = usage_from_wire({"totalTokenCount": 10})
        assert (usage.prompt_tokens, usage.completion_tokens) == (7, 3)
        assert usage.estimated

    def test_payload(self):
        """3. System text, tools, sampling and schema land in their wire slots."""
        backend = _make_backend(lambda r: httpx.Response(200))
        request = GenerationRequest(
            model="gemini-2.5-pro",
            history=[Message.user("a")],
            new_message=Message.user("b"),
            system_instruction=[Part.from_text("one"), Part.from_text("two")],
            tools=[ToolDeclaration(name="ls")],
            sampling=SamplingParams(temperature=0.2, max_tokens=100),
            response_schema={"type": "object"},
        )
        payload = backend.build_payload(request)
        assert len(payload["contents"]) == 2
        assert payload["systemInstruction"] == {"parts": [{"text": "one\ntwo"}]}
        assert payload["tools"][0]["functionDeclarations"][0]["name"] == "ls"
        config = payload["generationConfig"]
        assert config["temperature"] == 0.2
        assert config["maxOutputTokens"] == 100
        assert config["responseMimeType"] == "application/json"
        assert "topP" not in config


class TestHttp:
    @pytest.mark.asyncio
    async def test_stream(self):
        """1. streamGenerateContent is called with alt=sse and chunks are parsed."""
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["path"] = request.url.path
            seen["alt"] = request.url.params.get("alt")
            body = "".join(
                f"data: {json.dumps(d)}\n\n"
                for d in (
                    _candidate([{"text": "Hel"}]),
                    _candidate(
                        [{"text": "lo"}],
                        finish="STOP",
                        usage={"promptTokenCount": 4, "candidatesTokenCount": 2, "totalTokenCount": 6},
                    ),
                )
            )
            return httpx.Response(200, content=body.encode())

        metrics = SessionMetrics()
        backend = _make_backend(handler, telemetry=metrics)
        chunks = [
            c
            async for c in backend.generate_stream(
                GenerationRequest(model="gemini-2.5-pro", new_message=Message.user("hi"))
            )
        ]
        assert "".join(c.text for c in chunks) == "Hello"
        assert seen["path"] == "/v1beta/models/gemini-2.5-pro:streamGenerateContent"
        assert seen["alt"] == "sse"
        assert metrics.for_model("gemini-2.5-pro").total_tokens == 6

    @pytest.mark.asyncio
    async def test_quota_429(self):
        """2. A 429 quota body carries the quota kind."""
        message = "Quota exceeded for quota metric 'Gemini 2.5 Pro Requests' and limit"

        def handler(request):
            return httpx.Response(
                429, json={"error": {"code": 429, "message": message, "status": "RESOURCE_EXHAUSTED"}}
            )

        backend = _make_backend(handler)
        with pytest.raises(BackendRateLimitedError) as info:
            await backend.generate(
                GenerationRequest(model="gemini-2.5-pro", new_message=Message.user("hi"))
            )
        assert info.value.quota_kind == QuotaKind.PRO
        assert info.value.error_type == "RESOURCE_EXHAUSTED"

    @pytest.mark.asyncio
    async def test_count_tokens(self):
        def handler(request):
            assert request.url.path.endswith(":countTokens")
            return httpx.Response(200, json={"totalTokens": 42})

        backend = _make_backend(handler)
        assert await backend.count_tokens([Message.user("hi")], "gemini-2.5-pro") == 42

    @pytest.mark.asyncio
    async def test_count_tokens_falls_back_to_estimate(self):
        """3. A failing count endpoint degrades to the character estimate."""
        backend = _make_backend(lambda r: httpx.Response(500, text="down"))
        count = await backend.count_tokens([Message.user("x" * 400)], "gemini-2.5-pro")
        assert count > 100

    @pytest.mark.asyncio
    async def test_embed(self):
        def handler(request):
            body = json.loads(request.content)
            return httpx.Response(
                200, json={"embeddings": [{"values": [float(i)]} for i, _ in enumerate(body["requests"])]}
            )

        backend = _make_backend(handler)
        assert await backend.embed(["a", "b"]) == [[0.0], [1.0]]

    @pytest.mark.asyncio
    async def test_embed_count_mismatch(self):
        backend = _make_backend(lambda r: httpx.Response(200, json={"embeddings": [{"values": [1.0]}]}))
        with pytest.raises(BackendMalformedResponseError):
            await backend.embed(["a", "b"])
