"""Tests for the OpenAI-compatible chat adapter.

Covers:
- TestConversion: content model -> chat messages, repair, merge
- TestStreamParsing: tool-call reassembly and usage handling
- TestSampling: configured > request > default precedence
- TestHttp: streaming, errors, timeouts and embeddings over a mock transport
"""

import json

import httpx
import pytest

from tern.backends.base import GenerationRequest, SamplingParams, ToolDeclaration
from tern.backends.openai_compat import (
    OpenAICompatibleBackend,
    ToolCallAccumulator,
    clean_orphaned_tool_calls,
    merge_consecutive_assistant_messages,
    parse_completion,
    parse_stream_chunk,
    to_openai_messages,
    usage_from_openai,
)
from tern.content import Message, Part
from tern.errors import BackendRateLimitedError, BackendTimeoutError
from tern.telemetry import SessionMetrics

from tests.conftest import make_settings

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

BASE_URL = "https://llm.test/v1"


def _make_backend(handler, telemetry=None, **settings) -> OpenAICompatibleBackend:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url=BASE_URL)
    return OpenAICompatibleBackend(make_settings(backend="openai", **settings), telemetry, client)


def _sse(*payloads) -> bytes:
    lines = [f"data: {json.dumps(p)}\n\n" for p in payloads]
    lines.append("data: [DONE]\n\n")
    return "".join(lines).encode()


def _tool_exchange(call_id: str = "c1") -> list[Message]:
    return [
        Message.user("read it"),
        Message.model(Part.from_function_call("read_file", {"path": "a.txt"}, id=call_id)),
        Message.user(Part.from_function_response("read_file", {"output": "hi"}, id=call_id)),
    ]


# ---------------------------------------------------------------------------
# TestConversion
# ---------------------------------------------------------------------------


class TestConversion:
    def test_system_message_first(self):
        """1. The system instruction becomes the first message."""
        request = GenerationRequest(
            model="m", new_message=Message.user("hi"), system_instruction="be brief"
        )
        messages = to_openai_messages(request)
        assert messages[0] == {"role": "system", "content": "be brief"}
        assert messages[1] == {"role": "user", "content": "hi"}

    def test_tool_exchange(self):
        """2. Calls become assistant tool_calls and responses become tool messages."""
        messages = to_openai_messages(GenerationRequest(model="m", history=_tool_exchange()))
        assert [m["role"] for m in messages] == ["user", "assistant", "tool"]
        call = messages[1]["tool_calls"][0]
        assert call["id"] == "c1"
        assert json.loads(call["function"]["arguments"]) == {"path": "a.txt"}
        assert messages[2]["tool_call_id"] == "c1"
        assert json.loads(messages[2]["content"]) == {"output": "hi"}

    def test_orphaned_call_dropped(self):
        """3. A call without a result disappears; the message goes if it has no text."""
        history = _tool_exchange()[:2]
        messages = to_openai_messages(GenerationRequest(model="m", history=history))
        assert [m["role"] for m in messages] == ["user"]

    def test_orphaned_call_keeps_text(self):
        """4. An assistant message with text survives without its orphaned calls."""
        history = [
            Message.user("go"),
            Message.model([Part.from_text("Looking."), Part.from_function_call("f", id="x")]),
        ]
        messages = to_openai_messages(GenerationRequest(model="m", history=history))
        assert messages[-1] == {"role": "assistant", "content": "Looking."}

    def test_orphaned_result_dropped(self):
        """5. A tool result without a matching call is removed."""
        history = [
            Message.user("go"),
            Message.user(Part.from_function_response("f", {"ok": True}, id="ghost")),
        ]
        messages = to_openai_messages(GenerationRequest(model="m", history=history))
        assert all(m["role"] != "tool" for m in messages)

    def test_repair_reaches_fixed_point(self):
        """6. Removing one side of a pair never leaves the other side dangling."""
        messages = [
            {"role": "tool", "tool_call_id": "a", "content": "{}"},
            {
                "role": "assistant",
                "content": None,
                "tool_calls": [{"id": "a", "type": "function", "function": {"name": "f"}}],
            },
            {"role": "tool", "tool_call_id": "a", "content": "{}"},
        ]
        cleaned = clean_orphaned_tool_calls(messages)
        assert cleaned == messages[1:]
        assert clean_orphaned_tool_calls(cleaned) == cleaned

    def test_merge_consecutive_assistant(self):
        """7. Adjacent assistant messages merge text and calls."""
        merged = merge_consecutive_assistant_messages(
            [
                {"role": "assistant", "content": "a"},
                {"role": "assistant", "content": "b", "tool_calls": [{"id": "1"}]},
                {"role": "user", "content": "c"},
            ]
        )
        assert merged == [
            {"role": "assistant", "content": "ab", "tool_calls": [{"id": "1"}]},
            {"role": "user", "content": "c"},
        ]

    def test_mixed_response_and_text(self):
        """8. Text alongside function responses follows the tool messages."""
        history = _tool_exchange()
        history[2] = Message.user(
            [Part.from_function_response("read_file", {"output": "hi"}, id="c1"), "thanks"]
        )
        messages = to_openai_messages(GenerationRequest(model="m", history=history))
        assert [m["role"] for m in messages] == ["user", "assistant", "tool", "user"]
        assert messages[-1]["content"] == "thanks"


# ---------------------------------------------------------------------------
# TestStreamParsing
# ---------------------------------------------------------------------------


class TestStreamParsing:
    def test_tool_call_reassembled_across_chunks(self):
        """1. id, name and argument fragments combine into one call on finish."""
        acc = ToolCallAccumulator()
        first = parse_stream_chunk(
            {"choices": [{"delta": {"tool_calls": [{"index": 0, "id": "c1"}]}}]}, acc
        )
        second = parse_stream_chunk(
            {
                "choices": [
                    {
                        "delta": {
                            "tool_calls": [
                                {"index": 0, "function": {"name": "ls", "arguments": '{"pa'}}
                            ]
                        }
                    }
                ]
            },
            acc,
        )
        final = parse_stream_chunk(
            {
                "choices": [
                    {
                        "delta": {"tool_calls": [{"index": 0, "function": {"arguments": 'th":"."}'}}]},
                        "finish_reason": "tool_calls",
                    }
                ]
            },
            acc,
        )
        assert first is None
        assert second is None
        calls = final.function_calls
        assert len(calls) == 1
        assert calls[0].id == "c1"
        assert calls[0].name == "ls"
        assert calls[0].args == {"path": "."}
        assert len(acc) == 0

    def test_malformed_arguments_become_empty(self):
        """2. Unparseable argument text yields an empty args object."""
        acc = ToolCallAccumulator()
        acc.add([{"index": 0, "id": "c", "function": {"name": "f", "arguments": "{oops"}}])
        (part,) = acc.flush()
        assert part.function_call.args == {}

    def test_nameless_call_not_emitted(self):
        """3. Fragments that never received a name are discarded."""
        acc = ToolCallAccumulator()
        acc.add([{"index": 0, "id": "c", "function": {"arguments": "{}"}}])
        assert acc.flush() == []

    def test_usage_only_chunk(self):
        """4. A trailing usage chunk without choices is surfaced."""
        chunk = parse_stream_chunk(
            {"choices": [], "usage": {"prompt_tokens": 5, "completion_tokens": 2, "total_tokens": 7}},
            ToolCallAccumulator(),
        )
        assert chunk.usage.total_tokens == 7
        assert chunk.parts == []

    def test_reasoning_is_thought(self):
        """5. reasoning_content arrives as a thought part."""
        chunk = parse_stream_chunk(
            {"choices": [{"delta": {"reasoning_content": "hmm", "content": "Hi"}}]},
            ToolCallAccumulator(),
        )
        assert chunk.parts[0].thought is True
        assert chunk.text == "Hi"

    def test_total_only_usage_split(self):
        """6. A total without a breakdown splits 70/30 and is marked estimated."""
        usage = usage_from_openai({"total_tokens": 100})
        assert (usage.prompt_tokens, usage.completion_tokens) == (70, 30)
        assert usage.estimated

    def test_cached_tokens(self):
        usage = usage_from_openai(
            {"prompt_tokens": 10, "completion_tokens": 1, "prompt_tokens_details": {"cached_tokens": 4}}
        )
        assert usage.cached_tokens == 4
        assert usage.total_tokens == 11

    def test_parse_completion(self):
        response = parse_completion(
            {
                "model": "gpt-x",
                "choices": [
                    {
                        "message": {
                            "content": "done",
                            "tool_calls": [
                                {"id": "t1", "function": {"name": "f", "arguments": '{"a": 1}'}}
                            ],
                        },
                        "finish_reason": "tool_calls",
                    }
                ],
            }
        )
        assert response.text == "done"
        assert response.function_calls[0].args == {"a": 1}
        assert response.model_version == "gpt-x"


# ---------------------------------------------------------------------------
# TestSampling
# ---------------------------------------------------------------------------


class TestSampling:
    def _backend(self, **settings):
        return _make_backend(lambda request: httpx.Response(200), **settings)

    def test_defaults(self):
        params = self._backend().sampling_parameters(GenerationRequest(model="m"))
        assert params == {"temperature": 0.0, "top_p": 1.0}

    def test_request_over_default(self):
        request = GenerationRequest(model="m", sampling=SamplingParams(temperature=0.5, max_tokens=64))
        params = self._backend().sampling_parameters(request)
        assert params["temperature"] == 0.5
        assert params["max_tokens"] == 64

    def test_configured_over_request(self):
        request = GenerationRequest(model="m", sampling=SamplingParams(temperature=0.5))
        params = self._backend(temperature=0.9).sampling_parameters(request)
        assert params["temperature"] == 0.9

    def test_payload_stream_options_and_tools(self):
        request = GenerationRequest(
            model="m",
            new_message=Message.user("hi"),
            tools=[ToolDeclaration(name="ls", description="list")],
            response_schema={"type": "object"},
        )
        payload = self._backend().build_payload(request, stream=True)
        assert payload["stream"] is True
        assert payload["stream_options"] == {"include_usage": True}
        assert payload["tools"][0]["function"]["name"] == "ls"
        assert payload["response_format"] == {"type": "json_object"}


# ---------------------------------------------------------------------------
# TestHttp
# ---------------------------------------------------------------------------


class TestHttp:
    @pytest.mark.asyncio
    async def test_stream_text_and_usage(self):
        """1. SSE chunks stream through and one telemetry record is emitted."""
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["body"] = json.loads(request.content)
            seen["path"] = request.url.path
            return httpx.Response(
                200,
                content=_sse(
                    {"choices": [{"delta": {"content": "Hel"}}]},
                    {"choices": [{"delta": {"content": "lo"}, "finish_reason": "stop"}]},
                    {"choices": [], "usage": {"prompt_tokens": 3, "completion_tokens": 2, "total_tokens": 5}},
                ),
            )

        metrics = SessionMetrics()
        backend = _make_backend(handler, telemetry=metrics)
        request = GenerationRequest(model="gpt-test", new_message=Message.user("hi"))
        chunks = [c async for c in backend.generate_stream(request)]

        assert "".join(c.text for c in chunks) == "Hello"
        assert seen["path"] == "/v1/chat/completions"
        assert seen["body"]["stream"] is True
        stats = metrics.for_model("gpt-test")
        assert stats.total_requests == 1
        assert stats.total_tokens == 5
        await backend.close()

    @pytest.mark.asyncio
    async def test_rate_limit_maps_to_typed_error(self):
        """2. A 429 response raises BackendRateLimitedError and records a failure."""

        def handler(request):
            return httpx.Response(429, json={"error": {"message": "slow down", "type": "rate_limit"}})

        metrics = SessionMetrics()
        backend = _make_backend(handler, telemetry=metrics)
        with pytest.raises(BackendRateLimitedError) as info:
            await backend.generate(GenerationRequest(model="gpt-test", new_message=Message.user("hi")))
        assert info.value.status == 429
        assert info.value.message == "slow down"
        stats = metrics.for_model("gpt-test")
        assert stats.total_errors == 1
        assert stats.prompt_tokens > 0

    @pytest.mark.asyncio
    async def test_timeout_is_annotated(self):
        """3. Transport timeouts become BackendTimeoutError with remediation text."""

        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        backend = _make_backend(handler, openai_timeout_ms=120000)
        with pytest.raises(BackendTimeoutError) as info:
            await backend.generate(GenerationRequest(model="gpt-test", new_message=Message.user("hi")))
        assert "timed out after 120s" in info.value.message
        assert "TERN_OPENAI_TIMEOUT_MS" in info.value.message

    @pytest.mark.asyncio
    async def test_stream_timeout_uses_streaming_tips(self):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        backend = _make_backend(handler)
        with pytest.raises(BackendTimeoutError) as info:
            async for _ in backend.generate_stream(GenerationRequest(model="m")):
                pass
        assert info.value.message.startswith("Streaming request timed out")

    @pytest.mark.asyncio
    async def test_embeddings_sorted_by_index(self):
        """4. Embeddings return in input order regardless of response order."""

        def handler(request):
            return httpx.Response(
                200,
                json={"data": [{"index": 1, "embedding": [1.0]}, {"index": 0, "embedding": [0.0]}]},
            )

        backend = _make_backend(handler)
        assert await backend.embed(["a", "b"]) == [[0.0], [1.0]]
        assert await backend.embed([]) == []

    @pytest.mark.asyncio
    async def test_count_tokens_estimates(self):
        backend = _make_backend(lambda request: httpx.Response(500))
        count = await backend.count_tokens([Message.user("x" * 400)], "m")
        assert count > 100
