"""Shared test fixtures for lm-session tests."""

import asyncio
import json
from typing import Iterable, Optional

import pytest

from lm_session.accumulate import fold_stream, structured_source
from lm_session.content import GeneratedContent
from lm_session.events import CanonicalEvent, Finish, TextDelta, ToolCallDelta
from lm_session.providers.schema import Availability, ProviderRequest, ProviderResponse
from lm_session.schema import GenerationSchema
from lm_session.streaming import normalize_events, replay
from lm_session.transcript import ToolDefinition


# ─────────────────────────────────────────────────────────────────────
# MOCK DATA
# ─────────────────────────────────────────────────────────────────────

MOCK_MODEL = "llama-3.2-3b-instruct"
OPENAI_BASE_URL = "http://localhost:1234/v1"
OPENAI_CHAT_URL = f"{OPENAI_BASE_URL}/chat/completions"
OLLAMA_BASE_URL = "http://localhost:11434"
OLLAMA_CHAT_URL = f"{OLLAMA_BASE_URL}/api/chat"

MOCK_COMPLETION_RESPONSE = {
    "id": "chatcmpl-123",
    "object": "chat.completion",
    "created": 1699000000,
    "model": MOCK_MODEL,
    "choices": [
        {
            "index": 0,
            "message": {
                "role": "assistant",
                "content": "The capital of France is Paris."
            },
            "finish_reason": "stop"
        }
    ],
    "usage": {
        "prompt_tokens": 10,
        "completion_tokens": 8,
        "total_tokens": 18
    }
}

MOCK_STREAMING_CHUNKS = [
    'data: {"id":"chatcmpl-123","object":"chat.completion.chunk","created":1699000000,"model":"llama-3.2-3b-instruct","choices":[{"index":0,"delta":{"role":"assistant","content":""},"finish_reason":null}]}',
    'data: {"id":"chatcmpl-123","object":"chat.completion.chunk","created":1699000000,"model":"llama-3.2-3b-instruct","choices":[{"index":0,"delta":{"content":"The"},"finish_reason":null}]}',
    'data: {"id":"chatcmpl-123","object":"chat.completion.chunk","created":1699000000,"model":"llama-3.2-3b-instruct","choices":[{"index":0,"delta":{"content":" capital"},"finish_reason":null}]}',
    'data: {"id":"chatcmpl-123","object":"chat.completion.chunk","created":1699000000,"model":"llama-3.2-3b-instruct","choices":[{"index":0,"delta":{"content":" of"},"finish_reason":null}]}',
    'data: {"id":"chatcmpl-123","object":"chat.completion.chunk","created":1699000000,"model":"llama-3.2-3b-instruct","choices":[{"index":0,"delta":{"content":" France"},"finish_reason":null}]}',
    'data: {"id":"chatcmpl-123","object":"chat.completion.chunk","created":1699000000,"model":"llama-3.2-3b-instruct","choices":[{"index":0,"delta":{"content":" is"},"finish_reason":null}]}',
    'data: {"id":"chatcmpl-123","object":"chat.completion.chunk","created":1699000000,"model":"llama-3.2-3b-instruct","choices":[{"index":0,"delta":{"content":" Paris."},"finish_reason":null}]}',
    'data: {"id":"chatcmpl-123","object":"chat.completion.chunk","created":1699000000,"model":"llama-3.2-3b-instruct","choices":[{"index":0,"delta":{},"finish_reason":"stop"}]}',
    'data: [DONE]',
]

# Tool-call arguments arrive split mid-key and mid-value.
MOCK_TOOL_CALL_CHUNKS = [
    'data: {"id":"chatcmpl-456","choices":[{"index":0,"delta":{"role":"assistant","tool_calls":[{"index":0,"id":"call_weather_1","type":"function","function":{"name":"get_weather","arguments":""}}]},"finish_reason":null}]}',
    'data: {"id":"chatcmpl-456","choices":[{"index":0,"delta":{"tool_calls":[{"index":0,"function":{"arguments":"{\\"ci"}}]},"finish_reason":null}]}',
    'data: {"id":"chatcmpl-456","choices":[{"index":0,"delta":{"tool_calls":[{"index":0,"function":{"arguments":"ty\\":\\"P"}}]},"finish_reason":null}]}',
    'data: {"id":"chatcmpl-456","choices":[{"index":0,"delta":{"tool_calls":[{"index":0,"function":{"arguments":"aris\\"}"}}]},"finish_reason":null}]}',
    'data: {"id":"chatcmpl-456","choices":[{"index":0,"delta":{},"finish_reason":"tool_calls"}]}',
    'data: [DONE]',
]

MOCK_TOOL_CALL_RESPONSE = {
    "id": "chatcmpl-456",
    "object": "chat.completion",
    "model": MOCK_MODEL,
    "choices": [
        {
            "index": 0,
            "message": {
                "role": "assistant",
                "content": None,
                "tool_calls": [
                    {
                        "id": "call_weather_1",
                        "type": "function",
                        "function": {"name": "get_weather", "arguments": '{"city":"Paris"}'},
                    }
                ],
            },
            "finish_reason": "tool_calls",
        }
    ],
}

MOCK_OLLAMA_CHUNKS = [
    {"model": MOCK_MODEL, "created_at": "2024-01-01T00:00:00Z", "message": {"role": "assistant", "content": "The capital"}, "done": False},
    {"model": MOCK_MODEL, "created_at": "2024-01-01T00:00:00Z", "message": {"role": "assistant", "content": " of France"}, "done": False},
    {"model": MOCK_MODEL, "created_at": "2024-01-01T00:00:00Z", "message": {"role": "assistant", "content": " is Paris."}, "done": False},
    {"model": MOCK_MODEL, "created_at": "2024-01-01T00:00:00Z", "message": {"role": "assistant", "content": ""}, "done": True, "done_reason": "stop"},
]

MOCK_OLLAMA_RESPONSE = {
    "model": MOCK_MODEL,
    "created_at": "2024-01-01T00:00:00Z",
    "message": {"role": "assistant", "content": "The capital of France is Paris."},
    "done": True,
    "done_reason": "stop",
}


def sse_body(chunks: Iterable[str]) -> str:
    """Join SSE data lines into a response body (blank line after each frame)."""
    return "".join(f"{chunk}\n\n" for chunk in chunks)


def ndjson_body(chunks: Iterable[dict]) -> str:
    return "".join(json.dumps(chunk) + "\n" for chunk in chunks)


# ─────────────────────────────────────────────────────────────────────
# SCRIPTED PROVIDER
# ─────────────────────────────────────────────────────────────────────


def text_round(*chunks: str) -> list[CanonicalEvent]:
    """Events for a plain text answer."""
    return [TextDelta(text=c) for c in chunks] + [Finish(reason="stop")]


def tool_round(*calls: tuple[str, str, str]) -> list[CanonicalEvent]:
    """Events for a round of (call_id, tool_name, arguments_json) tool calls."""
    events: list[CanonicalEvent] = [
        ToolCallDelta(id=call_id, name=name, arguments=arguments) for call_id, name, arguments in calls
    ]
    events.append(Finish(reason="tool_calls"))
    return events


class ScriptedProvider:
    """
    Provider that replays one scripted event list per call.

    The last round repeats once the script is exhausted. Every request is
    recorded; `closed` counts streams that were closed (normally or not).
    """

    provider_id = "scripted"

    def __init__(
        self,
        rounds: list[list[CanonicalEvent]],
        supports_streaming: bool = True,
        supports_invoke: bool = True,
        delay: float = 0.0,
        availability: Optional[Availability] = None,
    ):
        self.rounds = rounds
        self.availability = availability or Availability.ready()
        self.prewarmed: list[ProviderRequest] = []
        self.supports_streaming = supports_streaming
        self.supports_invoke = supports_invoke
        self.delay = delay
        self.requests: list[ProviderRequest] = []
        self.closed = 0

    def _next_round(self, request: ProviderRequest) -> list[CanonicalEvent]:
        self.requests.append(request)
        index = min(len(self.requests), len(self.rounds)) - 1
        return list(self.rounds[index])

    async def prewarm(self, request: ProviderRequest) -> None:
        self.prewarmed.append(request)

    async def stream(self, request: ProviderRequest):
        events = self._next_round(request)
        try:
            for event in events:
                await asyncio.sleep(self.delay)
                yield event
        finally:
            self.closed += 1

    async def invoke(self, request: ProviderRequest) -> ProviderResponse:
        events = self._next_round(request)
        if self.delay:
            await asyncio.sleep(self.delay)
        return await fold_stream(
            normalize_events(replay(events), structured=request.response_format is not None),
            source=structured_source(request.response_format),
        )


# ─────────────────────────────────────────────────────────────────────
# FIXTURES - Tools
# ─────────────────────────────────────────────────────────────────────

@pytest.fixture
def weather_definition():
    """get_weather(city: string) tool definition."""
    return ToolDefinition(
        name="get_weather",
        description="Current weather for a city",
        parameters=GenerationSchema.object([("city", GenerationSchema.string())]),
    )


@pytest.fixture
def weather_executor():
    """Async executor that records the cities it was asked about."""
    calls: list[str] = []

    async def get_weather(arguments: GeneratedContent) -> str:
        city = arguments["city"].value
        calls.append(city)
        return f"Sunny in {city}"

    get_weather.calls = calls
    return get_weather


@pytest.fixture
def weather_tool(weather_definition, weather_executor):
    return (weather_definition, weather_executor)


# ─────────────────────────────────────────────────────────────────────
# FIXTURES - Environment
# ─────────────────────────────────────────────────────────────────────

@pytest.fixture(autouse=True)
def fast_retries(monkeypatch):
    """No backoff sleeps between connection retries in tests."""
    monkeypatch.setenv("LM_SESSION_RETRY_MIN_WAIT", "0")
    monkeypatch.setenv("LM_SESSION_RETRY_MAX_WAIT", "0")


@pytest.fixture
def mock_completion_response():
    """Return mock /v1/chat/completions response."""
    return json.loads(json.dumps(MOCK_COMPLETION_RESPONSE))


@pytest.fixture
def mock_streaming_chunks():
    """Return mock streaming response chunks."""
    return MOCK_STREAMING_CHUNKS.copy()
