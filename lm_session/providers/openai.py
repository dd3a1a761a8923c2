"""
OpenAIChatProvider - OpenAI-compatible /chat/completions implementation of Provider.

Works against OpenAI and any server exposing the same API (LM Studio,
vLLM, Together, ...). Streams over SSE; invoke reads one JSON document.

Custom options: `options.with_custom("openai", {...})` is merged into the
request body as-is, for parameters this provider does not model
(presence_penalty, logit_bias, ...).
"""

import logging
import uuid
from typing import Any, Optional

from lm_session.config import DEFAULT_OPENAI_BASE_URL, get_openai_api_key, get_openai_base_url
from lm_session.errors import MalformedContent, TransportFailure
from lm_session.events import CanonicalEvent, Failure, Finish, TextDelta, ToolCallDelta
from lm_session.options import GenerationOptions, SamplingMode
from lm_session.providers.http import HTTPProvider
from lm_session.providers.schema import Availability, ProviderRequest
from lm_session.schema import GenerationSchema
from lm_session.transcript import (
    Entry,
    ImageSegment,
    Instructions,
    Prompt,
    Response,
    Segment,
    StructuredSegment,
    TextSegment,
    ToolCalls,
    ToolDefinition,
    ToolOutput,
    segments_text,
)

logger = logging.getLogger(__name__)

PROVIDER_ID = "openai"


def _error_message(payload: dict) -> str:
    error = payload.get("error")
    if isinstance(error, dict):
        return error.get("message", str(error))
    return str(error)


def _new_call_id() -> str:
    return f"call_{uuid.uuid4().hex[:24]}"


class OpenAIChatDialect:
    """
    Chat-completions chunks and documents to canonical events.

    Streamed tool calls are keyed by `index`; only the first fragment of a
    call carries its id. The dialect remembers index -> id for the stream.
    A fragment whose id differs from the remembered one starts a new call,
    for servers that omit `index` or reuse it across parallel calls.
    """

    def __init__(self):
        self._ids: dict[int, str] = {}
        self._named: set[str] = set()

    def parse(self, payload: Any, event: Optional[str] = None) -> list[CanonicalEvent]:
        if not isinstance(payload, dict):
            return []
        if "error" in payload:
            return [Failure(TransportFailure(f"OpenAI stream error: {_error_message(payload)}"))]

        events: list[CanonicalEvent] = []
        choices = payload.get("choices") or []
        if not choices:
            return events

        choice = choices[0]
        delta = choice.get("delta") or {}

        content = delta.get("content")
        if content:
            events.append(TextDelta(text=content))

        for tc in delta.get("tool_calls") or []:
            idx = tc.get("index", 0)
            func = tc.get("function") or {}
            fragment_id = tc.get("id")
            call_id = self._ids.get(idx)
            if call_id is None or (fragment_id and fragment_id != call_id):
                call_id = fragment_id or _new_call_id()
                self._ids[idx] = call_id

            name = None
            if func.get("name") and call_id not in self._named:
                name = func["name"]
                self._named.add(call_id)
            events.append(ToolCallDelta(id=call_id, name=name, arguments=func.get("arguments") or ""))

        finish_reason = choice.get("finish_reason")
        if finish_reason:
            events.append(Finish(reason=finish_reason))
        return events

    def parse_document(self, payload: Any) -> list[CanonicalEvent]:
        if not isinstance(payload, dict):
            return [Failure(MalformedContent("response document is not an object"))]
        if "error" in payload:
            return [Failure(TransportFailure(f"OpenAI error: {_error_message(payload)}"))]

        choices = payload.get("choices") or []
        if not choices:
            return [Failure(MalformedContent("response has no choices"))]

        choice = choices[0]
        message = choice.get("message") or {}
        events: list[CanonicalEvent] = []

        content = message.get("content")
        if content:
            events.append(TextDelta(text=content))

        for tc in message.get("tool_calls") or []:
            func = tc.get("function") or {}
            events.append(ToolCallDelta(
                id=tc.get("id") or _new_call_id(),
                name=func.get("name", ""),
                arguments=func.get("arguments") or "",
            ))

        events.append(Finish(reason=choice.get("finish_reason") or "stop"))
        return events


# ─────────────────────────────────────────────────────────────────────
# REQUEST CONVERSION
# ─────────────────────────────────────────────────────────────────────


def _content_parts(segments: tuple[Segment, ...]) -> Any:
    """Plain string when text-only, content-part list when images are present."""
    if not any(isinstance(s, ImageSegment) for s in segments):
        return segments_text(segments)

    parts: list[dict] = []
    for segment in segments:
        if isinstance(segment, TextSegment):
            parts.append({"type": "text", "text": segment.content})
        elif isinstance(segment, StructuredSegment):
            parts.append({"type": "text", "text": segment.content.json_string})
        elif isinstance(segment, ImageSegment):
            parts.append({"type": "image_url", "image_url": {"url": segment.data_url}})
    return parts


def to_messages(entries: tuple[Entry, ...]) -> list[dict]:
    """Convert transcript entries to OpenAI chat messages."""
    messages: list[dict] = []
    for entry in entries:
        if isinstance(entry, Instructions):
            text = segments_text(entry.segments)
            if text:
                messages.append({"role": "system", "content": text})
        elif isinstance(entry, Prompt):
            messages.append({"role": "user", "content": _content_parts(entry.segments)})
        elif isinstance(entry, ToolCalls):
            messages.append({
                "role": "assistant",
                "content": None,
                "tool_calls": [
                    {
                        "id": call.id,
                        "type": "function",
                        "function": {"name": call.tool_name, "arguments": call.arguments.json_string},
                    }
                    for call in entry.calls
                ],
            })
        elif isinstance(entry, ToolOutput):
            messages.append({
                "role": "tool",
                "tool_call_id": entry.call_id,
                "content": segments_text(entry.segments),
            })
        elif isinstance(entry, Response):
            messages.append({"role": "assistant", "content": segments_text(entry.segments)})
    return messages


def to_tools(tools: tuple[ToolDefinition, ...]) -> list[dict]:
    return [
        {
            "type": "function",
            "function": {
                "name": tool.name,
                "description": tool.description,
                "parameters": tool.parameters.to_json_schema(),
            },
        }
        for tool in tools
    ]


def to_response_format(schema: GenerationSchema) -> dict:
    return {
        "type": "json_schema",
        "json_schema": {
            "name": schema.title or "response",
            "schema": schema.to_json_schema(),
            "strict": True,
        },
    }


def apply_options(payload: dict, options: GenerationOptions) -> None:
    """Map portable options onto the payload, then merge the openai extension."""
    if options.temperature is not None:
        payload["temperature"] = options.temperature
    if options.max_tokens is not None:
        payload["max_tokens"] = options.max_tokens

    sampling = options.sampling
    if sampling is not None:
        if sampling.mode == SamplingMode.GREEDY:
            payload["temperature"] = 0.0
        elif sampling.mode == SamplingMode.TOP_P:
            payload["top_p"] = sampling.value
        elif sampling.mode == SamplingMode.TOP_K:
            logger.debug("top_k sampling is not supported by chat completions; ignoring k")
        if sampling.seed is not None:
            payload["seed"] = int(sampling.seed)

    custom = options.custom(PROVIDER_ID)
    if isinstance(custom, dict):
        payload.update(custom)


class OpenAIChatProvider(HTTPProvider):
    """OpenAI chat-completions implementation of the Provider protocol."""

    provider_id = PROVIDER_ID
    stream_format = "sse"
    path = "/chat/completions"

    def __init__(
        self,
        model: str,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
    ):
        super().__init__(
            base_url=base_url or get_openai_base_url(),
            model=model,
            api_key=api_key or get_openai_api_key(),
            timeout_seconds=timeout_seconds,
        )

    @property
    def availability(self) -> Availability:
        # Local OpenAI-compatible servers accept anonymous requests
        if self.base_url == DEFAULT_OPENAI_BASE_URL and not self._api_key:
            return Availability.unavailable("OPENAI_API_KEY is not set")
        return Availability.ready()

    def new_dialect(self) -> OpenAIChatDialect:
        return OpenAIChatDialect()

    def build_payload(self, request: ProviderRequest, stream: bool) -> dict:
        payload: dict[str, Any] = {
            "model": self.model,
            "messages": to_messages(request.entries),
            "stream": stream,
        }
        if request.tools:
            payload["tools"] = to_tools(request.tools)
        if request.response_format is not None:
            payload["response_format"] = to_response_format(request.response_format)
        apply_options(payload, request.options)
        return payload
