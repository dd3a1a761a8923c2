"""
OllamaChatProvider - Ollama /api/chat implementation of Provider.

Streams newline-delimited JSON; invoke reads one JSON document with
`"stream": false`. Both have the same shape: a `message` plus a `done` flag.

Custom options: `options.with_custom("ollama", {"num_ctx": 8192, ...})` is
merged into the request's `options` object, overriding the portable
mappings (temperature -> temperature, max_tokens -> num_predict, ...).
"""

import json
import logging
import uuid
from typing import Any, Optional

import httpx

from lm_session.config import get_ollama_base_url
from lm_session.errors import MalformedContent, TransportFailure
from lm_session.events import CanonicalEvent, Failure, Finish, TextDelta, ToolCallDelta
from lm_session.options import GenerationOptions, SamplingMode
from lm_session.providers.http import HTTPProvider, send_with_retry
from lm_session.providers.schema import ProviderRequest
from lm_session.streaming import as_session_error, status_failure
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

PROVIDER_ID = "ollama"


class OllamaChatDialect:
    """
    /api/chat chunks and documents to canonical events.

    Ollama sends each tool call whole (arguments as an object) and often
    without an id, so ids are generated here.
    """

    def parse(self, payload: Any, event: Optional[str] = None) -> list[CanonicalEvent]:
        if not isinstance(payload, dict):
            return []
        if "error" in payload:
            return [Failure(TransportFailure(f"Ollama error: {payload['error']}"))]

        events: list[CanonicalEvent] = []
        message = payload.get("message") or {}

        content = message.get("content")
        if content:
            events.append(TextDelta(text=content))

        for tc in message.get("tool_calls") or []:
            func = tc.get("function") or {}
            arguments = func.get("arguments")
            if not isinstance(arguments, str):
                arguments = json.dumps(arguments if arguments is not None else {}, ensure_ascii=False)
            events.append(ToolCallDelta(
                id=tc.get("id") or f"call_{uuid.uuid4().hex[:24]}",
                name=func.get("name", ""),
                arguments=arguments,
            ))

        if payload.get("done"):
            events.append(Finish(reason=payload.get("done_reason") or "stop"))
        return events

    def parse_document(self, payload: Any) -> list[CanonicalEvent]:
        if not isinstance(payload, dict):
            return [Failure(MalformedContent("response document is not an object"))]
        if "error" not in payload and "message" not in payload:
            return [Failure(MalformedContent("response has no message"))]
        events = self.parse(payload)
        if not events or not isinstance(events[-1], (Finish, Failure)):
            events.append(Finish(reason=payload.get("done_reason") or "stop"))
        return events


# ─────────────────────────────────────────────────────────────────────
# REQUEST CONVERSION
# ─────────────────────────────────────────────────────────────────────


def _text_and_images(segments: tuple[Segment, ...]) -> tuple[str, list[str]]:
    """Ollama takes base64 images beside the text; URL images are passed as text."""
    text_parts: list[str] = []
    images: list[str] = []
    for segment in segments:
        if isinstance(segment, TextSegment):
            text_parts.append(segment.content)
        elif isinstance(segment, StructuredSegment):
            text_parts.append(segment.content.json_string)
        elif isinstance(segment, ImageSegment):
            if segment.data is not None:
                images.append(segment.data_url.split(",", 1)[1])
            else:
                text_parts.append(segment.url)
    return "\n".join(text_parts), images


def to_messages(entries: tuple[Entry, ...]) -> list[dict]:
    """Convert transcript entries to Ollama chat messages."""
    messages: list[dict] = []
    for entry in entries:
        if isinstance(entry, Instructions):
            text = segments_text(entry.segments)
            if text:
                messages.append({"role": "system", "content": text})
        elif isinstance(entry, Prompt):
            text, images = _text_and_images(entry.segments)
            message: dict[str, Any] = {"role": "user", "content": text}
            if images:
                message["images"] = images
            messages.append(message)
        elif isinstance(entry, ToolCalls):
            messages.append({
                "role": "assistant",
                "content": "",
                "tool_calls": [
                    {"function": {"name": call.tool_name, "arguments": call.arguments.to_value()}}
                    for call in entry.calls
                ],
            })
        elif isinstance(entry, ToolOutput):
            messages.append({
                "role": "tool",
                "tool_name": entry.tool_name,
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


def to_ollama_options(options: GenerationOptions) -> Optional[dict]:
    """Portable options in Ollama's vocabulary, then the ollama extension on top."""
    out: dict[str, Any] = {}
    if options.temperature is not None:
        out["temperature"] = options.temperature
    if options.max_tokens is not None:
        out["num_predict"] = options.max_tokens

    sampling = options.sampling
    if sampling is not None:
        if sampling.mode == SamplingMode.GREEDY:
            out["temperature"] = 0.0
        elif sampling.mode == SamplingMode.TOP_K:
            out["top_k"] = int(sampling.value)
        elif sampling.mode == SamplingMode.TOP_P:
            out["top_p"] = sampling.value
        if sampling.seed is not None:
            out["seed"] = int(sampling.seed)

    custom = options.custom(PROVIDER_ID)
    if isinstance(custom, dict):
        out.update(custom)
    return out or None


class OllamaChatProvider(HTTPProvider):
    """Ollama chat implementation of the Provider protocol."""

    provider_id = PROVIDER_ID
    stream_format = "ndjson"
    path = "/api/chat"

    def __init__(
        self,
        model: str,
        base_url: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
    ):
        super().__init__(
            base_url=base_url or get_ollama_base_url(),
            model=model,
            timeout_seconds=timeout_seconds,
        )

    async def prewarm(self, request: ProviderRequest) -> None:
        """
        Load the model into memory ahead of the first turn.

        Ollama treats a chat request with no messages as a load request.

        Raises:
            TransportFailure: the server could not be reached or refused the load
        """
        payload = {"model": self.model, "messages": [], "stream": False}
        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                response = await send_with_retry(client, "POST", self.url, json=payload, headers=self.headers())
                try:
                    body = await response.aread()
                finally:
                    await response.aclose()
        except httpx.HTTPError as e:
            logger.warning(f"Prewarming {self.model} failed: {type(e).__name__}: {e}")
            raise as_session_error(e) from e

        if response.status_code >= 400:
            logger.warning(f"Prewarming {self.model} returned HTTP {response.status_code}")
            raise status_failure(response.status_code, body).error
        logger.info(f"Loaded {self.model} on {self.base_url}")

    def new_dialect(self) -> OllamaChatDialect:
        return OllamaChatDialect()

    def build_payload(self, request: ProviderRequest, stream: bool) -> dict:
        payload: dict[str, Any] = {
            "model": self.model,
            "messages": to_messages(request.entries),
            "stream": stream,
        }
        if request.tools:
            payload["tools"] = to_tools(request.tools)
        if request.response_format is not None:
            payload["format"] = request.response_format.to_json_schema()
        options = to_ollama_options(request.options)
        if options:
            payload["options"] = options
        return payload
