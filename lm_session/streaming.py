"""
Transport normalization - wire formats in, canonical events out.

Three transports are supported, each parameterised by a FrameDialect that
knows the provider's JSON shapes:

- server-sent events (`data:` frames, optional `event:` names, `[DONE]`)
- newline-delimited JSON (one self-contained delta per line)
- a single JSON document holding the whole response

normalize_events() then enforces the stream contract over any event source,
whatever produced it.
"""

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, AsyncIterable, AsyncIterator, Iterable, Optional, Protocol, Union, runtime_checkable

import httpx

from lm_session.config import ERROR_BODY_LIMIT, STREAM_END_REASON
from lm_session.errors import MalformedContent, SessionError, TransportFailure
from lm_session.events import (
    CanonicalEvent,
    Failure,
    Finish,
    StructuredDelta,
    TextDelta,
    ToolCallDelta,
)
from lm_session.partial import PartialDecoder

logger = logging.getLogger(__name__)


@runtime_checkable
class FrameDialect(Protocol):
    """Maps one provider's JSON payloads to canonical events."""

    def parse(self, payload: Any, event: Optional[str] = None) -> list[CanonicalEvent]:
        """Translate one streamed frame (SSE data or NDJSON line)."""
        ...

    def parse_document(self, payload: Any) -> list[CanonicalEvent]:
        """Translate a complete non-streaming response document."""
        ...


@dataclass(frozen=True)
class SSEFrame:
    event: Optional[str]
    data: str


# ─────────────────────────────────────────────────────────────────────
# SERVER-SENT EVENTS
# ─────────────────────────────────────────────────────────────────────


async def iter_sse_frames(lines: AsyncIterable[str]) -> AsyncIterator[SSEFrame]:
    """
    Group SSE lines into frames.

    Multiple `data:` lines are joined with newlines, a blank line dispatches
    the frame, `:` lines are comments. Pending data at end of input is
    flushed as a final frame.
    """
    event: Optional[str] = None
    data: list[str] = []

    async for raw in lines:
        line = raw.rstrip("\r\n")
        if not line:
            if data:
                yield SSEFrame(event=event, data="\n".join(data))
            event = None
            data = []
            continue
        if line.startswith(":"):
            continue

        name, sep, value = line.partition(":")
        if sep and value.startswith(" "):
            value = value[1:]
        if name == "data":
            data.append(value)
        elif name == "event":
            event = value

    if data:
        yield SSEFrame(event=event, data="\n".join(data))


async def sse_events(lines: AsyncIterable[str], dialect: FrameDialect) -> AsyncIterator[CanonicalEvent]:
    """Canonical events from an SSE body. `[DONE]` ends the stream with Finish."""
    async for frame in iter_sse_frames(lines):
        if frame.data.strip() == "[DONE]":
            yield Finish(reason=STREAM_END_REASON)
            return
        try:
            payload = json.loads(frame.data)
        except json.JSONDecodeError:
            logger.warning(f"Skipping unparseable SSE frame: {frame.data[:200]!r}")
            continue
        for event in dialect.parse(payload, frame.event):
            yield event


# ─────────────────────────────────────────────────────────────────────
# NEWLINE-DELIMITED JSON
# ─────────────────────────────────────────────────────────────────────


async def ndjson_events(lines: AsyncIterable[str], dialect: FrameDialect) -> AsyncIterator[CanonicalEvent]:
    """Canonical events from an NDJSON body, one object per line."""
    async for line in lines:
        line = line.strip()
        if not line:
            continue
        try:
            payload = json.loads(line)
        except json.JSONDecodeError:
            logger.warning(f"Skipping unparseable NDJSON line: {line[:200]!r}")
            continue
        for event in dialect.parse(payload):
            yield event


# ─────────────────────────────────────────────────────────────────────
# SINGLE DOCUMENT
# ─────────────────────────────────────────────────────────────────────


def document_events(body: Union[str, bytes], dialect: FrameDialect) -> list[CanonicalEvent]:
    """Canonical events for a complete response document."""
    try:
        payload = json.loads(body)
    except json.JSONDecodeError as e:
        return [Failure(MalformedContent(f"response document is not JSON: {e.msg}", offset=e.pos))]
    return dialect.parse_document(payload)


async def replay(events: Iterable[CanonicalEvent]) -> AsyncIterator[CanonicalEvent]:
    """Async source over an already-materialized event list."""
    for event in events:
        yield event


def status_failure(status: int, body: Union[str, bytes]) -> Failure:
    """Failure for a non-2xx response. Pulls the provider's error message when the body is JSON."""
    text = body.decode("utf-8", errors="replace") if isinstance(body, bytes) else body
    try:
        data = json.loads(text)
        error = data.get("error") if isinstance(data, dict) else None
        if isinstance(error, dict):
            text = error.get("message", text)
        elif isinstance(error, str):
            text = error
    except json.JSONDecodeError:
        pass
    return Failure(TransportFailure("Provider returned an error status", status=status, body=text[:ERROR_BODY_LIMIT]))


# ─────────────────────────────────────────────────────────────────────
# STREAM CONTRACT
# ─────────────────────────────────────────────────────────────────────


def as_session_error(exc: Exception) -> SessionError:
    if isinstance(exc, SessionError):
        return exc
    if isinstance(exc, httpx.HTTPError):
        error = TransportFailure(f"{type(exc).__name__}: {exc}")
    else:
        error = TransportFailure(f"Provider raised {type(exc).__name__}: {exc}")
    error.__cause__ = exc
    return error


async def normalize_events(
    raw: AsyncIterable[CanonicalEvent],
    structured: bool = False,
) -> AsyncIterator[CanonicalEvent]:
    """
    Enforce the stream contract over a raw event source.

    - exactly one terminal event, always last; anything after it is dropped
    - exceptions from the source become Failure
    - a source that ends without a terminal becomes Failure(TransportFailure)
    - a second name for the same tool-call id becomes Failure(MalformedContent)
    - with structured=True, text deltas are decoded as JSON and re-emitted as
      StructuredDelta

    The source is closed when this generator finishes or is closed.
    """
    iterator = raw.__aiter__()
    decoder = PartialDecoder() if structured else None
    buffer = ""
    named: set[str] = set()

    try:
        while True:
            try:
                event = await iterator.__anext__()
            except StopAsyncIteration:
                yield Failure(TransportFailure("stream ended before completion"))
                return
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning(f"Event source raised: {type(e).__name__}: {e}")
                yield Failure(as_session_error(e))
                return

            if isinstance(event, Failure):
                yield event
                return

            if isinstance(event, Finish):
                if decoder is not None and buffer:
                    try:
                        result = decoder.feed(buffer, final=True)
                    except MalformedContent as e:
                        yield Failure(e)
                        return
                    if not result.is_complete:
                        yield Failure(MalformedContent(
                            "structured output ended before the value was complete",
                            offset=len(buffer),
                        ))
                        return
                    yield StructuredDelta(content=result.content, complete=True)
                yield event
                return

            if isinstance(event, TextDelta):
                if not event.text:
                    continue
                if decoder is None:
                    yield event
                    continue
                buffer += event.text
                try:
                    result = decoder.feed(buffer)
                except MalformedContent as e:
                    yield Failure(e)
                    return
                if result.content is not None:
                    yield StructuredDelta(content=result.content, complete=result.is_complete)
                continue

            if isinstance(event, ToolCallDelta) and event.name is not None:
                if event.id in named:
                    yield Failure(MalformedContent(f"tool call {event.id!r} named more than once"))
                    return
                named.add(event.id)

            yield event
    finally:
        aclose = getattr(iterator, "aclose", None)
        if aclose is not None:
            await aclose()
