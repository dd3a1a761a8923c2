"""
ResponseAccumulator - folds canonical events into a growing Response.

Text deltas extend the trailing text segment (or start one). Structured
deltas replace the structured segment's content with the latest decode.
Tool-call fragments are gathered separately and only become ToolCall values
when the stream finishes.

Streaming and non-streaming paths both end here, so a provider that only
returns whole documents yields exactly the Response a streaming one would.
"""

import logging
from typing import AsyncIterable, Iterable, Optional

from lm_session.config import STREAM_END_REASON
from lm_session.content import GeneratedContent
from lm_session.errors import InvalidToolArguments, MalformedContent
from lm_session.events import (
    CanonicalEvent,
    Failure,
    Finish,
    StructuredDelta,
    TextDelta,
    ToolCallAccumulator,
    ToolCallDelta,
)
from lm_session.providers.schema import ProviderResponse
from lm_session.schema import GenerationSchema
from lm_session.transcript import Response, Segment, StructuredSegment, TextSegment, ToolCall, new_id

logger = logging.getLogger(__name__)


class ResponseAccumulator:
    """
    Mutable fold state for one provider call.

    apply() returns True when the visible snapshot changed (text or
    structured content), so callers only publish meaningful snapshots.
    """

    def __init__(self, response_id: Optional[str] = None, source: str = ""):
        self.response_id = response_id or new_id()
        self.source = source
        # Each part is ["text", list[str]] or ["structure", GeneratedContent].
        self._parts: list[list] = []
        self._structured_index: Optional[int] = None
        self._tool_calls = ToolCallAccumulator()
        self._finish: Optional[Finish] = None

    def apply(self, event: CanonicalEvent) -> bool:
        """
        Fold one event.

        Raises:
            The carried error for a Failure event.
            MalformedContent if a tool-call id is named twice.
        """
        if isinstance(event, TextDelta):
            if not event.text:
                return False
            if self._parts and self._parts[-1][0] == "text":
                self._parts[-1][1].append(event.text)
            else:
                self._parts.append(["text", [event.text]])
            return True

        if isinstance(event, StructuredDelta):
            if self._structured_index is None:
                self._structured_index = len(self._parts)
                self._parts.append(["structure", event.content])
            else:
                self._parts[self._structured_index][1] = event.content
            return True

        if isinstance(event, ToolCallDelta):
            self._tool_calls.apply(event)
            return False

        if isinstance(event, Finish):
            self._finish = event
            return False

        if isinstance(event, Failure):
            raise event.error

        raise TypeError(f"Unknown event type: {type(event).__name__}")

    def snapshot(self) -> Response:
        return Response(id=self.response_id, segments=self.segments)

    @property
    def segments(self) -> tuple[Segment, ...]:
        out: list[Segment] = []
        for kind, payload in self._parts:
            if kind == "text":
                out.append(TextSegment(content="".join(payload)))
            else:
                out.append(StructuredSegment(source=self.source, content=payload))
        return tuple(out)

    @property
    def is_finished(self) -> bool:
        return self._finish is not None

    def tool_calls(self) -> tuple[ToolCall, ...]:
        """
        Finalize accumulated tool calls, in declaration order.

        Empty arguments decode as an empty object.

        Raises:
            MalformedContent: a call never received a name, or its arguments are not JSON
            InvalidToolArguments: arguments stopped before the JSON value was closed
        """
        calls = []
        for state in self._tool_calls.calls():
            if state.name is None:
                raise MalformedContent(f"tool call {state.id!r} has no name")
            if not state.arguments.strip():
                arguments = GeneratedContent.object()
            else:
                result = state.decode(final=True)
                if not result.is_complete or result.content is None:
                    raise InvalidToolArguments(
                        state.name, "", "arguments JSON is incomplete", call_id=state.id
                    )
                arguments = result.content
            calls.append(ToolCall(id=state.id, tool_name=state.name, arguments=arguments))
        return tuple(calls)

    def finish(self) -> ProviderResponse:
        """The folded result. Call after the terminal Finish event."""
        reason = self._finish.reason if self._finish else STREAM_END_REASON
        return ProviderResponse(
            segments=self.segments,
            tool_calls=self.tool_calls(),
            finish_reason=reason,
        )


def structured_source(schema: Optional[GenerationSchema]) -> str:
    """Label for structured segments produced under a response schema."""
    if schema is None:
        return ""
    return schema.title or ""


def fold_events(events: Iterable[CanonicalEvent], source: str = "") -> ProviderResponse:
    """Fold a complete, normalized event list into a ProviderResponse."""
    accumulator = ResponseAccumulator(source=source)
    for event in events:
        accumulator.apply(event)
    return accumulator.finish()


async def fold_stream(events: AsyncIterable[CanonicalEvent], source: str = "") -> ProviderResponse:
    """Async counterpart of fold_events()."""
    accumulator = ResponseAccumulator(source=source)
    async for event in events:
        accumulator.apply(event)
    return accumulator.finish()
