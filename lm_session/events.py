"""
Canonical events - the backend-agnostic unit of streamed model output.

Every provider, whatever its wire format, is reduced to a sequence of these.
A well-formed sequence ends with exactly one terminal event (Finish or
Failure); see streaming.normalize_events() for the enforcement.
"""

from dataclasses import dataclass, field
from typing import Literal, Optional, Union

from lm_session.content import GeneratedContent
from lm_session.errors import MalformedContent, SessionError
from lm_session.partial import DecodeResult, PartialDecoder


@dataclass(frozen=True)
class TextDelta:
    text: str
    type: Literal["text_delta"] = "text_delta"


@dataclass(frozen=True)
class StructuredDelta:
    """Latest best-effort decode of the structured payload (replaces, not appends)."""

    content: GeneratedContent
    complete: bool = False
    type: Literal["structured_delta"] = "structured_delta"


@dataclass(frozen=True)
class ToolCallDelta:
    """
    One fragment of a tool call. The first delta for an id carries the name;
    later deltas only append argument text.
    """

    id: str
    name: Optional[str] = None
    arguments: str = ""
    type: Literal["tool_call_delta"] = "tool_call_delta"


@dataclass(frozen=True)
class Finish:
    """Normal end of stream. No preceding content events means zero content."""

    reason: str = "stop"
    type: Literal["finish"] = "finish"


@dataclass(frozen=True)
class Failure:
    """Stream failed. Carries a SessionError subclass."""

    error: SessionError
    type: Literal["failure"] = "failure"


CanonicalEvent = Union[TextDelta, StructuredDelta, ToolCallDelta, Finish, Failure]


# ─────────────────────────────────────────────────────────────────────
# TOOL CALL ACCUMULATION
# ─────────────────────────────────────────────────────────────────────


@dataclass
class ToolCallState:
    id: str
    name: Optional[str] = None
    arguments: str = ""
    _decoder: PartialDecoder = field(default_factory=PartialDecoder, repr=False, compare=False)

    def decode(self, final: bool = False) -> DecodeResult:
        """Partial decode of the arguments received so far."""
        return self._decoder.feed(self.arguments, final=final)


class ToolCallAccumulator:
    """
    Accumulate streaming tool-call fragments by call id.

    Calls are kept in first-seen order, which is their declaration order.
    """

    def __init__(self):
        self._calls: dict[str, ToolCallState] = {}

    def apply(self, event: ToolCallDelta) -> ToolCallState:
        state = self._calls.get(event.id)
        if state is None:
            state = ToolCallState(id=event.id)
            self._calls[event.id] = state

        if event.name is not None:
            if state.name is not None:
                raise MalformedContent(f"tool call {event.id!r} named more than once")
            state.name = event.name
        if event.arguments:
            state.arguments += event.arguments
        return state

    def calls(self) -> list[ToolCallState]:
        return list(self._calls.values())

    def __len__(self) -> int:
        return len(self._calls)
