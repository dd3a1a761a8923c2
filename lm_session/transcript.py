"""
Transcript - the append-only conversation log of a session.

Entries are immutable pydantic models tagged by `type`:
Instructions | Prompt | ToolCalls | ToolOutput | Response.
Segments inside entries are tagged the same way: text | structure | image.

A Transcript only ever grows. Entries are never edited or removed; the
orchestrator works on a copy and hands it back when a turn is committed.
"""

import base64
import uuid
from typing import Annotated, Any, Iterable, Iterator, Literal, Optional, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    TypeAdapter,
    field_serializer,
    field_validator,
    model_validator,
)

from lm_session.content import GeneratedContent
from lm_session.options import GenerationOptions
from lm_session.schema import GenerationSchema


def new_id() -> str:
    return uuid.uuid4().hex


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True)


# ─────────────────────────────────────────────────────────────────────
# SEGMENTS
# ─────────────────────────────────────────────────────────────────────


class TextSegment(_Frozen):
    type: Literal["text"] = "text"
    content: str


class StructuredSegment(_Frozen):
    """Structured content. `source` names what produced it (schema title, tool name)."""

    type: Literal["structure"] = "structure"
    source: str = ""
    content: GeneratedContent


class ImageSegment(_Frozen):
    """Inline image bytes with a MIME type, or a URL. Exactly one of the two."""

    type: Literal["image"] = "image"
    data: Optional[bytes] = None
    mime_type: Optional[str] = None
    url: Optional[str] = None

    @field_validator("data", mode="before")
    @classmethod
    def _decode_base64(cls, value: Any) -> Any:
        if isinstance(value, str):
            return base64.b64decode(value)
        return value

    @field_serializer("data", when_used="json")
    def _encode_base64(self, value: Optional[bytes]) -> Optional[str]:
        if value is None:
            return None
        return base64.b64encode(value).decode("ascii")

    @model_validator(mode="after")
    def _check_source(self) -> "ImageSegment":
        if (self.data is None) == (self.url is None):
            raise ValueError("ImageSegment needs exactly one of data or url")
        if self.data is not None and not self.mime_type:
            raise ValueError("ImageSegment with inline data needs a mime_type")
        return self

    @property
    def data_url(self) -> str:
        """`data:` URL for inline images, the plain URL otherwise."""
        if self.url is not None:
            return self.url
        return f"data:{self.mime_type};base64,{base64.b64encode(self.data).decode('ascii')}"


Segment = Annotated[Union[TextSegment, StructuredSegment, ImageSegment], Field(discriminator="type")]


def segments_text(segments: Iterable[Segment]) -> str:
    """Concatenated text of text segments, JSON of structured ones. Images are skipped."""
    parts = []
    for segment in segments:
        if isinstance(segment, TextSegment):
            parts.append(segment.content)
        elif isinstance(segment, StructuredSegment):
            parts.append(segment.content.json_string)
    return "".join(parts)


# ─────────────────────────────────────────────────────────────────────
# TOOLS
# ─────────────────────────────────────────────────────────────────────


class ToolDefinition(_Frozen):
    """What the model is told about a tool. Names are unique within a session."""

    name: str
    description: str = ""
    parameters: GenerationSchema = Field(default_factory=lambda: GenerationSchema.object())


class ToolCall(_Frozen):
    id: str
    tool_name: str
    arguments: GeneratedContent


# ─────────────────────────────────────────────────────────────────────
# ENTRIES
# ─────────────────────────────────────────────────────────────────────


class Instructions(_Frozen):
    type: Literal["instructions"] = "instructions"
    id: str = Field(default_factory=new_id)
    segments: tuple[Segment, ...] = ()
    tool_definitions: tuple[ToolDefinition, ...] = ()


class Prompt(_Frozen):
    type: Literal["prompt"] = "prompt"
    id: str = Field(default_factory=new_id)
    segments: tuple[Segment, ...] = ()
    options: GenerationOptions = Field(default_factory=GenerationOptions)
    response_format: Optional[GenerationSchema] = None


class ToolCalls(_Frozen):
    type: Literal["tool_calls"] = "tool_calls"
    id: str = Field(default_factory=new_id)
    calls: tuple[ToolCall, ...] = ()


class ToolOutput(_Frozen):
    """Result of one tool call. `call_id` correlates it with its ToolCall."""

    type: Literal["tool_output"] = "tool_output"
    id: str = Field(default_factory=new_id)
    call_id: str
    tool_name: str
    segments: tuple[Segment, ...] = ()
    is_error: bool = False


class Response(_Frozen):
    type: Literal["response"] = "response"
    id: str = Field(default_factory=new_id)
    segments: tuple[Segment, ...] = ()

    @property
    def text(self) -> str:
        return segments_text(self.segments)

    @property
    def content(self) -> Optional[GeneratedContent]:
        """Content of the last structured segment, if any."""
        for segment in reversed(self.segments):
            if isinstance(segment, StructuredSegment):
                return segment.content
        return None


Entry = Annotated[
    Union[Instructions, Prompt, ToolCalls, ToolOutput, Response],
    Field(discriminator="type"),
]

_ENTRY_ADAPTER: TypeAdapter = TypeAdapter(Entry)


# ─────────────────────────────────────────────────────────────────────
# TRANSCRIPT
# ─────────────────────────────────────────────────────────────────────


class Transcript:
    """
    Ordered, append-only sequence of entries with an id index.

    Entry ids must be unique; appending a duplicate raises ValueError.
    """

    def __init__(self, entries: Iterable[Entry] = ()):
        self._entries: list[Entry] = []
        self._by_id: dict[str, int] = {}
        self._outputs_by_call: dict[str, int] = {}
        for entry in entries:
            self.append(entry)

    def append(self, entry: Entry) -> Entry:
        if entry.id in self._by_id:
            raise ValueError(f"Duplicate transcript entry id: {entry.id}")
        self._by_id[entry.id] = len(self._entries)
        if isinstance(entry, ToolOutput):
            self._outputs_by_call[entry.call_id] = len(self._entries)
        self._entries.append(entry)
        return entry

    def extend(self, entries: Iterable[Entry]) -> None:
        for entry in entries:
            self.append(entry)

    def get(self, entry_id: str) -> Optional[Entry]:
        index = self._by_id.get(entry_id)
        return self._entries[index] if index is not None else None

    def tool_output_for(self, call_id: str) -> Optional[ToolOutput]:
        index = self._outputs_by_call.get(call_id)
        return self._entries[index] if index is not None else None

    @property
    def entries(self) -> tuple[Entry, ...]:
        return tuple(self._entries)

    @property
    def last(self) -> Optional[Entry]:
        return self._entries[-1] if self._entries else None

    def copy(self) -> "Transcript":
        return Transcript(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[Entry]:
        return iter(tuple(self._entries))

    def __getitem__(self, index):
        return self._entries[index]

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Transcript):
            return NotImplemented
        return self._entries == other._entries

    def __repr__(self) -> str:
        kinds = ", ".join(e.type for e in self._entries)
        return f"Transcript([{kinds}])"

    # ─────────────────────────────────────────────────────────────────
    # SERIALIZATION
    # ─────────────────────────────────────────────────────────────────

    def model_dump(self, mode: str = "json") -> list[dict]:
        return [entry.model_dump(mode=mode) for entry in self._entries]

    @classmethod
    def from_dicts(cls, items: Iterable[dict]) -> "Transcript":
        return cls(_ENTRY_ADAPTER.validate_python(item) for item in items)
