from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from lm_session.config import STREAM_END_REASON
from lm_session.options import GenerationOptions
from lm_session.schema import GenerationSchema
from lm_session.transcript import (
    Entry,
    Instructions,
    Prompt,
    Segment,
    ToolCall,
    ToolDefinition,
    segments_text,
)


class ProviderRequest(BaseModel):
    """
    Standardized request handed to every provider.

    Carries a snapshot of the transcript so far; providers translate it into
    their own message format and never see the Session itself.
    """

    model_config = ConfigDict(frozen=True)

    entries: tuple[Entry, ...]
    options: GenerationOptions = Field(default_factory=GenerationOptions)
    tools: tuple[ToolDefinition, ...] = ()
    response_format: Optional[GenerationSchema] = None

    @property
    def instructions(self) -> Optional[Instructions]:
        for entry in self.entries:
            if isinstance(entry, Instructions):
                return entry
        return None

    @property
    def instructions_text(self) -> str:
        instructions = self.instructions
        return segments_text(instructions.segments) if instructions else ""

    @property
    def last_prompt(self) -> Optional[Prompt]:
        for entry in reversed(self.entries):
            if isinstance(entry, Prompt):
                return entry
        return None


class ProviderResponse(BaseModel):
    """
    Standardized non-streaming result from a provider.

    Abstracts away backend-specific response shapes into segments plus the
    tool calls the model requested (if any).
    """

    model_config = ConfigDict(frozen=True)

    segments: tuple[Segment, ...] = ()
    tool_calls: tuple[ToolCall, ...] = ()
    finish_reason: str = STREAM_END_REASON


class Availability(BaseModel):
    """Whether a provider can take requests right now, and why not if it can't."""

    model_config = ConfigDict(frozen=True)

    available: bool = True
    reason: Optional[str] = None

    @classmethod
    def ready(cls) -> "Availability":
        return cls()

    @classmethod
    def unavailable(cls, reason: str) -> "Availability":
        return cls(available=False, reason=reason)
