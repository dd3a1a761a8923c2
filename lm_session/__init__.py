"""
lm-session: one session abstraction over interchangeable language-model backends.

Normalizes SSE / NDJSON / single-document responses into canonical events,
decodes partial JSON as it streams, and drives a bounded tool-calling loop.

Usage:
    from lm_session import Session
    from lm_session.providers.ollama import OllamaChatProvider

    session = Session(OllamaChatProvider(model="llama3.2"), instructions="Be brief.")
    response = await session.respond("Hello")
"""

from lm_session.content import GeneratedContent
from lm_session.errors import (
    Cancelled,
    DuplicateTool,
    InvalidToolArguments,
    MalformedContent,
    SchemaViolation,
    SessionBusy,
    SessionError,
    ToolExecutionError,
    ToolLoopExceeded,
    TransportFailure,
    UnknownTool,
)
from lm_session.events import (
    CanonicalEvent,
    Failure,
    Finish,
    StructuredDelta,
    TextDelta,
    ToolCallDelta,
)
from lm_session.options import GenerationOptions, Sampling, SamplingMode
from lm_session.partial import DecodeResult, PartialDecoder
from lm_session.schema import GenerationSchema, SchemaProperty, validate
from lm_session.session import Session, SessionState
from lm_session.tools import Tool, ToolRegistry
from lm_session.transcript import (
    ImageSegment,
    Instructions,
    Prompt,
    Response,
    StructuredSegment,
    TextSegment,
    ToolCall,
    ToolCalls,
    ToolDefinition,
    ToolOutput,
    Transcript,
)

__all__ = [
    "GeneratedContent",
    "GenerationSchema",
    "SchemaProperty",
    "validate",
    "PartialDecoder",
    "DecodeResult",
    "CanonicalEvent",
    "TextDelta",
    "StructuredDelta",
    "ToolCallDelta",
    "Finish",
    "Failure",
    "GenerationOptions",
    "Sampling",
    "SamplingMode",
    "Session",
    "SessionState",
    "Tool",
    "ToolRegistry",
    "Transcript",
    "Instructions",
    "Prompt",
    "ToolCalls",
    "ToolOutput",
    "Response",
    "TextSegment",
    "StructuredSegment",
    "ImageSegment",
    "ToolCall",
    "ToolDefinition",
    "SessionError",
    "TransportFailure",
    "MalformedContent",
    "SchemaViolation",
    "DuplicateTool",
    "UnknownTool",
    "InvalidToolArguments",
    "ToolLoopExceeded",
    "ToolExecutionError",
    "SessionBusy",
    "Cancelled",
]
