"""
Error taxonomy for lm-session.

Every turn-terminating condition is a SessionError subclass with a stable
`kind` string and the offending identifier as an attribute, so callers can
branch on structure instead of parsing messages.

Only ToolExecutionError is absorbed by the orchestrator (it becomes a
ToolOutput entry the model can react to). Everything else ends the turn.
"""

from typing import Optional


class SessionError(Exception):
    """Base class for all lm-session errors."""

    kind: str = "session_error"


# ─────────────────────────────────────────────────────────────────────
# TRANSPORT / DECODING
# ─────────────────────────────────────────────────────────────────────


class TransportFailure(SessionError):
    """Non-2xx status, connection error, or a stream that ended early."""

    kind = "transport_failure"

    def __init__(self, message: str, status: Optional[int] = None, body: str = ""):
        self.status = status
        self.body = body
        if status is not None:
            message = f"{message} (HTTP {status}): {body[:500]}"
        super().__init__(message)


class MalformedContent(SessionError):
    """Bytes that are structurally inconsistent, not merely incomplete."""

    kind = "malformed_content"

    def __init__(self, reason: str, offset: Optional[int] = None):
        self.reason = reason
        self.offset = offset
        where = f" at offset {offset}" if offset is not None else ""
        super().__init__(f"Malformed content{where}: {reason}")


class SchemaViolation(SessionError):
    """Content does not match its GenerationSchema."""

    kind = "schema_violation"

    def __init__(self, path: str, reason: str):
        self.path = path
        self.reason = reason
        super().__init__(f"{path or '<root>'}: {reason}")


# ─────────────────────────────────────────────────────────────────────
# TOOL LOOP
# ─────────────────────────────────────────────────────────────────────


class DuplicateTool(SessionError):
    """Two tools registered under the same name."""

    kind = "duplicate_tool"

    def __init__(self, tool_name: str):
        self.tool_name = tool_name
        super().__init__(f"Tool already registered: {tool_name}")


class UnknownTool(SessionError):
    """Model called a tool that is not registered in this session."""

    kind = "unknown_tool"

    def __init__(self, tool_name: str, call_id: Optional[str] = None):
        self.tool_name = tool_name
        self.call_id = call_id
        super().__init__(f"Unknown tool: {tool_name}")


class InvalidToolArguments(SessionError):
    """Tool call arguments are incomplete or fail the tool's schema."""

    kind = "invalid_tool_arguments"

    def __init__(self, tool_name: str, field: str, reason: str, call_id: Optional[str] = None):
        self.tool_name = tool_name
        self.field = field
        self.reason = reason
        self.call_id = call_id
        super().__init__(f"Invalid arguments for {tool_name} at {field or '<root>'}: {reason}")


class ToolLoopExceeded(SessionError):
    """Model kept requesting tools past the configured round limit."""

    kind = "tool_loop_exceeded"

    def __init__(self, rounds: int):
        self.rounds = rounds
        super().__init__(f"Tool loop exceeded {rounds} rounds")


class ToolExecutionError(SessionError):
    """A tool raised while executing. Recoverable: becomes a ToolOutput."""

    kind = "tool_execution_error"

    def __init__(self, tool_name: str, call_id: str, cause: BaseException):
        self.tool_name = tool_name
        self.call_id = call_id
        self.cause = cause
        super().__init__(f"Tool {tool_name} failed: {type(cause).__name__}: {cause}")


# ─────────────────────────────────────────────────────────────────────
# SESSION LIFECYCLE
# ─────────────────────────────────────────────────────────────────────


class SessionBusy(SessionError):
    """A turn is already in progress on this session."""

    kind = "session_busy"

    def __init__(self):
        super().__init__("Session is already responding to a prompt")


class Cancelled(SessionError):
    """Turn aborted at the caller's request."""

    kind = "cancelled"

    def __init__(self, message: str = "Turn cancelled"):
        super().__init__(message)
