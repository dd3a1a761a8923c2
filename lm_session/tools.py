"""
Tool registry and executor.

A session owns one ToolRegistry. When the model asks for tools, every call
in the round is resolved and validated first; only then do they execute,
concurrently. Outputs come back in call-declaration order regardless of
completion order.

Executors take the validated arguments (GeneratedContent) and may be plain
functions or coroutines. Their return value is normalized to segments:

- str                          -> text segment
- GeneratedContent             -> structured segment
- a segment, or list of them   -> as-is
- None                         -> no segments
- pydantic model / JSON values -> structured segment

An exception raised by an executor becomes an error ToolOutput the model can
react to; it does not end the turn.
"""

import asyncio
import inspect
import logging
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Iterator, Optional, Union

from pydantic import BaseModel

from lm_session.content import GeneratedContent
from lm_session.errors import (
    DuplicateTool,
    InvalidToolArguments,
    SchemaViolation,
    ToolExecutionError,
    UnknownTool,
)
from lm_session.schema import validate
from lm_session.transcript import (
    ImageSegment,
    Segment,
    StructuredSegment,
    TextSegment,
    ToolCall,
    ToolDefinition,
    ToolOutput,
)

logger = logging.getLogger(__name__)

ToolFunction = Callable[[GeneratedContent], Any]

_SEGMENT_TYPES = (TextSegment, StructuredSegment, ImageSegment)


@dataclass(frozen=True)
class Tool:
    definition: ToolDefinition
    executor: ToolFunction

    @property
    def name(self) -> str:
        return self.definition.name


class ToolRegistry:
    """Tools available to one session, keyed by unique name."""

    def __init__(self, tools: Iterable[Union[Tool, tuple[ToolDefinition, ToolFunction]]] = ()):
        self._tools: dict[str, Tool] = {}
        for item in tools:
            if isinstance(item, Tool):
                self.register(item.definition, item.executor)
            else:
                self.register(*item)

    def register(self, definition: ToolDefinition, executor: ToolFunction) -> Tool:
        """
        Add a tool.

        Raises:
            DuplicateTool: if a tool with the same name is already registered
        """
        if definition.name in self._tools:
            raise DuplicateTool(definition.name)
        tool = Tool(definition=definition, executor=executor)
        self._tools[definition.name] = tool
        return tool

    def resolve(self, name: str, call_id: Optional[str] = None) -> Tool:
        """
        Look up a tool by name.

        Raises:
            UnknownTool: if no tool is registered under that name
        """
        tool = self._tools.get(name)
        if tool is None:
            raise UnknownTool(name, call_id=call_id)
        return tool

    def prepare(self, call: ToolCall, strict: bool = False) -> tuple[Tool, GeneratedContent]:
        """
        Resolve the call's tool and validate its arguments.

        Unknown argument fields pass through unless strict is True.

        Raises:
            UnknownTool, InvalidToolArguments
        """
        tool = self.resolve(call.tool_name, call_id=call.id)
        try:
            arguments = validate(
                tool.definition.parameters,
                call.arguments,
                allow_unknown_fields=not strict,
            )
        except SchemaViolation as e:
            raise InvalidToolArguments(call.tool_name, e.path, e.reason, call_id=call.id) from e
        return tool, arguments

    @property
    def definitions(self) -> tuple[ToolDefinition, ...]:
        return tuple(t.definition for t in self._tools.values())

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __iter__(self) -> Iterator[Tool]:
        return iter(list(self._tools.values()))

    def __len__(self) -> int:
        return len(self._tools)


# ─────────────────────────────────────────────────────────────────────
# EXECUTION
# ─────────────────────────────────────────────────────────────────────


def output_segments(result: Any, source: str = "") -> tuple[Segment, ...]:
    """Normalize an executor's return value into transcript segments."""
    if result is None:
        return ()
    if isinstance(result, str):
        return (TextSegment(content=result),)
    if isinstance(result, GeneratedContent):
        return (StructuredSegment(source=source, content=result),)
    if isinstance(result, _SEGMENT_TYPES):
        return (result,)
    if isinstance(result, (list, tuple)) and result and all(isinstance(r, _SEGMENT_TYPES) for r in result):
        return tuple(result)
    if isinstance(result, BaseModel):
        result = result.model_dump(mode="json")
    return (StructuredSegment(source=source, content=GeneratedContent.from_value(result)),)


async def _invoke(tool: Tool, arguments: GeneratedContent) -> Any:
    """Await coroutine executors; run plain functions in a worker thread."""
    if inspect.iscoroutinefunction(tool.executor):
        return await tool.executor(arguments)
    result = await asyncio.to_thread(tool.executor, arguments)
    if inspect.isawaitable(result):
        result = await result
    return result


async def run_tool(tool: Tool, call: ToolCall, arguments: GeneratedContent) -> ToolOutput:
    """Execute one validated call. Executor errors become an error ToolOutput."""
    try:
        result = await _invoke(tool, arguments)
        segments = output_segments(result, source=tool.name)
    except asyncio.CancelledError:
        raise
    except Exception as e:
        error = ToolExecutionError(call.tool_name, call.id, e)
        logger.warning(f"{error} (call {call.id})")
        return ToolOutput(
            call_id=call.id,
            tool_name=call.tool_name,
            segments=(TextSegment(content=f"Error: {error}"),),
            is_error=True,
        )
    return ToolOutput(call_id=call.id, tool_name=call.tool_name, segments=segments)


async def execute_round(
    registry: ToolRegistry,
    calls: Iterable[ToolCall],
    strict: bool = False,
) -> list[ToolOutput]:
    """
    Validate then execute one round of tool calls.

    Every call is prepared before any executes, so an UnknownTool or
    InvalidToolArguments means nothing ran. Outputs are returned in
    declaration order.
    """
    calls = list(calls)
    prepared = [registry.prepare(call, strict=strict) for call in calls]
    logger.debug(f"Executing {len(calls)} tool call(s): {[c.tool_name for c in calls]}")
    return list(await asyncio.gather(
        *(run_tool(tool, call, arguments) for call, (tool, arguments) in zip(calls, prepared))
    ))
