"""
Session - drives one conversation with a provider, one turn at a time.

A turn goes:

    IDLE -> DISPATCHING -> STREAMING | AWAITING
         -> (EXECUTING_TOOLS -> DISPATCHING)*  -> COMPLETED | FAILED

Each turn runs in its own asyncio task against a working copy of the
transcript. The copy is committed when the turn completes or fails (failed
turns keep what was appended before the failure) and discarded when the turn
is cancelled, so a cancelled turn leaves no trace.

Only one turn runs at a time; a second respond()/stream() while one is in
flight raises SessionBusy and leaves the running turn alone.
"""

import asyncio
import logging
from enum import Enum
from typing import AsyncIterator, Callable, Iterable, Optional, Union

from lm_session.accumulate import ResponseAccumulator, structured_source
from lm_session.config import get_max_tool_rounds
from lm_session.errors import Cancelled, SchemaViolation, SessionBusy, SessionError, ToolLoopExceeded
from lm_session.options import GenerationOptions
from lm_session.providers.base import Provider
from lm_session.providers.schema import Availability, ProviderRequest, ProviderResponse
from lm_session.schema import GenerationSchema, validate
from lm_session.streaming import as_session_error, normalize_events
from lm_session.tools import Tool, ToolRegistry, execute_round
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
    Transcript,
)

logger = logging.getLogger(__name__)

_END = object()


class SessionState(str, Enum):
    IDLE = "idle"
    DISPATCHING = "dispatching"
    STREAMING = "streaming"
    AWAITING = "awaiting"
    EXECUTING_TOOLS = "executing_tools"
    COMPLETED = "completed"
    FAILED = "failed"


class Session:
    """
    One conversation: a provider, a tool registry, and a growing transcript.

    Args:
        provider: Anything satisfying the Provider protocol
        tools: A ToolRegistry, or Tool / (definition, executor) pairs
        instructions: System instructions, recorded on the first turn
        transcript: Prior entries to continue from
        options: Session-wide defaults; per-call options override them
        max_tool_rounds: Tool rounds allowed per turn (default from
            LM_SESSION_MAX_TOOL_ROUNDS, else 8)
        strict_tool_arguments: Reject tool arguments with undeclared fields
    """

    def __init__(
        self,
        provider: Provider,
        tools: Union[ToolRegistry, Iterable[Tool], Iterable[tuple]] = (),
        instructions: Optional[str] = None,
        transcript: Union[Transcript, Iterable[Entry], None] = None,
        options: Optional[GenerationOptions] = None,
        max_tool_rounds: Optional[int] = None,
        strict_tool_arguments: bool = False,
    ):
        self.provider = provider
        self.tools = tools if isinstance(tools, ToolRegistry) else ToolRegistry(tools)
        self.instructions = instructions
        self.default_options = options or GenerationOptions()
        self.max_tool_rounds = get_max_tool_rounds() if max_tool_rounds is None else max_tool_rounds
        if self.max_tool_rounds < 0:
            raise ValueError(f"max_tool_rounds must be >= 0, got {self.max_tool_rounds}")
        self.strict_tool_arguments = strict_tool_arguments

        self._transcript = Transcript(transcript or ())
        self._state = SessionState.IDLE
        self._task: Optional[asyncio.Task] = None
        self._cancel_requested = False

    # ─────────────────────────────────────────────────────────────────
    # PUBLIC API
    # ─────────────────────────────────────────────────────────────────

    @property
    def transcript(self) -> Transcript:
        """A copy of the committed transcript."""
        return self._transcript.copy()

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def is_responding(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def availability(self) -> Availability:
        return self.provider.availability

    @property
    def is_available(self) -> bool:
        return self.provider.availability.available

    async def prewarm(self, prompt_prefix: Union[str, Iterable[Segment], None] = None) -> None:
        """
        Let the provider get ready for the next turn (e.g. load the model).

        The provider sees the transcript the next turn would start from,
        plus `prompt_prefix` as a trailing Prompt when given. Nothing is
        recorded in the transcript.

        Raises:
            SessionError: the provider's warm-up failed
        """
        working = self._opening_transcript()
        if prompt_prefix is not None:
            working.append(Prompt(segments=_prompt_segments(prompt_prefix, ()), options=self.default_options))
        request = ProviderRequest(
            entries=working.entries,
            options=self.default_options,
            tools=self.tools.definitions,
        )
        logger.debug(f"Prewarming {self.provider.provider_id}")
        await self.provider.prewarm(request)

    async def respond(
        self,
        prompt: Union[str, Iterable[Segment]],
        *,
        options: Optional[GenerationOptions] = None,
        schema: Optional[GenerationSchema] = None,
        images: Iterable[ImageSegment] = (),
    ) -> Response:
        """
        Run a turn to completion and return the final Response.

        Raises:
            SessionBusy: a turn is already in progress
            Cancelled: cancel() was called during the turn
            SessionError: any other turn failure (see errors.py)
        """
        task = self._start_turn(prompt, options, schema, images, publish=None)
        try:
            return await self._await_turn(task)
        finally:
            self._release(task)

    async def stream(
        self,
        prompt: Union[str, Iterable[Segment]],
        *,
        options: Optional[GenerationOptions] = None,
        schema: Optional[GenerationSchema] = None,
        images: Iterable[ImageSegment] = (),
    ) -> AsyncIterator[Response]:
        """
        Run a turn, yielding Response snapshots as they grow.

        The last snapshot is the final Response. Snapshots from a round that
        ends in tool calls carry a different id from the final one. Leaving
        the loop early cancels the turn.

        Raises:
            Same as respond()
        """
        queue: asyncio.Queue = asyncio.Queue()
        task = self._start_turn(prompt, options, schema, images, publish=queue.put_nowait)
        task.add_done_callback(lambda _: queue.put_nowait(_END))

        last: Optional[Response] = None
        try:
            while True:
                item = await queue.get()
                if item is _END:
                    break
                last = item
                yield item

            response = await self._await_turn(task)
            if last != response:
                yield response
        finally:
            if not task.done():
                logger.debug("Stream consumer stopped early, cancelling turn")
                self._cancel_requested = True
                task.cancel()
                await asyncio.wait({task})
            self._release(task)

    def cancel(self) -> bool:
        """
        Cancel the in-flight turn, if any.

        Closes the provider stream and cancels running tools. The caller of
        respond()/stream() gets Cancelled and the transcript is left as it
        was before the turn. Returns False when nothing was running.
        """
        if not self.is_responding:
            return False
        logger.info("Cancellation requested, aborting turn")
        self._cancel_requested = True
        self._task.cancel()
        return True

    # ─────────────────────────────────────────────────────────────────
    # TURN LIFECYCLE
    # ─────────────────────────────────────────────────────────────────

    def _opening_transcript(self) -> Transcript:
        """Copy of the transcript, with Instructions prepended if this is the first turn."""
        working = self._transcript.copy()
        if len(working) == 0 and (self.instructions or len(self.tools) > 0):
            segments = (TextSegment(content=self.instructions),) if self.instructions else ()
            working.append(Instructions(segments=segments, tool_definitions=self.tools.definitions))
        return working

    def _set_state(self, state: SessionState) -> None:
        logger.debug(f"Session state {self._state.value} -> {state.value}")
        self._state = state

    def _start_turn(
        self,
        prompt: Union[str, Iterable[Segment]],
        options: Optional[GenerationOptions],
        schema: Optional[GenerationSchema],
        images: Iterable[ImageSegment],
        publish: Optional[Callable[[Response], None]],
    ) -> asyncio.Task:
        if self.is_responding:
            raise SessionBusy()

        working = self._opening_transcript()

        effective = self.default_options.merged(options)
        working.append(Prompt(
            segments=_prompt_segments(prompt, images),
            options=effective,
            response_format=schema,
        ))

        self._cancel_requested = False
        self._set_state(SessionState.DISPATCHING)
        self._task = asyncio.create_task(self._run_turn(working, effective, schema, publish))
        self._task.add_done_callback(self._on_turn_done)
        return self._task

    def _on_turn_done(self, task: asyncio.Task) -> None:
        # A task cancelled before its first step never reaches _run_turn
        if task.cancelled() and self._task is task and self._state is not SessionState.FAILED:
            self._set_state(SessionState.FAILED)

    async def _await_turn(self, task: asyncio.Task) -> Response:
        try:
            return await task
        except asyncio.CancelledError:
            if self._cancel_requested and task.cancelled():
                raise Cancelled() from None
            raise

    def _release(self, task: asyncio.Task) -> None:
        if self._task is task:
            self._task = None

    async def _run_turn(
        self,
        working: Transcript,
        options: GenerationOptions,
        schema: Optional[GenerationSchema],
        publish: Optional[Callable[[Response], None]],
    ) -> Response:
        try:
            response = await self._run_rounds(working, options, schema, publish)
        except asyncio.CancelledError:
            self._set_state(SessionState.FAILED)
            logger.info("Turn cancelled; transcript left unchanged")
            raise
        except SessionError as e:
            self._fail(working, e)
            raise
        except Exception as e:
            error = as_session_error(e)
            self._fail(working, error)
            raise error from e

        self._transcript = working
        self._set_state(SessionState.COMPLETED)
        logger.info(f"Turn completed ({len(working)} transcript entries)")
        return response

    def _fail(self, working: Transcript, error: SessionError) -> None:
        self._transcript = working
        self._set_state(SessionState.FAILED)
        logger.info(f"Turn failed: {error.kind}: {error}")

    # ─────────────────────────────────────────────────────────────────
    # TOOL LOOP
    # ─────────────────────────────────────────────────────────────────

    async def _run_rounds(
        self,
        working: Transcript,
        options: GenerationOptions,
        schema: Optional[GenerationSchema],
        publish: Optional[Callable[[Response], None]],
    ) -> Response:
        rounds = 0
        while True:
            self._set_state(SessionState.DISPATCHING)
            request = ProviderRequest(
                entries=working.entries,
                options=options,
                tools=self.tools.definitions,
                response_format=schema,
            )
            accumulator = ResponseAccumulator(source=structured_source(schema))
            result = await self._dispatch(request, accumulator, publish)

            if not result.tool_calls:
                response = Response(id=accumulator.response_id, segments=result.segments)
                if schema is not None:
                    response = _validated(response, schema)
                working.append(response)
                return response

            if rounds >= self.max_tool_rounds:
                raise ToolLoopExceeded(rounds)
            if result.segments:
                logger.debug(f"Dropping {len(result.segments)} segment(s) emitted alongside tool calls")

            working.append(ToolCalls(calls=result.tool_calls))
            self._set_state(SessionState.EXECUTING_TOOLS)
            outputs = await execute_round(self.tools, result.tool_calls, strict=self.strict_tool_arguments)
            working.extend(outputs)
            rounds += 1

    async def _dispatch(
        self,
        request: ProviderRequest,
        accumulator: ResponseAccumulator,
        publish: Optional[Callable[[Response], None]],
    ) -> ProviderResponse:
        """Call the provider once; streaming when the caller streams or the provider cannot invoke."""
        provider = self.provider
        use_stream = provider.supports_streaming and (publish is not None or not provider.supports_invoke)

        if not use_stream:
            self._set_state(SessionState.AWAITING)
            return await provider.invoke(request)

        self._set_state(SessionState.STREAMING)
        events = normalize_events(provider.stream(request), structured=request.response_format is not None)
        try:
            async for event in events:
                if accumulator.apply(event) and publish is not None:
                    publish(accumulator.snapshot())
        finally:
            await events.aclose()
        return accumulator.finish()


def _prompt_segments(prompt: Union[str, Iterable[Segment]], images: Iterable[ImageSegment]) -> tuple[Segment, ...]:
    if isinstance(prompt, str):
        segments: list[Segment] = [TextSegment(content=prompt)] if prompt else []
    else:
        segments = list(prompt)
    segments.extend(images)
    return tuple(segments)


def _validated(response: Response, schema: GenerationSchema) -> Response:
    """
    Validate the structured content of a final response.

    Raises:
        SchemaViolation: missing structured content or a shape mismatch
    """
    if response.content is None:
        raise SchemaViolation("", "response contained no structured content")

    segments = []
    for segment in response.segments:
        if isinstance(segment, StructuredSegment):
            segment = segment.model_copy(update={"content": validate(schema, segment.content)})
        segments.append(segment)
    return response.model_copy(update={"segments": tuple(segments)})
