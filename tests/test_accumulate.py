"""Tests for lm_session.accumulate - folding events into responses."""

import pytest

from lm_session.accumulate import ResponseAccumulator, fold_events, fold_stream, structured_source
from lm_session.content import GeneratedContent
from lm_session.errors import InvalidToolArguments, MalformedContent, TransportFailure
from lm_session.events import Failure, Finish, StructuredDelta, TextDelta, ToolCallDelta
from lm_session.schema import GenerationSchema
from lm_session.streaming import replay
from lm_session.transcript import StructuredSegment, TextSegment

from tests.conftest import text_round, tool_round


class TestResponseAccumulator:
    """Tests for ResponseAccumulator."""

    def test_text_deltas_concatenate(self):
        accumulator = ResponseAccumulator()
        for event in text_round("The capital", " of France", " is Paris."):
            accumulator.apply(event)

        assert accumulator.snapshot().text == "The capital of France is Paris."
        assert len(accumulator.segments) == 1
        assert accumulator.is_finished

    def test_apply_reports_visible_changes(self):
        accumulator = ResponseAccumulator()
        assert accumulator.apply(TextDelta(text="a")) is True
        assert accumulator.apply(TextDelta(text="")) is False
        assert accumulator.apply(ToolCallDelta(id="c1", name="t")) is False
        assert accumulator.apply(Finish()) is False

    def test_structured_delta_replaces(self):
        accumulator = ResponseAccumulator(source="Weather")
        accumulator.apply(StructuredDelta(content=GeneratedContent.object({"city": "P"})))
        accumulator.apply(StructuredDelta(content=GeneratedContent.object({"city": "Paris"}), complete=True))

        segments = accumulator.segments
        assert segments == (
            StructuredSegment(source="Weather", content=GeneratedContent.object({"city": "Paris"})),
        )

    def test_text_after_structure_starts_new_segment(self):
        accumulator = ResponseAccumulator()
        accumulator.apply(TextDelta(text="a"))
        accumulator.apply(StructuredDelta(content=GeneratedContent.number(1)))
        accumulator.apply(TextDelta(text="b"))

        assert [type(s) for s in accumulator.segments] == [TextSegment, StructuredSegment, TextSegment]

    def test_snapshot_keeps_id(self):
        accumulator = ResponseAccumulator(response_id="r1")
        accumulator.apply(TextDelta(text="a"))
        first = accumulator.snapshot()
        accumulator.apply(TextDelta(text="b"))

        assert first.id == accumulator.snapshot().id == "r1"
        assert first.text == "a"

    def test_failure_raises_carried_error(self):
        error = TransportFailure("boom")
        with pytest.raises(TransportFailure) as exc_info:
            ResponseAccumulator().apply(Failure(error))
        assert exc_info.value is error


class TestToolCalls:
    """Tool-call finalization."""

    def test_streamed_fragments_join(self):
        accumulator = ResponseAccumulator()
        for event in [
            ToolCallDelta(id="c1", name="get_weather"),
            ToolCallDelta(id="c1", arguments='{"ci'),
            ToolCallDelta(id="c1", arguments='ty":"Paris"}'),
            Finish(reason="tool_calls"),
        ]:
            accumulator.apply(event)

        response = accumulator.finish()

        assert response.finish_reason == "tool_calls"
        assert response.tool_calls[0].tool_name == "get_weather"
        assert response.tool_calls[0].arguments == GeneratedContent.object({"city": "Paris"})

    def test_declaration_order(self):
        response = fold_events(tool_round(("b", "second", "{}"), ("a", "first", "{}")))
        assert [c.id for c in response.tool_calls] == ["b", "a"]

    def test_empty_arguments_are_empty_object(self):
        response = fold_events(tool_round(("c1", "now", "")))
        assert response.tool_calls[0].arguments == GeneratedContent.object()

    def test_incomplete_arguments(self):
        with pytest.raises(InvalidToolArguments) as exc_info:
            fold_events(tool_round(("c1", "get_weather", '{"city": "Par')))
        assert exc_info.value.call_id == "c1"

    def test_unnamed_call(self):
        with pytest.raises(MalformedContent, match="no name"):
            fold_events([ToolCallDelta(id="c1", arguments="{}"), Finish()])

    def test_named_twice(self):
        with pytest.raises(MalformedContent):
            fold_events([ToolCallDelta(id="c1", name="a"), ToolCallDelta(id="c1", name="a"), Finish()])


class TestFold:

    @pytest.mark.asyncio
    async def test_fold_stream_matches_fold_events(self):
        events = text_round("Hel", "lo")
        streamed = await fold_stream(replay(events))
        folded = fold_events(events)

        assert streamed.segments == folded.segments
        assert streamed.finish_reason == folded.finish_reason == "stop"

    def test_structured_source(self):
        assert structured_source(None) == ""
        assert structured_source(GenerationSchema.object(title="Weather")) == "Weather"
