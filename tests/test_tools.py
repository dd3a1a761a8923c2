"""Tests for lm_session.tools - registry, validation and round execution."""

import asyncio
import time

import pytest
from pydantic import BaseModel

from lm_session.content import GeneratedContent
from lm_session.errors import DuplicateTool, InvalidToolArguments, UnknownTool
from lm_session.schema import GenerationSchema
from lm_session.tools import Tool, ToolRegistry, execute_round, output_segments
from lm_session.transcript import ImageSegment, StructuredSegment, TextSegment, ToolCall, ToolDefinition


def weather_call(call_id: str = "call_1", **arguments) -> ToolCall:
    return ToolCall(id=call_id, tool_name="get_weather", arguments=GeneratedContent.object(arguments))


# ─────────────────────────────────────────────────────────────────────
# REGISTRY
# ─────────────────────────────────────────────────────────────────────

class TestToolRegistry:
    """Tests for registration and lookup."""

    def test_register_and_resolve(self, weather_definition, weather_executor):
        registry = ToolRegistry([(weather_definition, weather_executor)])

        assert "get_weather" in registry
        assert len(registry) == 1
        assert registry.resolve("get_weather").executor is weather_executor
        assert registry.definitions == (weather_definition,)

    def test_accepts_tool_instances(self, weather_definition, weather_executor):
        registry = ToolRegistry([Tool(weather_definition, weather_executor)])
        assert [t.name for t in registry] == ["get_weather"]

    def test_duplicate_name(self, weather_definition, weather_executor):
        registry = ToolRegistry([(weather_definition, weather_executor)])
        with pytest.raises(DuplicateTool) as exc_info:
            registry.register(weather_definition, weather_executor)
        assert exc_info.value.tool_name == "get_weather"

    def test_unknown_tool(self):
        with pytest.raises(UnknownTool) as exc_info:
            ToolRegistry().resolve("launch", call_id="c9")
        assert exc_info.value.tool_name == "launch"
        assert exc_info.value.call_id == "c9"


class TestPrepare:
    """Argument validation before execution."""

    def test_valid_arguments_get_schema(self, weather_tool):
        registry = ToolRegistry([weather_tool])
        _, arguments = registry.prepare(weather_call(city="Paris"))
        assert arguments.schema is not None

    def test_missing_field(self, weather_tool):
        registry = ToolRegistry([weather_tool])
        with pytest.raises(InvalidToolArguments) as exc_info:
            registry.prepare(weather_call())
        assert exc_info.value.field == "city"
        assert exc_info.value.call_id == "call_1"

    def test_wrong_type(self, weather_tool):
        registry = ToolRegistry([weather_tool])
        with pytest.raises(InvalidToolArguments, match="expected string"):
            registry.prepare(weather_call(city=75))

    def test_unknown_fields_only_rejected_when_strict(self, weather_tool):
        registry = ToolRegistry([weather_tool])
        call = weather_call(city="Paris", units="metric")

        registry.prepare(call)
        with pytest.raises(InvalidToolArguments) as exc_info:
            registry.prepare(call, strict=True)
        assert exc_info.value.field == "units"


# ─────────────────────────────────────────────────────────────────────
# OUTPUT NORMALIZATION
# ─────────────────────────────────────────────────────────────────────

class TestOutputSegments:
    """Executor return values become transcript segments."""

    def test_none(self):
        assert output_segments(None) == ()

    def test_string(self):
        assert output_segments("done") == (TextSegment(content="done"),)

    def test_content(self):
        content = GeneratedContent.from_value({"temp": 21})
        assert output_segments(content, source="get_weather") == (
            StructuredSegment(source="get_weather", content=content),
        )

    def test_segments_pass_through(self):
        image = ImageSegment(url="http://example.com/map.png")
        assert output_segments(image) == (image,)
        assert output_segments([TextSegment(content="a"), image]) == (TextSegment(content="a"), image)

    def test_pydantic_model(self):
        class Forecast(BaseModel):
            high: int
            low: int

        segments = output_segments(Forecast(high=20, low=11))
        assert segments[0].content.to_value() == {"high": 20, "low": 11}

    def test_plain_json_values(self):
        assert output_segments([1, 2])[0].content == GeneratedContent.array([1, 2])
        assert output_segments({"ok": True})[0].content == GeneratedContent.object({"ok": True})


# ─────────────────────────────────────────────────────────────────────
# EXECUTION
# ─────────────────────────────────────────────────────────────────────

class TestExecuteRound:
    """Tests for execute_round()."""

    @pytest.mark.asyncio
    async def test_outputs_in_declaration_order(self):
        async def slow_first(arguments):
            await asyncio.sleep(0.05 if arguments["n"].value == 1 else 0)
            return f"done {arguments['n'].value}"

        definition = ToolDefinition(
            name="work",
            parameters=GenerationSchema.object([("n", GenerationSchema.integer())]),
        )
        registry = ToolRegistry([(definition, slow_first)])
        calls = [
            ToolCall(id=f"c{n}", tool_name="work", arguments=GeneratedContent.object({"n": n}))
            for n in (1, 2, 3)
        ]

        outputs = await execute_round(registry, calls)

        assert [o.call_id for o in outputs] == ["c1", "c2", "c3"]
        assert [o.segments[0].content for o in outputs] == ["done 1", "done 2", "done 3"]

    @pytest.mark.asyncio
    async def test_calls_run_concurrently(self):
        async def nap(arguments):
            await asyncio.sleep(0.1)

        definition = ToolDefinition(name="nap")
        registry = ToolRegistry([(definition, nap)])
        calls = [ToolCall(id=f"c{i}", tool_name="nap", arguments=GeneratedContent.object()) for i in range(5)]

        started = time.monotonic()
        await execute_round(registry, calls)

        assert time.monotonic() - started < 0.4

    @pytest.mark.asyncio
    async def test_sync_executor(self, weather_definition):
        registry = ToolRegistry([(weather_definition, lambda arguments: f"Rain in {arguments['city'].value}")])

        outputs = await execute_round(registry, [weather_call(city="Oslo")])

        assert outputs[0].segments == (TextSegment(content="Rain in Oslo"),)
        assert outputs[0].is_error is False

    @pytest.mark.asyncio
    async def test_executor_error_becomes_error_output(self, weather_definition):
        def broken(arguments):
            raise RuntimeError("weather service down")

        registry = ToolRegistry([(weather_definition, broken)])

        outputs = await execute_round(registry, [weather_call(city="Oslo")])

        assert outputs[0].is_error is True
        assert outputs[0].tool_name == "get_weather"
        assert "weather service down" in outputs[0].segments[0].content
        assert outputs[0].segments[0].content.startswith("Error: ")

    @pytest.mark.asyncio
    async def test_invalid_call_means_nothing_runs(self, weather_definition, weather_executor):
        registry = ToolRegistry([(weather_definition, weather_executor)])
        calls = [weather_call("c1", city="Paris"), weather_call("c2")]

        with pytest.raises(InvalidToolArguments):
            await execute_round(registry, calls)
        assert weather_executor.calls == []

    @pytest.mark.asyncio
    async def test_unknown_tool_means_nothing_runs(self, weather_definition, weather_executor):
        registry = ToolRegistry([(weather_definition, weather_executor)])
        calls = [
            weather_call("c1", city="Paris"),
            ToolCall(id="c2", tool_name="launch_rockets", arguments=GeneratedContent.object()),
        ]

        with pytest.raises(UnknownTool):
            await execute_round(registry, calls)
        assert weather_executor.calls == []
