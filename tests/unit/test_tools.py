import inspect

import pytest

from chatloop.config import ChatSettings
from chatloop.editor import EditorBuffer, editor_tools, replace_in_editor_code
from chatloop.request import build_chat_request
from chatloop.tools import (
    INJECTED_PARAMS,
    Tool,
    ToolCallResult,
    ToolRegistry,
    _build_parameters_schema,
    _parse_param_descriptions,
    tool,
)

USER = [{"role": "user", "content": "hi"}]


# ---------------------------------------------------------------------------
# Parameter schemas
# ---------------------------------------------------------------------------


class TestParametersSchema:
    def test_annotations_map_to_json_types(self):
        def forecast(city: str, days: int, min_temp: float, metric: bool,
                     hours: list[int], units: dict):
            pass

        schema, _ = _build_parameters_schema(forecast)
        types = {name: p["type"] for name, p in schema["properties"].items()}
        assert types == {
            "city": "string", "days": "integer", "min_temp": "number",
            "metric": "boolean", "hours": "array", "units": "object",
        }

    def test_unknown_annotation_falls_back_to_string(self):
        def render(buffer: EditorBuffer, note):
            pass

        schema, _ = _build_parameters_schema(render)
        assert schema["properties"]["buffer"]["type"] == "string"
        assert schema["properties"]["note"]["type"] == "string"

    def test_injected_params_hidden(self):
        def whoami(context, city: str):
            pass

        schema, required = _build_parameters_schema(whoami)
        assert INJECTED_PARAMS == ("context",)
        assert list(schema["properties"]) == ["city"]
        assert required == ["city"]

    def test_defaults_make_params_optional(self):
        schema = replace_in_editor_code.parameters_schema
        assert schema["required"] == ["buffer", "find", "replace"]
        assert schema["properties"]["flags"]["type"] == "string"


class TestParamDescriptions:
    @pytest.mark.parametrize("doc", [
        """Look up the weather.

        Args:
            city: City name.
            units (str): Either metric or imperial.
        """,
        """Look up the weather.

        :param city: City name.
        :param str units: Either metric or imperial.
        """,
        """Look up the weather.

        Parameters
        ----------
        city : str
            City name.
        units : str
            Either metric or imperial.
        """,
    ], ids=["google", "rest", "numpy"])
    def test_docstring_layouts(self, doc):
        def get_weather(city, units):
            pass

        get_weather.__doc__ = doc
        assert _parse_param_descriptions(get_weather) == {
            "city": "City name.",
            "units": "Either metric or imperial.",
        }

    def test_continuation_lines_joined(self):
        def set_code(code: str):
            """Replace the page.

            Args:
                code: Full HTML document,
                    including the doctype.
            """

        assert _parse_param_descriptions(set_code) == {
            "code": "Full HTML document,\nincluding the doctype.",
        }

    def test_missing_sections(self):
        def bare(x):
            pass

        def summary_only(x):
            """Only a summary."""

        assert _parse_param_descriptions(bare) == {}
        assert _parse_param_descriptions(summary_only) == {}

    def test_descriptions_reach_schema(self):
        props = replace_in_editor_code.parameters_schema["properties"]
        assert props["find"]["description"] == "Text or pattern to look for."
        assert props["buffer"]["description"] == ""


# ---------------------------------------------------------------------------
# @tool and Tool
# ---------------------------------------------------------------------------


class TestToolDecorator:
    def test_description_is_first_docstring_paragraph(self):
        @tool
        def get_weather(city: str):
            """Current weather for a city.

            Args:
                city: City name.
            """

        assert isinstance(get_weather, Tool)
        assert get_weather.name == "get_weather"
        assert get_weather.description == "Current weather for a city."

    def test_overrides(self):
        @tool(name="weather", description="")
        def get_weather(city: str):
            """Ignored."""

        assert get_weather.name == "weather"
        assert get_weather.description == ""

    def test_model_dump_is_function_descriptor(self):
        @tool
        def get_time(zone: str = "UTC"):
            """Current time."""

        assert get_time.model_dump() == {
            "type": "function",
            "function": {
                "name": "get_time",
                "description": "Current time.",
                "parameters": {
                    "type": "object",
                    "properties": {"zone": {"type": "string", "description": ""}},
                    "required": [],
                },
            },
        }

    @pytest.mark.asyncio
    async def test_call_wraps_sync_and_async_output(self):
        @tool
        def forecast(city: str):
            return {"city": city, "days": [1, 2]}

        @tool
        async def get_time(zone: str):
            return f"12:00 {zone}"

        sync_result = await forecast(city="Oslo")
        async_result = await get_time(zone="CET")

        assert isinstance(sync_result, ToolCallResult)
        assert sync_result.output == {"city": "Oslo", "days": [1, 2]}
        assert async_result == ToolCallResult(tool_name="get_time", output="12:00 CET")


# ---------------------------------------------------------------------------
# Tool.bind, as used for the editor tools
# ---------------------------------------------------------------------------


class TestBind:
    def test_bound_buffer_hidden_from_model(self):
        bound = replace_in_editor_code.bind(buffer=EditorBuffer())
        schema = bound.parameters_schema
        assert "buffer" not in schema["properties"]
        assert schema["required"] == ["find", "replace"]
        assert bound.name == replace_in_editor_code.name
        assert bound.description == replace_in_editor_code.description

    def test_original_tool_untouched(self):
        replace_in_editor_code.bind(buffer=EditorBuffer())
        assert "buffer" in replace_in_editor_code.parameters_schema["properties"]

    @pytest.mark.asyncio
    async def test_bound_tool_acts_on_its_buffer(self):
        first, second = EditorBuffer("<p>a</p>"), EditorBuffer("<p>a</p>")
        bound = replace_in_editor_code.bind(buffer=first)

        result = await bound(find="a", replace="b")

        assert result.output["replacements"] == 1
        assert first.code == "<p>b</p>"
        assert second.code == "<p>a</p>"

    @pytest.mark.asyncio
    async def test_chained_bind(self):
        @tool
        def forecast(provider: str, units: str, city: str):
            return f"{provider}/{units}/{city}"

        bound = forecast.bind(provider="met").bind(units="metric")

        assert bound.parameters_schema["required"] == ["city"]
        assert (await bound(city="Oslo")).output == "met/metric/Oslo"

    def test_context_survives_bind(self):
        @tool
        def whoami(context, buffer: EditorBuffer):
            return context.call.id

        bound = whoami.bind(buffer=EditorBuffer())

        assert "context" in inspect.signature(bound.func).parameters
        assert bound.parameters_schema["properties"] == {}


# ---------------------------------------------------------------------------
# ToolRegistry
# ---------------------------------------------------------------------------


class TestToolRegistry:
    def test_lookup(self, get_weather, get_time):
        registry = ToolRegistry([get_weather, get_time])
        assert registry.lookup("get_weather") is get_weather
        assert registry.lookup("missing") is None
        assert "get_time" in registry
        assert len(registry) == 2

    def test_duplicate_name_rejected(self, get_weather):
        registry = ToolRegistry([get_weather])
        with pytest.raises(ValueError, match="Duplicate tool name"):
            registry.register(get_weather)

    def test_schemas_sent_with_request(self):
        registry = ToolRegistry(editor_tools(EditorBuffer()))

        body = build_chat_request(USER, ChatSettings(), tools=registry.schemas())

        names = [t["function"]["name"] for t in body["tools"]]
        assert names == ["get_editor_code", "set_editor_code", "replace_in_editor_code"]
        assert body["tool_choice"] == "auto"
        for t in body["tools"]:
            assert "buffer" not in t["function"]["parameters"]["properties"]

    def test_empty_registry_sends_no_tools(self):
        body = build_chat_request(USER, ChatSettings(), tools=ToolRegistry().schemas())
        assert "tools" not in body
        assert "tool_choice" not in body
