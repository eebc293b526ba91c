"""Tests for the prompt-engineering (<tool_call> markup) tool call engine.

Tests cover:
- prepare_prompt renders the tool list and markup format; no tools → instructions only
- prepare_request never attaches request-level tool schemas and stops on the closing tag
- display content excludes markup, split markers, stray "<" passes through
- name announcement, streamed argument deltas, completion update
- parameters-before-name and argument-less calls
- malformed calls are dropped without raising
- calls cut off before the closing tag are recovered by closing their JSON
- only a top-level "name" key names the call
- multiple calls per response get sequential ids from the prefix
- history replays raw content and folds results into user turns
"""

from __future__ import annotations

from typing import Any

from agent_loop.datatypes import MultimodalToolCallResult, PrepareRequestContext, ToolDefinition
from agent_loop.engines.prompt_engineering import PromptEngineeringToolCallEngine
from agent_loop.events import AssistantMessageEvent


def _chunk(content: str | None = None, finish_reason: str | None = None) -> dict[str, Any]:
    delta = {"content": content} if content is not None else {}
    return {"choices": [{"index": 0, "delta": delta, "finish_reason": finish_reason}]}


def _run(pieces: list[str], *, finish: str | None = "stop", prefix: str | None = None):
    engine = PromptEngineeringToolCallEngine()
    state = engine.init_stream_processing_state()
    if prefix is not None:
        state.tool_call_id_prefix = prefix
    chunks = [_chunk(p) for p in pieces]
    if finish is not None:
        chunks.append(_chunk(finish_reason=finish))
    results = [engine.process_streaming_chunk(c, state) for c in chunks]
    return results, engine.finalize_stream_processing(state)


def _updates(results) -> list[tuple[str, str, str, bool]]:
    return [
        (u.tool_call_id, u.tool_name, u.arguments_delta, u.is_complete)
        for r in results
        for u in r.streaming_tool_call_updates
    ]


WEATHER = (
    "Let me check.\n<tool_call>\n"
    '{"name": "get_weather", "parameters": {"city": "Paris"}}\n'
    "</tool_call>"
)


def _weather_tool() -> ToolDefinition:
    return ToolDefinition(
        name="get_weather",
        description="Current weather",
        parameters={
            "type": "object",
            "properties": {
                "city": {"type": "string", "description": "City name"},
                "units": {"type": "string"},
            },
            "required": ["city"],
        },
        function=lambda city, units="c": city,
    )


# ---------------------------------------------------------------------------
# Request shaping
# ---------------------------------------------------------------------------


class TestPrepare:
    def test_prompt_lists_tools_and_format(self) -> None:
        prompt = PromptEngineeringToolCallEngine().prepare_prompt("Be brief.", [_weather_tool()])
        assert prompt.startswith("Be brief.")
        assert "## get_weather" in prompt
        assert "Description: Current weather" in prompt
        assert "- city (required): City name (type: string)" in prompt
        assert "- units: No description (type: string)" in prompt
        assert "<tool_call>" in prompt and "</tool_call>" in prompt

    def test_tool_without_parameters(self) -> None:
        tool = ToolDefinition("now", "Current time", {"type": "object", "properties": {}}, lambda: 0)
        prompt = PromptEngineeringToolCallEngine().prepare_prompt("x", [tool])
        assert "No parameters required" in prompt

    def test_no_tools_returns_instructions(self) -> None:
        assert PromptEngineeringToolCallEngine().prepare_prompt("Be brief.", []) == "Be brief."

    def test_request_has_no_tool_schemas(self) -> None:
        ctx = PrepareRequestContext(model="m", messages=[], tools=[_weather_tool()])
        request = PromptEngineeringToolCallEngine().prepare_request(ctx)
        assert "tools" not in request
        assert request["stream"] is True
        assert request["stop"] == ["</tool_call>", "</tool_call>\n\n"]


# ---------------------------------------------------------------------------
# Decoding
# ---------------------------------------------------------------------------


class TestDecoding:
    def test_plain_text(self) -> None:
        results, final = _run(["Hello ", "world"])
        assert "".join(r.content for r in results) == "Hello world"
        assert final.content == "Hello world"
        assert final.tool_calls == []
        assert final.finish_reason == "stop"

    def test_single_call_in_one_chunk(self) -> None:
        results, final = _run([WEATHER], finish="stop")
        assert results[0].content == "Let me check.\n"
        assert _updates(results) == [
            ("call_1", "get_weather", "", False),
            ("call_1", "get_weather", '{"city": "Paris"}', False),
            ("call_1", "get_weather", "", True),
        ]
        assert final.content == "Let me check.\n"
        assert final.raw_content == WEATHER
        assert len(final.tool_calls) == 1
        call = final.tool_calls[0]
        assert (call.id, call.name, call.arguments) == ("call_1", "get_weather", '{"city": "Paris"}')
        assert final.finish_reason == "tool_calls"

    def test_markers_split_across_chunks(self) -> None:
        pieces = ["Let me check.\n<tool", "_call>\n{\"name\": \"get_wea", "ther\", \"parameters\": {\"ci",
                  "ty\": \"Paris\"}}\n</tool_", "call>"]
        results, final = _run(pieces)
        assert "".join(r.content for r in results) == "Let me check.\n"
        assert final.tool_calls[0].arguments == '{"city": "Paris"}'
        deltas = "".join(u[2] for u in _updates(results))
        assert deltas == '{"city": "Paris"}'

    def test_stray_angle_bracket_is_content(self) -> None:
        results, final = _run(["a < b", " and <to", "ol"])
        assert [r.content for r in results] == ["a < b", " and ", "", "<tool"]
        assert final.content == "a < b and <tool"
        assert final.tool_calls == []

    def test_dangling_tag_without_finish_signal(self) -> None:
        _, final = _run(["x <tool"], finish=None)
        assert final.content == "x <tool"

    def test_angle_bracket_inside_arguments(self) -> None:
        text = '<tool_call>{"name": "echo", "parameters": {"text": "a</tool_call>b"}}</tool_call>'
        _, final = _run([text])
        assert len(final.tool_calls) == 1
        assert final.tool_calls[0].parsed_arguments() == {"text": "a</tool_call>b"}

    def test_escaped_quote_and_brace_in_arguments(self) -> None:
        text = '<tool_call>{"name": "echo", "parameters": {"text": "say \\"}\\" now"}}</tool_call>'
        _, final = _run([text])
        assert final.tool_calls[0].parsed_arguments() == {"text": 'say "}" now'}

    def test_parameters_before_name(self) -> None:
        results, final = _run(['<tool_call>{"parameters": {"a": 1}, "name": "calc"}</tool_call>'])
        assert _updates(results) == [
            ("call_1", "calc", "", False),
            ("call_1", "calc", '{"a": 1}', True),
        ]
        assert final.tool_calls[0].arguments == '{"a": 1}'

    def test_missing_parameters_gives_empty_object(self) -> None:
        results, final = _run(['<tool_call>{"name": "now"}</tool_call>'])
        assert final.tool_calls[0].arguments == "{}"
        assert "".join(u[2] for u in _updates(results)) == "{}"

    def test_arguments_key_accepted(self) -> None:
        _, final = _run(['<tool_call>{"name": "calc", "arguments": {"a": 2}}</tool_call>'])
        assert final.tool_calls[0].parsed_arguments() == {"a": 2}

    def test_two_calls_sequential_ids(self) -> None:
        text = (
            '<tool_call>{"name": "a", "parameters": {}}</tool_call>'
            '<tool_call>{"name": "b", "parameters": {"x": 1}}</tool_call>'
        )
        _, final = _run([text], prefix="call_ff00")
        assert [(c.id, c.name) for c in final.tool_calls] == [("call_ff00_1", "a"), ("call_ff00_2", "b")]

    def test_malformed_call_dropped(self) -> None:
        results, final = _run(["Hi <tool_call>not json</tool_call> bye"])
        assert final.tool_calls == []
        assert final.content == "Hi  bye"
        assert not any(u[3] for u in _updates(results))
        assert final.finish_reason == "stop"

    def test_unclosed_call_dropped(self) -> None:
        _, final = _run(['Sure <tool_call>{"name": "calc", "parameters": {"a"'])
        assert final.content == "Sure "
        assert final.tool_calls == []
        assert final.finish_reason == "stop"

    def test_call_cut_at_stop_sequence_recovered(self) -> None:
        text = 'Let me check.<tool_call>\n{"name": "add", "parameters": {"a": 1, "b": 2}}\n'
        results, final = _run([text], prefix="call_ab12")
        assert final.content == "Let me check."
        assert [(c.id, c.name, c.parsed_arguments()) for c in final.tool_calls] == [
            ("call_ab12_1", "add", {"a": 1, "b": 2})
        ]
        assert final.finish_reason == "tool_calls"
        assert _updates(results)[-1] == ("call_ab12_1", "add", "", True)

    def test_call_missing_closing_braces_recovered(self) -> None:
        results, final = _run(['<tool_call>{"name": "calc", "parameters": {"n": [1, 2', "]"])
        assert final.tool_calls[0].parsed_arguments() == {"n": [1, 2]}
        assert "".join(u[2] for u in _updates(results)) == final.tool_calls[0].arguments
        assert sum(1 for u in _updates(results) if u[3]) == 1

    def test_partial_closing_tag_recovered(self) -> None:
        _, final = _run(['<tool_call>{"name": "now"}\n</tool_'])
        assert [(c.name, c.arguments) for c in final.tool_calls] == [("now", "{}")]

    def test_recovered_without_finish_signal(self) -> None:
        _, final = _run(['<tool_call>{"name": "now", "parameters": {}'], finish=None)
        assert [(c.name, c.arguments) for c in final.tool_calls] == [("now", "{}")]
        assert final.finish_reason == "tool_calls"

    def test_call_cut_inside_string_dropped(self) -> None:
        _, final = _run(['<tool_call>{"name": "echo", "parameters": {"text": "unfini'])
        assert final.tool_calls == []

    def test_nested_name_key_not_announced(self) -> None:
        text = '<tool_call>{"parameters": {"name": "Alice"}, "name": "greet"}</tool_call>'
        results, final = _run(list(text))
        assert {u[1] for u in _updates(results)} == {"greet"}
        assert [(c.name, c.parsed_arguments()) for c in final.tool_calls] == [("greet", {"name": "Alice"})]

    def test_nested_parameters_key_not_streamed(self) -> None:
        text = '<tool_call>{"name": "save", "meta": {"parameters": {"x": 1}}, "parameters": {"y": 2}}</tool_call>'
        results, final = _run([text])
        assert final.tool_calls[0].parsed_arguments() == {"y": 2}
        assert "".join(u[2] for u in _updates(results)) == '{"y": 2}'

    def test_text_after_call_is_content(self) -> None:
        _, final = _run(['<tool_call>{"name": "a", "parameters": {}}</tool_call> done'])
        assert final.content == " done"


# ---------------------------------------------------------------------------
# History
# ---------------------------------------------------------------------------


class TestHistory:
    def test_assistant_message_replays_raw_content(self) -> None:
        event = AssistantMessageEvent(content="Let me check.\n", raw_content=WEATHER, finish_reason="tool_calls")
        message = PromptEngineeringToolCallEngine().build_historical_assistant_message(event)
        assert message == {"role": "assistant", "content": WEATHER}

    def test_results_folded_into_user_turns(self) -> None:
        image = {"type": "image_url", "image_url": {"url": "data:image/png;base64,AAA"}}
        results = [
            MultimodalToolCallResult("c1", "get_weather", [{"type": "text", "text": "sunny"}]),
            MultimodalToolCallResult("c2", "shot", [image]),
        ]
        messages = PromptEngineeringToolCallEngine().build_historical_tool_call_result_messages(results)
        assert messages[0] == {"role": "user", "content": "Tool: get_weather\nResult:\nsunny"}
        assert messages[1] == {
            "role": "user",
            "content": [{"type": "text", "text": "Tool: shot\nResult:\n"}, image],
        }
