"""Tests for the structured-outputs (JSON envelope) tool call engine.

Tests cover:
- prepare_prompt embeds the tool list as JSON; prepare_request adds response_format only with tools
- content deltas are the growing suffix of the envelope's "content"
- toolCall surfaces once, on the complete envelope, as a single complete update
- markdown fences around the envelope
- non-JSON answers pass through as plain text
- incomplete and corrupted envelopes degrade without raising
"""

from __future__ import annotations

import json
from typing import Any

from agent_loop.datatypes import MultimodalToolCallResult, PrepareRequestContext, ToolDefinition
from agent_loop.engines.structured_outputs import (
    RESPONSE_SCHEMA,
    RESPONSE_SCHEMA_NAME,
    StructuredOutputsToolCallEngine,
)
from agent_loop.events import AssistantMessageEvent


def _chunk(content: str | None = None, finish_reason: str | None = None) -> dict[str, Any]:
    delta = {"content": content} if content is not None else {}
    return {"choices": [{"index": 0, "delta": delta, "finish_reason": finish_reason}]}


def _run(pieces: list[str], *, finish: str | None = "stop", prefix: str | None = None):
    engine = StructuredOutputsToolCallEngine()
    state = engine.init_stream_processing_state()
    if prefix is not None:
        state.tool_call_id_prefix = prefix
    chunks = [_chunk(p) for p in pieces]
    if finish is not None:
        chunks.append(_chunk(finish_reason=finish))
    results = [engine.process_streaming_chunk(c, state) for c in chunks]
    return results, engine.finalize_stream_processing(state)


def _calc_tool() -> ToolDefinition:
    return ToolDefinition(
        name="calc",
        description="Add numbers",
        parameters={"type": "object", "properties": {"a": {"type": "integer"}}, "required": ["a"]},
        function=lambda a: a,
    )


# ---------------------------------------------------------------------------
# Request shaping
# ---------------------------------------------------------------------------


class TestPrepare:
    def test_prompt_embeds_tools_json(self) -> None:
        prompt = StructuredOutputsToolCallEngine().prepare_prompt("Be brief.", [_calc_tool()])
        assert prompt.startswith("Be brief.")
        assert '"name": "calc"' in prompt
        assert '"toolCall"' in prompt

    def test_no_tools_returns_instructions(self) -> None:
        assert StructuredOutputsToolCallEngine().prepare_prompt("Be brief.", []) == "Be brief."

    def test_response_format_with_tools(self) -> None:
        ctx = PrepareRequestContext(model="m", messages=[], tools=[_calc_tool()])
        request = StructuredOutputsToolCallEngine().prepare_request(ctx)
        assert "tools" not in request
        assert request["response_format"] == {
            "type": "json_schema",
            "json_schema": {"name": RESPONSE_SCHEMA_NAME, "strict": False, "schema": RESPONSE_SCHEMA},
        }

    def test_no_response_format_without_tools(self) -> None:
        ctx = PrepareRequestContext(model="m", messages=[])
        assert "response_format" not in StructuredOutputsToolCallEngine().prepare_request(ctx)


# ---------------------------------------------------------------------------
# Decoding
# ---------------------------------------------------------------------------


class TestDecoding:
    def test_content_suffix_deltas(self) -> None:
        results, final = _run(['{"con', 'tent": "Hel', "lo wor", 'ld"}'])
        assert [r.content for r in results] == ["", "Hel", "lo wor", "ld", ""]
        assert final.content == "Hello world"
        assert final.raw_content == '{"content": "Hello world"}'
        assert final.finish_reason == "stop"

    def test_tool_call_surfaces_once_complete(self) -> None:
        results, final = _run(
            ['{"content": "Checking", "toolCall": {"name": "calc", ', '"args": {"a": 1}}}'],
            prefix="call_77",
        )
        assert results[0].streaming_tool_call_updates == []
        updates = results[1].streaming_tool_call_updates
        assert [(u.tool_call_id, u.tool_name, u.arguments_delta, u.is_complete) for u in updates] == [
            ("call_77_1", "calc", '{"a": 1}', True)
        ]
        assert results[2].streaming_tool_call_updates == []
        assert final.content == "Checking"
        assert len(final.tool_calls) == 1
        call = final.tool_calls[0]
        assert (call.id, call.name, json.loads(call.arguments)) == ("call_77_1", "calc", {"a": 1})
        assert final.finish_reason == "tool_calls"

    def test_null_tool_call(self) -> None:
        _, final = _run(['{"content": "Done", "toolCall": null}'])
        assert final.tool_calls == []
        assert final.finish_reason == "stop"

    def test_non_object_args_become_empty(self) -> None:
        _, final = _run(['{"content": "", "toolCall": {"name": "calc", "args": "a=1"}}'])
        assert final.tool_calls[0].arguments == "{}"

    def test_fenced_envelope(self) -> None:
        results, final = _run(["``", '`json\n{"content": "H', 'i"}\n```'])
        assert "".join(r.content for r in results) == "Hi"
        assert final.content == "Hi"

    def test_plain_text_passthrough(self) -> None:
        results, final = _run(["Hello", " there"])
        assert [r.content for r in results] == ["Hello", " there", ""]
        assert final.content == "Hello there"
        assert final.tool_calls == []

    def test_incomplete_envelope_keeps_partial_content(self) -> None:
        _, final = _run(['{"content": "Partial ans', 'wer"', ', "toolCall": {"name": "calc"'], finish="length")
        assert final.content == "Partial answer"
        assert final.tool_calls == []
        assert final.finish_reason == "length"

    def test_corrupted_envelope_returns_raw_body(self) -> None:
        _, final = _run(['{"content": "a" garbage'])
        assert final.content == '{"content": "a" garbage'
        assert final.tool_calls == []

    def test_whitespace_only_response(self) -> None:
        _, final = _run(["  \n"])
        assert final.content == ""
        assert final.raw_content == "  \n"

    def test_reasoning_passthrough(self) -> None:
        engine = StructuredOutputsToolCallEngine()
        state = engine.init_stream_processing_state()
        chunk = {"choices": [{"delta": {"reasoning_content": "hmm"}, "finish_reason": None}]}
        assert engine.process_streaming_chunk(chunk, state).reasoning_content == "hmm"
        assert engine.finalize_stream_processing(state).reasoning_content == "hmm"


# ---------------------------------------------------------------------------
# History
# ---------------------------------------------------------------------------


class TestHistory:
    def test_assistant_message_replays_envelope(self) -> None:
        raw = '{"content": "Checking", "toolCall": {"name": "calc", "args": {"a": 1}}}'
        event = AssistantMessageEvent(content="Checking", raw_content=raw, finish_reason="tool_calls")
        message = StructuredOutputsToolCallEngine().build_historical_assistant_message(event)
        assert message == {"role": "assistant", "content": raw}

    def test_results_folded_into_user_turns(self) -> None:
        results = [MultimodalToolCallResult("call_1", "calc", [{"type": "text", "text": "2"}])]
        messages = StructuredOutputsToolCallEngine().build_historical_tool_call_result_messages(results)
        assert messages == [{"role": "user", "content": "Tool: calc\nResult:\n2"}]
