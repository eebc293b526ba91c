"""Tests for agent_loop.tool_processor: sequential tool execution.

Tests cover:
- sync and async tools, results and tool_call / tool_result events in order
- unknown tools and raising tools become error results, never exceptions
- hooks: argument rewrite, result rewrite, error translation, interception
- a failing hook leaves the pre-hook value in place
- abort short-circuits the remaining calls
- malformed argument JSON is executed with no arguments
"""

from __future__ import annotations

import asyncio

import pytest

from agent_loop.abort import AbortSignal
from agent_loop.datatypes import ToolCall, ToolCallResult
from agent_loop.event_stream import EventStream
from agent_loop.events import ToolCallEvent, ToolResultEvent
from agent_loop.hooks import AgentHooks
from agent_loop.tool_processor import ABORTED_CONTENT, ToolProcessor
from agent_loop.tool_utils import ToolRegistry


def add(a: int, b: int) -> int:
    """Add two numbers."""
    return a + b


async def slow_echo(text: str) -> str:
    """Echo after a pause."""
    await asyncio.sleep(0)
    return text


def failing_tool(x: str) -> str:
    """This tool always fails."""
    raise RuntimeError("Intentional failure")


def now() -> str:
    """Current time."""
    return "12:00"


TOOLS = ToolRegistry([add, slow_echo, failing_tool, now]).list_tools()


def _events(stream: EventStream, kind: type) -> list:
    return [e for e in stream.get_events() if isinstance(e, kind)]


@pytest.mark.asyncio
class TestToolProcessor:
    async def test_sync_and_async_tools(self) -> None:
        stream = EventStream()
        calls = [
            ToolCall("c1", "add", '{"a": 3, "b": 4}'),
            ToolCall("c2", "slow_echo", '{"text": "hi"}'),
        ]
        results = await ToolProcessor(stream).process_tool_calls(calls, TOOLS, session_id="s")
        assert [(r.tool_call_id, r.content, r.error) for r in results] == [("c1", 7, None), ("c2", "hi", None)]
        assert [e.type for e in stream.get_events()] == ["tool_call", "tool_result", "tool_call", "tool_result"]
        call_event = _events(stream, ToolCallEvent)[0]
        assert call_event.arguments == {"a": 3, "b": 4}
        assert call_event.tool["name"] == "add"
        result_event = _events(stream, ToolResultEvent)[0]
        assert result_event.content == 7
        assert result_event.elapsed_ms >= 0

    async def test_unknown_tool(self) -> None:
        stream = EventStream()
        results = await ToolProcessor(stream).process_tool_calls(
            [ToolCall("c1", "teleport", "{}")], TOOLS, session_id="s"
        )
        assert results[0].content == 'Error: Tool "teleport" not found'
        assert results[0].error == 'Tool "teleport" not found'
        assert _events(stream, ToolCallEvent)[0].tool is None

    async def test_tool_exception_becomes_error_result(self) -> None:
        stream = EventStream()
        results = await ToolProcessor(stream).process_tool_calls(
            [ToolCall("c1", "failing_tool", '{"x": "y"}'), ToolCall("c2", "now", "{}")], TOOLS, session_id="s"
        )
        assert results[0].content == "Error: Intentional failure"
        assert results[0].error == "Intentional failure"
        assert results[1].content == "12:00"
        assert _events(stream, ToolResultEvent)[0].error == "Intentional failure"

    async def test_bad_arguments_reported(self) -> None:
        stream = EventStream()
        results = await ToolProcessor(stream).process_tool_calls(
            [ToolCall("c1", "add", "{not json")], TOOLS, session_id="s"
        )
        assert results[0].error is not None
        assert results[0].content.startswith("Error: ")

    async def test_empty_arguments(self) -> None:
        results = await ToolProcessor(EventStream()).process_tool_calls(
            [ToolCall("c1", "now", "")], TOOLS, session_id="s"
        )
        assert results[0].content == "12:00"


@pytest.mark.asyncio
class TestToolProcessorHooks:
    async def test_before_hook_rewrites_arguments(self) -> None:
        hooks = AgentHooks(on_before_tool_call=lambda sid, call, args: {**args, "b": 10})
        results = await ToolProcessor(EventStream(), hooks).process_tool_calls(
            [ToolCall("c1", "add", '{"a": 1, "b": 2}')], TOOLS, session_id="s"
        )
        assert results[0].content == 11

    async def test_after_hook_rewrites_result(self) -> None:
        async def after(sid: str, call: ToolCall, result: object) -> object:
            return f"{call.name}={result}"

        stream = EventStream()
        results = await ToolProcessor(stream, AgentHooks(on_after_tool_call=after)).process_tool_calls(
            [ToolCall("c1", "add", '{"a": 1, "b": 2}')], TOOLS, session_id="s"
        )
        assert results[0].content == "add=3"
        assert _events(stream, ToolResultEvent)[0].content == "add=3"

    async def test_after_hook_skipped_on_error(self) -> None:
        seen: list[str] = []
        hooks = AgentHooks(on_after_tool_call=lambda sid, call, result: seen.append(call.id))
        await ToolProcessor(EventStream(), hooks).process_tool_calls(
            [ToolCall("c1", "failing_tool", '{"x": "y"}')], TOOLS, session_id="s"
        )
        assert seen == []

    async def test_error_hook_translates(self) -> None:
        hooks = AgentHooks(on_tool_call_error=lambda sid, call, exc: f"recovered from {exc}")
        results = await ToolProcessor(EventStream(), hooks).process_tool_calls(
            [ToolCall("c1", "failing_tool", '{"x": "y"}')], TOOLS, session_id="s"
        )
        assert results[0].content == "recovered from Intentional failure"
        assert results[0].error == "Intentional failure"

    async def test_failing_hook_keeps_original(self, caplog: pytest.LogCaptureFixture) -> None:
        def broken(sid: str, call: ToolCall, args: dict) -> dict:
            raise ValueError("hook bug")

        with caplog.at_level("WARNING", logger="agent_loop.hooks"):
            results = await ToolProcessor(EventStream(), AgentHooks(on_before_tool_call=broken)).process_tool_calls(
                [ToolCall("c1", "add", '{"a": 1, "b": 2}')], TOOLS, session_id="s"
            )
        assert results[0].content == 3
        assert "on_before_tool_call" in caplog.text

    async def test_interception(self) -> None:
        def intercept(sid: str, calls: list[ToolCall]) -> list[ToolCallResult]:
            return [ToolCallResult(c.id, c.name, "mocked") for c in calls]

        stream = EventStream()
        results = await ToolProcessor(stream, AgentHooks(on_process_tool_calls=intercept)).process_tool_calls(
            [ToolCall("c1", "failing_tool", "{}")], TOOLS, session_id="s"
        )
        assert [r.content for r in results] == ["mocked"]
        assert [e.type for e in stream.get_events()] == ["tool_result"]


@pytest.mark.asyncio
class TestToolProcessorAbort:
    async def test_abort_before_first_call(self) -> None:
        signal = AbortSignal()
        signal.abort()
        stream = EventStream()
        results = await ToolProcessor(stream).process_tool_calls(
            [ToolCall("c1", "now", "{}"), ToolCall("c2", "now", "{}")], TOOLS, session_id="s", abort_signal=signal
        )
        assert [(r.content, r.error) for r in results] == [(ABORTED_CONTENT, "aborted")] * 2
        assert _events(stream, ToolCallEvent) == []

    async def test_abort_between_calls(self) -> None:
        signal = AbortSignal()
        hooks = AgentHooks(on_after_tool_call=lambda sid, call, result: signal.abort())
        results = await ToolProcessor(EventStream(), hooks).process_tool_calls(
            [ToolCall("c1", "now", "{}"), ToolCall("c2", "now", "{}")], TOOLS, session_id="s", abort_signal=signal
        )
        assert results[0].content == "12:00"
        assert results[1].content == ABORTED_CONTENT
