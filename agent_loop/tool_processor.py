"""Sequential execution of one iteration's tool calls."""

from __future__ import annotations

import inspect
import logging
import time
from typing import Any

from agent_loop.abort import AbortSignal
from agent_loop.datatypes import ToolCall, ToolCallResult, ToolDefinition
from agent_loop.errors import ToolExecutionError
from agent_loop.event_stream import EventStream
from agent_loop.events import ToolCallEvent, ToolResultEvent
from agent_loop.hooks import AgentHooks, run_hook

logger = logging.getLogger(__name__)

ABORTED_CONTENT = "Tool execution aborted"


class ToolProcessor:
    """Runs tool calls in order and reports each one to the event stream.

    Tool failures never propagate: they come back as a ToolCallResult with
    ``content="Error: <message>"`` and ``error`` set.
    """

    def __init__(self, event_stream: EventStream, hooks: AgentHooks | None = None) -> None:
        self.event_stream = event_stream
        self.hooks = hooks

    async def process_tool_calls(
        self,
        tool_calls: list[ToolCall],
        tools: list[ToolDefinition],
        *,
        session_id: str,
        abort_signal: AbortSignal | None = None,
    ) -> list[ToolCallResult]:
        tool_map = {tool.name: tool for tool in tools}

        intercepted = await run_hook(self.hooks, "on_process_tool_calls", session_id, tool_calls)
        if intercepted is not None:
            return self._emit_intercepted(intercepted)

        results: list[ToolCallResult] = []
        for index, tool_call in enumerate(tool_calls):
            if abort_signal is not None and abort_signal.aborted:
                logger.info(
                    "Abort requested; skipping %d remaining tool call(s)", len(tool_calls) - index
                )
                for skipped in tool_calls[index:]:
                    results.append(self._aborted(skipped))
                break
            results.append(await self._process_one(tool_call, tool_map, session_id))
        return results

    def _emit_intercepted(self, results: list[ToolCallResult]) -> list[ToolCallResult]:
        logger.debug("Tool calls intercepted by hook (%d results)", len(results))
        for result in results:
            self.event_stream.send_event(
                ToolResultEvent(
                    tool_call_id=result.tool_call_id,
                    name=result.tool_name,
                    content=result.content,
                    error=result.error,
                )
            )
        return list(results)

    def _aborted(self, tool_call: ToolCall) -> ToolCallResult:
        self.event_stream.send_event(
            ToolResultEvent(
                tool_call_id=tool_call.id,
                name=tool_call.name,
                content=ABORTED_CONTENT,
                error="aborted",
            )
        )
        return ToolCallResult(
            tool_call_id=tool_call.id,
            tool_name=tool_call.name,
            content=ABORTED_CONTENT,
            error="aborted",
        )

    async def _process_one(
        self,
        tool_call: ToolCall,
        tool_map: dict[str, ToolDefinition],
        session_id: str,
    ) -> ToolCallResult:
        args = tool_call.parsed_arguments()
        if not args and tool_call.arguments.strip() not in ("", "{}"):
            logger.error(
                "Failed to parse tool call arguments for %s: %s",
                tool_call.name,
                tool_call.arguments[:200],
            )

        rewritten = await run_hook(self.hooks, "on_before_tool_call", session_id, tool_call, args)
        if isinstance(rewritten, dict):
            args = rewritten

        tool = tool_map.get(tool_call.name)
        start = time.monotonic()
        self.event_stream.send_event(
            ToolCallEvent(
                tool_call_id=tool_call.id,
                name=tool_call.name,
                arguments=args,
                tool={
                    "name": tool.name,
                    "description": tool.description,
                    "schema": tool.parameters,
                }
                if tool is not None
                else None,
            )
        )

        error: str | None = None
        if tool is None:
            error = f'Tool "{tool_call.name}" not found'
            logger.warning("%s", error)
            content: Any = f"Error: {error}"
        else:
            try:
                content = await self._execute(tool, args)
            except Exception as exc:
                failure = ToolExecutionError(str(exc), tool_name=tool.name, original=exc)
                logger.warning("Tool %s failed: %s: %s", tool.name, type(exc).__name__, exc)
                error = str(failure)
                translated = await run_hook(self.hooks, "on_tool_call_error", session_id, tool_call, exc)
                content = translated if translated is not None else f"Error: {failure}"

        if error is None:
            replaced = await run_hook(self.hooks, "on_after_tool_call", session_id, tool_call, content)
            if replaced is not None:
                content = replaced

        elapsed_ms = int((time.monotonic() - start) * 1000)
        self.event_stream.send_event(
            ToolResultEvent(
                tool_call_id=tool_call.id,
                name=tool_call.name,
                content=content,
                elapsed_ms=elapsed_ms,
                error=error,
            )
        )
        return ToolCallResult(
            tool_call_id=tool_call.id,
            tool_name=tool_call.name,
            content=content,
            error=error,
        )

    @staticmethod
    async def _execute(tool: ToolDefinition, args: dict[str, Any]) -> Any:
        result = tool.function(**args)
        if inspect.isawaitable(result):
            result = await result
        return result

