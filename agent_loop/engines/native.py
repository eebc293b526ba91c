"""Engine for models with native (OpenAI-style) function calling."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, cast

from agent_loop.datatypes import (
    MultimodalToolCallResult,
    ParsedModelResponse,
    PrepareRequestContext,
    StreamChunkResult,
    StreamingToolCallUpdate,
    StreamProcessingState,
    ToolCall,
    ToolDefinition,
    finalize_finish_reason,
)
from agent_loop.engines.base import (
    ToolCallEngine,
    base_request,
    field_of,
    read_chunk,
    split_content_parts,
)
from agent_loop.events import AssistantMessageEvent

logger = logging.getLogger(__name__)


@dataclass
class _BuildingCall:
    id: str
    name: str
    arguments: str = ""


@dataclass
class NativeStreamState(StreamProcessingState):
    # Keyed by the provider's per-response tool-call index.
    building: dict[int, _BuildingCall] = field(default_factory=dict)
    completed: bool = False


class NativeToolCallEngine(ToolCallEngine):
    """Trusts transport-level ``tool_calls`` deltas.

    Providers send ``id`` and ``function.name`` only on the first delta for a
    given ``index``; continuation deltas carry argument text alone. The first
    delta seen for an index therefore fixes that call's identity for the rest
    of the response.
    """

    name = "native"

    def prepare_prompt(self, instructions: str, tools: list[ToolDefinition]) -> str:
        return instructions

    def prepare_request(self, context: PrepareRequestContext) -> dict[str, Any]:
        request = base_request(context)
        if context.tools:
            request["tools"] = [tool.to_openai_tool() for tool in context.tools]
        return request

    def init_stream_processing_state(self) -> NativeStreamState:
        return NativeStreamState()

    def process_streaming_chunk(self, chunk: Any, state: StreamProcessingState) -> StreamChunkResult:
        state = cast(NativeStreamState, state)
        delta = read_chunk(chunk)
        result = StreamChunkResult(
            content=delta.content,
            reasoning_content=delta.reasoning_content,
        )
        state.content_buffer += delta.content
        state.reasoning_buffer += delta.reasoning_content

        for tc_delta in delta.tool_calls:
            update = self._apply_tool_call_delta(tc_delta, state)
            if update is not None:
                result.streaming_tool_call_updates.append(update)

        if delta.finish_reason:
            state.finish_reason = delta.finish_reason
            if state.building and not state.completed:
                state.completed = True
                for call in state.building.values():
                    closing = ""
                    if not call.arguments:
                        # No argument text at all; close with an empty object so
                        # the deltas still concatenate to valid JSON.
                        call.arguments = closing = "{}"
                    result.streaming_tool_call_updates.append(
                        StreamingToolCallUpdate(call.id, call.name, closing, True)
                    )

        result.has_tool_call_update = bool(result.streaming_tool_call_updates)
        result.tool_calls = self._current_calls(state)
        return result

    def _apply_tool_call_delta(
        self, tc_delta: Any, state: NativeStreamState
    ) -> StreamingToolCallUpdate | None:
        index = field_of(tc_delta, "index")
        if not isinstance(index, int):
            index = 0
        function = field_of(tc_delta, "function")
        name = field_of(function, "name")
        arguments = field_of(function, "arguments")
        arguments = arguments if isinstance(arguments, str) else ""
        tc_id = field_of(tc_delta, "id")

        call = state.building.get(index)
        if call is None:
            call = _BuildingCall(
                id=tc_id if isinstance(tc_id, str) and tc_id else f"{state.tool_call_id_prefix}_{index}",
                name=name if isinstance(name, str) else "",
            )
            state.building[index] = call
        elif not call.name and isinstance(name, str) and name:
            call.name = name
        elif isinstance(tc_id, str) and tc_id and tc_id != call.id:
            logger.debug("Ignoring id %r for index %d, already bound to %r", tc_id, index, call.id)

        if state.completed:
            logger.debug("Tool-call delta after finish signal for index %d ignored", index)
            return None
        call.arguments += arguments
        return StreamingToolCallUpdate(call.id, call.name, arguments, False)

    @staticmethod
    def _current_calls(state: NativeStreamState) -> list[ToolCall]:
        return [
            ToolCall(id=call.id, name=call.name, arguments=call.arguments or "{}")
            for _, call in sorted(state.building.items())
        ]

    def finalize_stream_processing(self, state: StreamProcessingState) -> ParsedModelResponse:
        state = cast(NativeStreamState, state)
        tool_calls = self._current_calls(state)
        state.tool_calls = tool_calls
        return ParsedModelResponse(
            content=state.content_buffer,
            raw_content=state.content_buffer,
            reasoning_content=state.reasoning_buffer,
            tool_calls=tool_calls,
            finish_reason=finalize_finish_reason(state.finish_reason, tool_calls),
        )

    def build_historical_assistant_message(self, event: AssistantMessageEvent) -> dict[str, Any]:
        message: dict[str, Any] = {"role": "assistant", "content": event.content}
        if event.tool_calls:
            message["tool_calls"] = event.tool_calls
        return message

    def build_historical_tool_call_result_messages(
        self, results: list[MultimodalToolCallResult]
    ) -> list[dict[str, Any]]:
        messages: list[dict[str, Any]] = []
        for result in results:
            text, images = split_content_parts(result.content)
            messages.append(
                {"role": "tool", "tool_call_id": result.tool_call_id, "content": text}
            )
            # The tool role can't carry images; they follow as a user turn.
            if images:
                messages.append({"role": "user", "content": images})
        return messages
