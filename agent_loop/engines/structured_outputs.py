"""Engine for models constrained to answer with one JSON envelope.

Every response is::

    {"content": "text for the user", "toolCall": {"name": "...", "args": {...}}}

streamed as bare text. Each chunk the buffer is parsed tolerantly and only the
not-yet-emitted suffix of ``content`` is reported. ``toolCall`` is reported
once, when the whole envelope parses, never from a partial buffer.

A response that does not start with ``{`` (after an optional markdown fence)
is treated as plain text and passed through as-is.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
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
    build_folded_tool_result_messages,
    read_chunk,
)
from agent_loop.errors import DecodeDegradation
from agent_loop.events import AssistantMessageEvent
from agent_loop.partial_json import parse_partial_json
from agent_loop.prompts import render_system_prompt

logger = logging.getLogger(__name__)

RESPONSE_SCHEMA_NAME = "agent_response_schema"

RESPONSE_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "content": {
            "type": "string",
            "description": "Your response text to the user",
        },
        "toolCall": {
            "type": "object",
            "description": "Optional tool call to execute",
            "properties": {
                "name": {"type": "string", "description": "Name of the tool to call"},
                "args": {"type": "object", "description": "Arguments for the tool"},
            },
            "required": ["name", "args"],
        },
    },
    "required": ["content"],
}

_OPEN_FENCE_RE = re.compile(r"^```[a-zA-Z]*[ \t]*\n")
_CLOSE_FENCE_RE = re.compile(r"\n?\s*```\s*$")

_UNDETERMINED = "undetermined"
_ENVELOPE = "envelope"
_RAW = "raw"


@dataclass
class StructuredOutputsStreamState(StreamProcessingState):
    mode: str = _UNDETERMINED
    last_parsed_content: str = ""
    tool_call_emitted: bool = False


def _envelope_body(buffer: str) -> str | None:
    """Buffer with leading whitespace and an opening fence removed.

    None while it's still too early to tell (blank, or a fence line that
    hasn't ended yet).
    """
    text = buffer.lstrip()
    if text.startswith("`"):
        if "\n" not in text:
            return None if "```".startswith(text[:3]) else text
        match = _OPEN_FENCE_RE.match(text)
        if match is None:
            return text
        text = text[match.end():].lstrip()
    return text or None


def _tool_call_from(envelope: dict[str, Any], call_id: str) -> ToolCall | None:
    raw = envelope.get("toolCall")
    if not isinstance(raw, dict):
        return None
    name = raw.get("name")
    if not isinstance(name, str) or not name:
        return None
    args = raw.get("args", raw.get("arguments", {}))
    if not isinstance(args, dict):
        args = {}
    return ToolCall(id=call_id, name=name, arguments=json.dumps(args, ensure_ascii=False))


class StructuredOutputsToolCallEngine(ToolCallEngine):
    name = "structured_outputs"

    def prepare_prompt(self, instructions: str, tools: list[ToolDefinition]) -> str:
        if not tools:
            return instructions
        tools_json = json.dumps(
            [
                {"name": t.name, "description": t.description, "parameters": t.parameters}
                for t in tools
            ],
            indent=2,
            ensure_ascii=False,
        )
        return render_system_prompt(
            "structured_outputs", instructions=instructions, tools_json=tools_json
        )

    def prepare_request(self, context: PrepareRequestContext) -> dict[str, Any]:
        request = base_request(context)
        if context.tools:
            request["response_format"] = {
                "type": "json_schema",
                "json_schema": {
                    "name": RESPONSE_SCHEMA_NAME,
                    # Free-form "args" objects are incompatible with strict mode.
                    "strict": False,
                    "schema": RESPONSE_SCHEMA,
                },
            }
        return request

    def init_stream_processing_state(self) -> StructuredOutputsStreamState:
        return StructuredOutputsStreamState()

    def process_streaming_chunk(self, chunk: Any, state: StreamProcessingState) -> StreamChunkResult:
        st = cast(StructuredOutputsStreamState, state)
        delta = read_chunk(chunk)
        st.reasoning_buffer += delta.reasoning_content
        if delta.finish_reason:
            st.finish_reason = delta.finish_reason
        result = StreamChunkResult(reasoning_content=delta.reasoning_content)
        if not delta.content:
            result.tool_calls = list(st.tool_calls)
            return result

        st.content_buffer += delta.content

        if st.mode == _UNDETERMINED:
            body = _envelope_body(st.content_buffer)
            if body is None:
                return result
            if body.startswith("{"):
                st.mode = _ENVELOPE
            else:
                st.mode = _RAW
                result.content = st.content_buffer
                st.last_parsed_content = st.content_buffer
                return result
        elif st.mode == _RAW:
            result.content = delta.content
            st.last_parsed_content += delta.content
            return result

        self._decode_envelope(st, result)
        return result

    def _decode_envelope(
        self, st: StructuredOutputsStreamState, result: StreamChunkResult
    ) -> None:
        body = _envelope_body(st.content_buffer) or ""
        try:
            parsed = parse_partial_json(body, allow_trailing=True)
        except DecodeDegradation as exc:
            logger.debug("Structured output not parseable yet: %s", exc)
            result.tool_calls = list(st.tool_calls)
            return
        if not isinstance(parsed.value, dict):
            return

        content = parsed.value.get("content")
        if isinstance(content, str) and len(content) > len(st.last_parsed_content):
            if content.startswith(st.last_parsed_content):
                result.content = content[len(st.last_parsed_content):]
                st.last_parsed_content = content
            else:
                logger.debug("Parsed content diverged from what was already emitted")

        if parsed.complete and not st.tool_call_emitted:
            call = _tool_call_from(parsed.value, f"{st.tool_call_id_prefix}_1")
            if call is not None:
                st.tool_call_emitted = True
                st.tool_calls = [call]
                result.has_tool_call_update = True
                result.streaming_tool_call_updates.append(
                    StreamingToolCallUpdate(call.id, call.name, call.arguments, True)
                )
        result.tool_calls = list(st.tool_calls)

    def finalize_stream_processing(self, state: StreamProcessingState) -> ParsedModelResponse:
        st = cast(StructuredOutputsStreamState, state)
        raw = st.content_buffer
        content = raw
        tool_calls: list[ToolCall] = []

        body = _envelope_body(raw)
        if body is None:
            content = ""
        elif body.startswith("{"):
            content, tool_calls = self._finalize_envelope(body, st.tool_call_id_prefix)

        return ParsedModelResponse(
            content=content,
            raw_content=raw,
            reasoning_content=st.reasoning_buffer,
            tool_calls=tool_calls,
            finish_reason=finalize_finish_reason(st.finish_reason, tool_calls),
        )

    @staticmethod
    def _finalize_envelope(body: str, prefix: str) -> tuple[str, list[ToolCall]]:
        text = _CLOSE_FENCE_RE.sub("", body)
        try:
            envelope = json.loads(text)
        except json.JSONDecodeError:
            envelope = None
        if isinstance(envelope, dict):
            content = envelope.get("content")
            call = _tool_call_from(envelope, f"{prefix}_1")
            return (content if isinstance(content, str) else ""), ([call] if call else [])

        # Incomplete or corrupted envelope: keep whatever content decoded.
        try:
            partial = parse_partial_json(text, allow_trailing=True)
        except DecodeDegradation as exc:
            logger.debug("Structured output unrecoverable, returning raw buffer: %s", exc)
            return body, []
        content = partial.value.get("content") if isinstance(partial.value, dict) else None
        if isinstance(content, str):
            return content, []
        return body, []

    def build_historical_assistant_message(self, event: AssistantMessageEvent) -> dict[str, Any]:
        # Replay the envelope itself so the model keeps seeing its own format.
        return {"role": "assistant", "content": event.raw_content or event.content}

    def build_historical_tool_call_result_messages(
        self, results: list[MultimodalToolCallResult]
    ) -> list[dict[str, Any]]:
        return build_folded_tool_result_messages(results)
