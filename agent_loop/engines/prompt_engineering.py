"""Engine for models that call tools through inline ``<tool_call>`` markup.

The model is told (via the system prompt) to answer with::

    Let me check.
    <tool_call>
    {"name": "get_weather", "parameters": {"city": "Paris"}}
    </tool_call>

The decoder is a character-level lexer, so markers and JSON may be split
across any number of chunks:

- text outside markup is display content and is emitted immediately;
- after ``<tool_call>`` text is withheld; the tool name is announced once its
  closing quote arrives, then the raw text of the ``parameters`` object is
  streamed as argument deltas until the object closes;
- ``</tool_call>`` completes the call. Requests stop on that tag, so a call
  still open when the stream finishes is completed by closing its JSON.
"""

from __future__ import annotations

import json
import logging
import re
from collections import deque
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
    build_folded_tool_result_messages,
    read_chunk,
)
from agent_loop.errors import DecodeDegradation
from agent_loop.events import AssistantMessageEvent
from agent_loop.prompts import render_system_prompt

logger = logging.getLogger(__name__)

OPEN_TAG = "<tool_call>"
CLOSE_TAG = "</tool_call>"

# Providers stop before emitting the stop sequence, so the closing tag of the
# final call is usually missing and recovered at finish.
STOP_SEQUENCES = [CLOSE_TAG, CLOSE_TAG + "\n\n"]

_NAME_RE = re.compile(r'"name"\s*:\s*"((?:[^"\\]|\\.)*)"')
_ARGS_START_RE = re.compile(r'"(?:parameters|arguments)"\s*:\s*\{\Z')
_BLOCK_RE = re.compile(r"<tool_call>(.*?)</tool_call>", re.DOTALL)

_NORMAL = "normal"
_TAG_OPEN = "tag_open"
_IN_CALL = "in_call"
_TAG_CLOSE = "tag_close"


@dataclass
class _PendingCall:
    id: str
    name: str | None = None
    args_started: bool = False
    args_done: bool = False
    args_text: str = ""
    depth: int = 0
    in_string: bool = False
    escape: bool = False
    # Lexer over the whole call body; top_level keeps only depth-1 text.
    outer_depth: int = 0
    outer_in_string: bool = False
    outer_escape: bool = False
    top_level: str = ""

    @property
    def in_arguments(self) -> bool:
        return self.args_started and not self.args_done

    def track(self, ch: str) -> None:
        before = self.outer_depth
        if self.outer_in_string:
            if self.outer_escape:
                self.outer_escape = False
            elif ch == "\\":
                self.outer_escape = True
            elif ch == '"':
                self.outer_in_string = False
        elif ch == '"':
            self.outer_in_string = True
        elif ch in "{[":
            self.outer_depth += 1
        elif ch in "}]":
            self.outer_depth -= 1
        if before <= 1 and self.outer_depth <= 1:
            self.top_level += ch


@dataclass
class PromptEngineeringStreamState(StreamProcessingState):
    mode: str = _NORMAL
    tag_buffer: str = ""
    call_buffer: str = ""
    display_content: str = ""
    current: _PendingCall | None = None
    call_count: int = 0


class _UpdateCollector:
    """Coalesces consecutive argument characters into one delta per call."""

    def __init__(self) -> None:
        self.updates: list[StreamingToolCallUpdate] = []
        self._call: _PendingCall | None = None
        self._args: list[str] = []

    def add_arguments(self, call: _PendingCall, text: str) -> None:
        if self._call is not call:
            self.flush()
            self._call = call
        self._args.append(text)

    def add(self, update: StreamingToolCallUpdate) -> None:
        self.flush()
        self.updates.append(update)

    def flush(self) -> None:
        if self._call is not None and self._args:
            self.updates.append(
                StreamingToolCallUpdate(
                    self._call.id, self._call.name or "", "".join(self._args), False
                )
            )
        self._call = None
        self._args = []


def _extract_first_json_object(text: str) -> dict[str, Any] | None:
    """First JSON object in ``text``, ignoring anything after it."""
    start = text.find("{")
    if start < 0:
        return None
    try:
        obj, _ = json.JSONDecoder().raw_decode(text[start:])
    except json.JSONDecodeError:
        return None
    return obj if isinstance(obj, dict) else None


def _missing_closers(text: str) -> str | None:
    """Brackets closing every object and array left open in ``text``; None inside a string."""
    start = text.find("{")
    if start < 0:
        return None
    stack: list[str] = []
    in_string = escape = False
    for ch in text[start:]:
        if in_string:
            if escape:
                escape = False
            elif ch == "\\":
                escape = True
            elif ch == '"':
                in_string = False
        elif ch == '"':
            in_string = True
        elif ch == "{":
            stack.append("}")
        elif ch == "[":
            stack.append("]")
        elif ch in "}]" and stack:
            stack.pop()
    if in_string:
        return None
    return "".join(reversed(stack))


def _is_json(text: str) -> bool:
    try:
        json.loads(text)
    except json.JSONDecodeError:
        return False
    return True


def _parameter_lines(tool: ToolDefinition) -> str:
    properties = tool.parameters.get("properties") or {}
    if not properties:
        return "No parameters required"
    required = set(tool.parameters.get("required") or [])
    lines = []
    for name, schema in properties.items():
        schema = schema if isinstance(schema, dict) else {}
        marker = " (required)" if name in required else ""
        description = schema.get("description") or "No description"
        lines.append(f"- {name}{marker}: {description} (type: {schema.get('type', 'any')})")
    return "\n".join(lines)


class PromptEngineeringToolCallEngine(ToolCallEngine):
    name = "prompt_engineering"

    def prepare_prompt(self, instructions: str, tools: list[ToolDefinition]) -> str:
        if not tools:
            return instructions
        return render_system_prompt(
            "prompt_engineering",
            instructions=instructions,
            tools=[
                {
                    "name": tool.name,
                    "description": tool.description,
                    "parameters": _parameter_lines(tool),
                }
                for tool in tools
            ],
        )

    def prepare_request(self, context: PrepareRequestContext) -> dict[str, Any]:
        # Tools travel in the system prompt, never as request-level schemas.
        request = base_request(context)
        # litellm maps "stop" onto each provider's own stop-sequence parameter.
        request["stop"] = list(STOP_SEQUENCES)
        return request

    def init_stream_processing_state(self) -> PromptEngineeringStreamState:
        return PromptEngineeringStreamState()

    # -- decoding ---------------------------------------------------------------

    def process_streaming_chunk(self, chunk: Any, state: StreamProcessingState) -> StreamChunkResult:
        st = cast(PromptEngineeringStreamState, state)
        delta = read_chunk(chunk)
        st.reasoning_buffer += delta.reasoning_content
        collector = _UpdateCollector()
        out: list[str] = []

        if delta.content:
            st.content_buffer += delta.content
            self._feed(st, delta.content, out, collector)

        if delta.finish_reason:
            st.finish_reason = delta.finish_reason
            if st.mode == _TAG_OPEN:
                # Stream is over; a dangling "<tool" was prose after all.
                out.append(st.tag_buffer)
                st.tag_buffer = ""
                st.mode = _NORMAL
            elif st.current is not None:
                self._recover_open_call(st, collector)

        collector.flush()
        content = "".join(out)
        st.display_content += content
        return StreamChunkResult(
            content=content,
            reasoning_content=delta.reasoning_content,
            has_tool_call_update=bool(collector.updates),
            tool_calls=list(st.tool_calls),
            streaming_tool_call_updates=collector.updates,
        )

    def _feed(
        self,
        st: PromptEngineeringStreamState,
        text: str,
        out: list[str],
        collector: _UpdateCollector,
    ) -> None:
        pending = deque(text)
        while pending:
            ch = pending.popleft()
            if st.mode == _NORMAL:
                if ch == "<":
                    st.mode = _TAG_OPEN
                    st.tag_buffer = ch
                else:
                    out.append(ch)
            elif st.mode == _TAG_OPEN:
                candidate = st.tag_buffer + ch
                if candidate == OPEN_TAG:
                    self._start_call(st)
                elif OPEN_TAG.startswith(candidate):
                    st.tag_buffer = candidate
                else:
                    out.append("<")
                    st.mode = _NORMAL
                    st.tag_buffer = ""
                    pending.extendleft(reversed(candidate[1:]))
            elif st.mode == _IN_CALL:
                call = cast(_PendingCall, st.current)
                if ch == "<" and not call.in_arguments:
                    st.mode = _TAG_CLOSE
                    st.tag_buffer = ch
                else:
                    self._consume_call_char(st, ch, collector)
            else:
                candidate = st.tag_buffer + ch
                if candidate == CLOSE_TAG:
                    self._complete_call(st, collector)
                elif CLOSE_TAG.startswith(candidate):
                    st.tag_buffer = candidate
                else:
                    st.mode = _IN_CALL
                    st.tag_buffer = ""
                    self._consume_call_char(st, "<", collector)
                    pending.extendleft(reversed(candidate[1:]))

    @staticmethod
    def _start_call(st: PromptEngineeringStreamState) -> None:
        st.call_count += 1
        st.current = _PendingCall(id=f"{st.tool_call_id_prefix}_{st.call_count}")
        st.mode = _IN_CALL
        st.tag_buffer = ""
        st.call_buffer = ""

    @staticmethod
    def _consume_call_char(
        st: PromptEngineeringStreamState, ch: str, collector: _UpdateCollector
    ) -> None:
        call = cast(_PendingCall, st.current)
        st.call_buffer += ch
        call.track(ch)

        if call.in_arguments:
            call.args_text += ch
            collector.add_arguments(call, ch)
            if call.in_string:
                if call.escape:
                    call.escape = False
                elif ch == "\\":
                    call.escape = True
                elif ch == '"':
                    call.in_string = False
            elif ch == '"':
                call.in_string = True
            elif ch in "{[":
                call.depth += 1
            elif ch in "}]":
                call.depth -= 1
                if call.depth == 0:
                    call.args_done = True
            return

        if call.name is None:
            match = _NAME_RE.search(call.top_level)
            if match is None:
                return
            try:
                call.name = json.loads(f'"{match.group(1)}"')
            except json.JSONDecodeError:
                call.name = match.group(1)
            collector.add(StreamingToolCallUpdate(call.id, call.name or "", "", False))

        if not call.args_started:
            # Only a top-level brace that just arrived; an earlier one means the
            # parameters preceded the name and are reported on completion.
            if call.outer_depth == 2 and _ARGS_START_RE.search(st.call_buffer):
                call.args_started = True
                call.depth = 1
                call.args_text = "{"
                collector.add_arguments(call, "{")

    @staticmethod
    def _complete_call(st: PromptEngineeringStreamState, collector: _UpdateCollector) -> None:
        call = cast(_PendingCall, st.current)
        body = _extract_first_json_object(st.call_buffer)
        name = body.get("name") if body is not None else None
        if not isinstance(name, str) or not name:
            logger.debug(
                "%s", DecodeDegradation(f"Discarding malformed tool call: {st.call_buffer[:200]!r}")
            )
        else:
            params = body.get("parameters", body.get("arguments", {}))  # type: ignore[union-attr]
            if not isinstance(params, dict):
                params = {}
            if call.args_done and _is_json(call.args_text):
                arguments, closing = call.args_text, ""
            elif not call.args_text:
                arguments = closing = json.dumps(params, ensure_ascii=False)
            else:
                logger.debug(
                    "%s",
                    DecodeDegradation(f"Streamed arguments for {name} did not parse; using decoded object"),
                )
                arguments, closing = json.dumps(params, ensure_ascii=False), ""
            call.name = name
            st.tool_calls.append(ToolCall(id=call.id, name=name, arguments=arguments))
            collector.add(StreamingToolCallUpdate(call.id, name, closing, True))

        st.current = None
        st.call_buffer = ""
        st.tag_buffer = ""
        st.mode = _NORMAL

    def _recover_open_call(self, st: PromptEngineeringStreamState, collector: _UpdateCollector) -> None:
        """Complete a call cut off before its closing tag, closing any open JSON."""
        closers = _missing_closers(st.call_buffer)
        if closers is None:
            logger.debug(
                "%s", DecodeDegradation(f"Dropping unclosed tool call: {st.call_buffer[:200]!r}")
            )
            st.current = None
            st.call_buffer = ""
            st.tag_buffer = ""
            st.mode = _NORMAL
            return
        # A partial closing tag carries no call text.
        st.mode = _IN_CALL
        st.tag_buffer = ""
        for ch in closers:
            self._consume_call_char(st, ch, collector)
        logger.info("Recovering tool call cut off before %s (added %r)", CLOSE_TAG, closers)
        self._complete_call(st, collector)

    # -- finalization -----------------------------------------------------------

    def finalize_stream_processing(self, state: StreamProcessingState) -> ParsedModelResponse:
        st = cast(PromptEngineeringStreamState, state)
        if st.current is not None:
            self._recover_open_call(st, _UpdateCollector())
        content = st.display_content
        if st.mode == _TAG_OPEN:
            content += st.tag_buffer

        tool_calls = list(st.tool_calls)
        if not tool_calls and CLOSE_TAG in st.content_buffer:
            tool_calls, content = self._extract_blocks(st)

        return ParsedModelResponse(
            content=content,
            raw_content=st.content_buffer,
            reasoning_content=st.reasoning_buffer,
            tool_calls=tool_calls,
            finish_reason=finalize_finish_reason(st.finish_reason, tool_calls),
        )

    @staticmethod
    def _extract_blocks(st: PromptEngineeringStreamState) -> tuple[list[ToolCall], str]:
        """Whole-buffer fallback for blocks the lexer could not recognize."""
        tool_calls: list[ToolCall] = []
        for n, match in enumerate(_BLOCK_RE.finditer(st.content_buffer), start=1):
            body = _extract_first_json_object(match.group(1))
            if body is None or not isinstance(body.get("name"), str):
                continue
            params = body.get("parameters", body.get("arguments", {}))
            tool_calls.append(
                ToolCall(
                    id=f"{st.tool_call_id_prefix}_fallback_{n}",
                    name=body["name"],
                    arguments=json.dumps(params if isinstance(params, dict) else {}, ensure_ascii=False),
                )
            )
        if not tool_calls:
            return [], st.display_content
        return tool_calls, _BLOCK_RE.sub("", st.content_buffer).strip()

    # -- history ----------------------------------------------------------------

    def build_historical_assistant_message(self, event: AssistantMessageEvent) -> dict[str, Any]:
        return {"role": "assistant", "content": event.raw_content or event.content}

    def build_historical_tool_call_result_messages(
        self, results: list[MultimodalToolCallResult]
    ) -> list[dict[str, Any]]:
        return build_folded_tool_result_messages(results)
