"""Tool call engine contract and helpers shared by the built-in variants.

An engine owns one model output encoding end to end: how tools are described
to the model, how the request is shaped, how streamed chunks are decoded into
content and tool calls, and how a finished turn is written back into history.
"""

from __future__ import annotations

import abc
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Mapping

from agent_loop.datatypes import (
    MultimodalToolCallResult,
    ParsedModelResponse,
    PrepareRequestContext,
    StreamChunkResult,
    StreamProcessingState,
    ToolDefinition,
)
from agent_loop.events import AssistantMessageEvent

logger = logging.getLogger(__name__)


class ToolCallEngine(abc.ABC):
    """Strategy for one model output encoding.

    ``process_streaming_chunk`` must never raise on malformed input and
    ``finalize_stream_processing`` must give the same result however the
    byte stream was split into chunks.
    """

    name: str = "custom"

    @abc.abstractmethod
    def prepare_prompt(self, instructions: str, tools: list[ToolDefinition]) -> str:
        """Return the system prompt, with tool/format instructions if this encoding needs them."""

    @abc.abstractmethod
    def prepare_request(self, context: PrepareRequestContext) -> dict[str, Any]:
        """Return transport request kwargs (model, messages, temperature, stream, ...)."""

    @abc.abstractmethod
    def init_stream_processing_state(self) -> StreamProcessingState:
        ...

    @abc.abstractmethod
    def process_streaming_chunk(
        self, chunk: Any, state: StreamProcessingState
    ) -> StreamChunkResult:
        ...

    @abc.abstractmethod
    def finalize_stream_processing(self, state: StreamProcessingState) -> ParsedModelResponse:
        ...

    @abc.abstractmethod
    def build_historical_assistant_message(self, event: AssistantMessageEvent) -> dict[str, Any]:
        ...

    @abc.abstractmethod
    def build_historical_tool_call_result_messages(
        self, results: list[MultimodalToolCallResult]
    ) -> list[dict[str, Any]]:
        ...


# ---------------------------------------------------------------------------
# Chunk access
# ---------------------------------------------------------------------------


@dataclass
class ChunkDelta:
    """The parts of one OpenAI-style streaming chunk an engine cares about."""

    content: str = ""
    reasoning_content: str = ""
    tool_calls: list[Any] = field(default_factory=list)
    finish_reason: str | None = None


def field_of(obj: Any, name: str) -> Any:
    """Read ``name`` from a mapping or an attribute-style object; None if absent."""
    if obj is None:
        return None
    if isinstance(obj, Mapping):
        return obj.get(name)
    return getattr(obj, name, None)


def _as_text(value: Any) -> str:
    return value if isinstance(value, str) else ""


def read_chunk(chunk: Any) -> ChunkDelta:
    """Extract content, reasoning, tool-call deltas and finish signal from a chunk.

    Accepts litellm ``ModelResponseStream`` objects and plain dicts. Anything
    unreadable yields an empty delta.
    """
    try:
        choices = field_of(chunk, "choices") or []
        if not choices:
            return ChunkDelta()
        choice = choices[0]
        delta = field_of(choice, "delta")
        tool_calls = field_of(delta, "tool_calls") or []
        finish_reason = field_of(choice, "finish_reason")
        return ChunkDelta(
            content=_as_text(field_of(delta, "content")),
            reasoning_content=_as_text(field_of(delta, "reasoning_content")),
            tool_calls=list(tool_calls) if isinstance(tool_calls, (list, tuple)) else [],
            finish_reason=finish_reason if isinstance(finish_reason, str) else None,
        )
    except (TypeError, IndexError, KeyError, AttributeError):
        logger.debug("Unreadable stream chunk: %r", chunk, exc_info=True)
        return ChunkDelta()


def base_request(context: PrepareRequestContext) -> dict[str, Any]:
    return {
        "model": context.model,
        "messages": context.messages,
        "temperature": context.temperature,
        "stream": True,
    }


# ---------------------------------------------------------------------------
# History helpers
# ---------------------------------------------------------------------------


def split_content_parts(parts: list[dict[str, Any]]) -> tuple[str, list[dict[str, Any]]]:
    """Separate text parts (joined) from image parts."""
    texts: list[str] = []
    images: list[dict[str, Any]] = []
    for part in parts:
        if part.get("type") == "image_url":
            images.append(part)
        elif part.get("type") == "text":
            texts.append(str(part.get("text", "")))
        else:
            texts.append(json.dumps(part, ensure_ascii=False, default=str))
    return "\n".join(texts), images


def build_folded_tool_result_messages(
    results: list[MultimodalToolCallResult],
) -> list[dict[str, Any]]:
    """Tool results as plain user turns, for encodings without a tool role."""
    messages: list[dict[str, Any]] = []
    for result in results:
        text, images = split_content_parts(result.content)
        body = f"Tool: {result.tool_name}\nResult:\n{text}"
        if images:
            messages.append({"role": "user", "content": [{"type": "text", "text": body}, *images]})
        else:
            messages.append({"role": "user", "content": body})
    return messages
