"""Core records shared by engines, the tool processor and the loop runner."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Callable, Literal

# ---------------------------------------------------------------------------
# Finish reasons
# ---------------------------------------------------------------------------

FinishReason = Literal["stop", "length", "tool_calls", "content_filter", "error", "abort"]

FINISH_REASONS: frozenset[str] = frozenset(
    {"stop", "length", "tool_calls", "content_filter", "error", "abort"}
)

_FINISH_REASON_ALIASES: dict[str, str] = {
    "function_call": "tool_calls",
    "tool_use": "tool_calls",
    "end_turn": "stop",
    "stop_sequence": "stop",
    "max_tokens": "length",
    "safety": "content_filter",
}


def normalize_finish_reason(raw: str | None) -> FinishReason:
    """Map a provider finish signal onto the closed finish-reason set.

    Missing or unrecognized values become ``"stop"``.
    """
    if not raw:
        return "stop"
    value = str(raw).strip().lower()
    value = _FINISH_REASON_ALIASES.get(value, value)
    if value in FINISH_REASONS:
        return value  # type: ignore[return-value]
    return "stop"


SessionStatus = Literal["idle", "executing", "aborted", "error"]


# ---------------------------------------------------------------------------
# Tools
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ToolDefinition:
    """A named, schema-described callable the model may invoke.

    ``function`` is called with the decoded arguments as keyword arguments and
    may be sync or async.
    """

    name: str
    description: str
    parameters: dict[str, Any]
    function: Callable[..., Any]

    def to_openai_tool(self) -> dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }


@dataclass(frozen=True)
class ToolCall:
    """A finalized tool invocation. ``arguments`` is a JSON object string."""

    id: str
    name: str
    arguments: str

    def parsed_arguments(self) -> dict[str, Any]:
        """Decode ``arguments``; invalid or non-object JSON yields ``{}``."""
        try:
            value = json.loads(self.arguments) if self.arguments else {}
        except json.JSONDecodeError:
            return {}
        return value if isinstance(value, dict) else {}

    def to_openai(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": self.arguments},
        }


@dataclass
class ToolCallResult:
    """Outcome of one tool call, correlated to the call by ``tool_call_id``."""

    tool_call_id: str
    tool_name: str
    content: Any
    error: str | None = None


@dataclass
class MultimodalToolCallResult:
    """A tool result converted to chat content parts for history serialization."""

    tool_call_id: str
    tool_name: str
    content: list[dict[str, Any]]


# ---------------------------------------------------------------------------
# Streaming decode
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class StreamingToolCallUpdate:
    tool_call_id: str
    tool_name: str
    arguments_delta: str
    is_complete: bool


@dataclass
class StreamChunkResult:
    """What one streamed chunk contributed."""

    content: str = ""
    reasoning_content: str = ""
    has_tool_call_update: bool = False
    tool_calls: list[ToolCall] = field(default_factory=list)
    streaming_tool_call_updates: list[StreamingToolCallUpdate] = field(default_factory=list)


@dataclass
class StreamProcessingState:
    """Per-request accumulator. Engines subclass this with their own cursors.

    ``tool_call_id_prefix`` seeds ids for tool calls the engine has to name
    itself (``<prefix>_<n>``); ids stay deterministic for a given prefix.
    """

    content_buffer: str = ""
    reasoning_buffer: str = ""
    tool_calls: list[ToolCall] = field(default_factory=list)
    finish_reason: str | None = None
    tool_call_id_prefix: str = "call"


@dataclass
class ParsedModelResponse:
    """Finalized result of one request/response cycle."""

    content: str = ""
    raw_content: str = ""
    reasoning_content: str = ""
    tool_calls: list[ToolCall] = field(default_factory=list)
    finish_reason: FinishReason = "stop"


def finalize_finish_reason(raw: str | None, tool_calls: list[ToolCall]) -> FinishReason:
    """Any tool call forces ``tool_calls`` regardless of what the transport said."""
    if tool_calls:
        return "tool_calls"
    return normalize_finish_reason(raw)


# ---------------------------------------------------------------------------
# Request shaping and loop control
# ---------------------------------------------------------------------------


@dataclass
class PrepareRequestContext:
    model: str
    messages: list[dict[str, Any]]
    tools: list[ToolDefinition] = field(default_factory=list)
    temperature: float = 0.7


@dataclass
class PrepareRequestResult:
    """Per-iteration override returned by the ``on_prepare_request`` hook."""

    system_prompt: str
    tools: list[ToolDefinition]


@dataclass
class LoopTerminationCheckResult:
    finished: bool
    message: str | None = None
