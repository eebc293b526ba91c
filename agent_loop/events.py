"""Agent event envelopes (Pydantic).

Every observable step of a session is one immutable event carrying a unique
``id``, a ``type`` tag and a millisecond ``timestamp``. The built-in types form
a discriminated union on ``type``; callers can add their own with
:func:`register_event_type`.
"""

from __future__ import annotations

import time
import uuid
from typing import Annotated, Any, Literal, Mapping

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

STREAMING_EVENT_TYPES: frozenset[str] = frozenset(
    {
        "assistant_streaming_message",
        "assistant_streaming_thinking_message",
        "assistant_streaming_tool_call",
        "final_answer_streaming",
    }
)

# Events the model's history is built from. Trimming never evicts these.
CONVERSATION_EVENT_TYPES: frozenset[str] = frozenset(
    {
        "user_message",
        "assistant_message",
        "tool_call",
        "tool_result",
        "environment_input",
    }
)


def new_event_id() -> str:
    return uuid.uuid4().hex


def now_ms() -> int:
    return int(time.time() * 1000)


class AgentEventBase(BaseModel):
    """Fields shared by every event."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    id: str = Field(default_factory=new_event_id)
    type: str
    timestamp: int = Field(default_factory=now_ms)


# ---------------------------------------------------------------------------
# Conversation
# ---------------------------------------------------------------------------


class UserMessageEvent(AgentEventBase):
    type: Literal["user_message"] = "user_message"
    content: str | list[dict[str, Any]]


class AssistantMessageEvent(AgentEventBase):
    type: Literal["assistant_message"] = "assistant_message"
    content: str = ""
    raw_content: str | None = None
    tool_calls: list[dict[str, Any]] | None = None
    finish_reason: str | None = None
    message_id: str | None = None
    elapsed_ms: int | None = None


class AssistantThinkingMessageEvent(AgentEventBase):
    type: Literal["assistant_thinking_message"] = "assistant_thinking_message"
    content: str
    is_complete: bool = True
    message_id: str | None = None


class EnvironmentInputEvent(AgentEventBase):
    """Context injected by the environment (e.g. a screenshot) rather than typed by the user."""

    type: Literal["environment_input"] = "environment_input"
    content: str | list[dict[str, Any]]
    description: str | None = None


# ---------------------------------------------------------------------------
# Streaming deltas
# ---------------------------------------------------------------------------


class AssistantStreamingMessageEvent(AgentEventBase):
    type: Literal["assistant_streaming_message"] = "assistant_streaming_message"
    content: str
    is_complete: bool = False
    message_id: str | None = None


class AssistantStreamingThinkingMessageEvent(AgentEventBase):
    type: Literal["assistant_streaming_thinking_message"] = "assistant_streaming_thinking_message"
    content: str
    is_complete: bool = False
    message_id: str | None = None


class AssistantStreamingToolCallEvent(AgentEventBase):
    type: Literal["assistant_streaming_tool_call"] = "assistant_streaming_tool_call"
    tool_call_id: str
    tool_name: str
    arguments_delta: str
    is_complete: bool = False
    message_id: str | None = None


# ---------------------------------------------------------------------------
# Tools
# ---------------------------------------------------------------------------


class ToolCallEvent(AgentEventBase):
    type: Literal["tool_call"] = "tool_call"
    tool_call_id: str
    name: str
    arguments: dict[str, Any] = Field(default_factory=dict)
    start_time: int = Field(default_factory=now_ms)
    tool: dict[str, Any] | None = None


class ToolResultEvent(AgentEventBase):
    type: Literal["tool_result"] = "tool_result"
    tool_call_id: str
    name: str
    content: Any = None
    elapsed_ms: int = 0
    error: str | None = None


# ---------------------------------------------------------------------------
# Lifecycle, plans and answers
# ---------------------------------------------------------------------------


class SystemEvent(AgentEventBase):
    type: Literal["system"] = "system"
    level: Literal["info", "warning", "error"] = "info"
    message: str
    details: dict[str, Any] | None = None


class AgentRunStartEvent(AgentEventBase):
    type: Literal["agent_run_start"] = "agent_run_start"
    session_id: str
    model: str | None = None
    tool_call_engine: str | None = None


class AgentRunEndEvent(AgentEventBase):
    type: Literal["agent_run_end"] = "agent_run_end"
    session_id: str
    iterations: int = 0
    elapsed_ms: int = 0
    status: str = "idle"


class PlanStep(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    content: str
    done: bool = False


class PlanStartEvent(AgentEventBase):
    type: Literal["plan_start"] = "plan_start"
    session_id: str


class PlanUpdateEvent(AgentEventBase):
    type: Literal["plan_update"] = "plan_update"
    session_id: str
    steps: list[PlanStep] = Field(default_factory=list)


class PlanFinishEvent(AgentEventBase):
    type: Literal["plan_finish"] = "plan_finish"
    session_id: str
    summary: str = ""


class FinalAnswerEvent(AgentEventBase):
    type: Literal["final_answer"] = "final_answer"
    content: str
    title: str | None = None
    format: str | None = None
    message_id: str | None = None


class FinalAnswerStreamingEvent(AgentEventBase):
    type: Literal["final_answer_streaming"] = "final_answer_streaming"
    content: str
    is_complete: bool = False
    message_id: str | None = None


AgentEvent = Annotated[
    UserMessageEvent
    | AssistantMessageEvent
    | AssistantThinkingMessageEvent
    | EnvironmentInputEvent
    | AssistantStreamingMessageEvent
    | AssistantStreamingThinkingMessageEvent
    | AssistantStreamingToolCallEvent
    | ToolCallEvent
    | ToolResultEvent
    | SystemEvent
    | AgentRunStartEvent
    | AgentRunEndEvent
    | PlanStartEvent
    | PlanUpdateEvent
    | PlanFinishEvent
    | FinalAnswerEvent
    | FinalAnswerStreamingEvent,
    Field(discriminator="type"),
]

_AGENT_EVENT_ADAPTER: TypeAdapter[AgentEvent] = TypeAdapter(AgentEvent)

_EVENT_MODELS: dict[str, type[AgentEventBase]] = {
    model.model_fields["type"].default: model
    for model in (
        UserMessageEvent,
        AssistantMessageEvent,
        AssistantThinkingMessageEvent,
        EnvironmentInputEvent,
        AssistantStreamingMessageEvent,
        AssistantStreamingThinkingMessageEvent,
        AssistantStreamingToolCallEvent,
        ToolCallEvent,
        ToolResultEvent,
        SystemEvent,
        AgentRunStartEvent,
        AgentRunEndEvent,
        PlanStartEvent,
        PlanUpdateEvent,
        PlanFinishEvent,
        FinalAnswerEvent,
        FinalAnswerStreamingEvent,
    )
}
_BUILTIN_EVENT_TYPES: frozenset[str] = frozenset(_EVENT_MODELS)


def register_event_type(model: type[AgentEventBase]) -> type[AgentEventBase]:
    """Register a custom event model. Usable as a class decorator.

    The model's ``type`` field must have a string default, which becomes its tag.
    """
    type_field = model.model_fields.get("type")
    tag = type_field.default if type_field is not None else None
    if not isinstance(tag, str) or not tag:
        raise ValueError(f"{model.__name__} needs a string default for its 'type' field")
    if tag in _BUILTIN_EVENT_TYPES:
        raise ValueError(f"Event type {tag!r} is built in and can't be replaced")
    _EVENT_MODELS[tag] = model
    return model


def event_model_for(event_type: str) -> type[AgentEventBase]:
    try:
        return _EVENT_MODELS[event_type]
    except KeyError:
        raise ValueError(f"Unknown event type: {event_type!r}") from None


def validate_event(payload: Mapping[str, Any]) -> AgentEventBase:
    """Validate one event payload (e.g. a line from a trace) into its model."""
    event_type = payload.get("type")
    if isinstance(event_type, str) and event_type not in _BUILTIN_EVENT_TYPES:
        return event_model_for(event_type).model_validate(dict(payload))
    return _AGENT_EVENT_ADAPTER.validate_python(dict(payload))


__all__ = [
    "CONVERSATION_EVENT_TYPES",
    "STREAMING_EVENT_TYPES",
    "AgentEvent",
    "AgentEventBase",
    "AgentRunEndEvent",
    "AgentRunStartEvent",
    "AssistantMessageEvent",
    "AssistantStreamingMessageEvent",
    "AssistantStreamingThinkingMessageEvent",
    "AssistantStreamingToolCallEvent",
    "AssistantThinkingMessageEvent",
    "EnvironmentInputEvent",
    "FinalAnswerEvent",
    "FinalAnswerStreamingEvent",
    "PlanFinishEvent",
    "PlanStartEvent",
    "PlanStep",
    "PlanUpdateEvent",
    "SystemEvent",
    "ToolCallEvent",
    "ToolResultEvent",
    "UserMessageEvent",
    "event_model_for",
    "new_event_id",
    "now_ms",
    "register_event_type",
    "validate_event",
]
