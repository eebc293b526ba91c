"""Agent loop over litellm with pluggable tool call engines.

The same loop drives any model: pick how tool calls are encoded on the wire
(native function calling, ``<tool_call>`` markup in plain text, or a JSON
envelope) by changing the engine name. Everything else stays the same.

Usage:
    from agent_loop import AgentLoopRunner, LoopConfig

    async def search(query: str, limit: int = 5) -> list[str]:
        '''Search the knowledge base.'''
        ...

    runner = AgentLoopRunner(
        tools=[search],
        config=LoopConfig(model="gpt-4o", tool_call_engine="native"),
    )
    final = await runner.execute("Find docs about retries")
    print(final.content, final.finish_reason)

    # Streaming
    async for event in runner.execute_streaming("Summarize them"):
        if event.type == "assistant_streaming_message":
            print(event.content, end="")

    # Tracing requests/responses to JSONL
    from agent_loop import merge_hooks, trace_hooks
    runner = AgentLoopRunner(tools=[search], hooks=merge_hooks(trace_hooks()))
"""

from agent_loop.abort import AbortSignal
from agent_loop.config import LoopConfig
from agent_loop.datatypes import (
    FinishReason,
    LoopTerminationCheckResult,
    MultimodalToolCallResult,
    ParsedModelResponse,
    PrepareRequestContext,
    PrepareRequestResult,
    StreamChunkResult,
    StreamingToolCallUpdate,
    StreamProcessingState,
    ToolCall,
    ToolCallResult,
    ToolDefinition,
)
from agent_loop.engines import (
    NativeToolCallEngine,
    PromptEngineeringToolCallEngine,
    StructuredOutputsToolCallEngine,
    ToolCallEngine,
    ToolCallEngineKind,
    available_tool_call_engines,
    create_tool_call_engine,
    register_tool_call_engine,
    unregister_tool_call_engine,
)
from agent_loop.errors import (
    AbortError,
    AgentLoopError,
    DecodeDegradation,
    HookError,
    ToolExecutionError,
    TransportAuthError,
    TransportContentFilterError,
    TransportError,
    TransportModelNotFoundError,
    TransportRateLimitError,
    TransportTransientError,
    classify_error,
    wrap_error,
)
from agent_loop.event_stream import EventStream, Subscription
from agent_loop.events import (
    AgentEvent,
    AgentEventBase,
    AssistantMessageEvent,
    register_event_type,
    validate_event,
)
from agent_loop.hooks import AgentHooks, merge_hooks
from agent_loop.io_log import trace_hooks
from agent_loop.message_history import MessageHistory
from agent_loop.partial_json import PartialJSON, parse_partial_json
from agent_loop.prompts import PromptTemplate, load_template, render_prompt, render_system_prompt
from agent_loop.runner import AgentLoopRunner, Session
from agent_loop.tool_processor import ToolProcessor
from agent_loop.tool_utils import ToolRegistry, callable_to_tool
from agent_loop.transport import LiteLLMTransport, ModelTransport

__all__ = [
    "AbortError",
    "AbortSignal",
    "AgentEvent",
    "AgentEventBase",
    "AgentHooks",
    "AgentLoopError",
    "AgentLoopRunner",
    "AssistantMessageEvent",
    "DecodeDegradation",
    "EventStream",
    "FinishReason",
    "HookError",
    "LiteLLMTransport",
    "LoopConfig",
    "LoopTerminationCheckResult",
    "MessageHistory",
    "ModelTransport",
    "MultimodalToolCallResult",
    "NativeToolCallEngine",
    "ParsedModelResponse",
    "PartialJSON",
    "PrepareRequestContext",
    "PrepareRequestResult",
    "PromptEngineeringToolCallEngine",
    "PromptTemplate",
    "Session",
    "StreamChunkResult",
    "StreamProcessingState",
    "StreamingToolCallUpdate",
    "StructuredOutputsToolCallEngine",
    "Subscription",
    "ToolCall",
    "ToolCallEngine",
    "ToolCallEngineKind",
    "ToolCallResult",
    "ToolDefinition",
    "ToolExecutionError",
    "ToolProcessor",
    "ToolRegistry",
    "TransportAuthError",
    "TransportContentFilterError",
    "TransportError",
    "TransportModelNotFoundError",
    "TransportRateLimitError",
    "TransportTransientError",
    "available_tool_call_engines",
    "callable_to_tool",
    "classify_error",
    "create_tool_call_engine",
    "load_template",
    "merge_hooks",
    "parse_partial_json",
    "register_event_type",
    "register_tool_call_engine",
    "render_prompt",
    "render_system_prompt",
    "trace_hooks",
    "unregister_tool_call_engine",
    "validate_event",
    "wrap_error",
]
