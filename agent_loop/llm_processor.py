"""One request/response cycle: shape, send, decode, finalize, report."""

from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from agent_loop.config import LoopConfig
from agent_loop.datatypes import ParsedModelResponse, PrepareRequestContext, ToolDefinition
from agent_loop.engines.base import ToolCallEngine
from agent_loop.errors import AbortError
from agent_loop.event_stream import EventStream
from agent_loop.events import (
    AssistantMessageEvent,
    AssistantStreamingMessageEvent,
    AssistantStreamingThinkingMessageEvent,
    AssistantStreamingToolCallEvent,
    AssistantThinkingMessageEvent,
    now_ms,
)
from agent_loop.hooks import AgentHooks, run_hook
from agent_loop.transport import ModelTransport

if TYPE_CHECKING:
    from agent_loop.runner import Session

logger = logging.getLogger(__name__)


def new_message_id() -> str:
    return f"msg_{now_ms()}_{uuid.uuid4().hex[:8]}"


def _unstreamed_suffix(streamed: str, final: str) -> str:
    """Part of ``final`` past what was streamed; empty when the final text was rewritten."""
    if len(final) > len(streamed) and final.startswith(streamed):
        return final[len(streamed) :]
    return ""


@dataclass
class LLMTurn:
    """Outcome of one request: the finalized response and its assistant event (if any)."""

    response: ParsedModelResponse
    message_id: str
    event: AssistantMessageEvent | None


class LLMProcessor:
    def __init__(
        self,
        engine: ToolCallEngine,
        transport: ModelTransport,
        event_stream: EventStream,
        config: LoopConfig,
        hooks: AgentHooks | None = None,
    ) -> None:
        self.engine = engine
        self.transport = transport
        self.event_stream = event_stream
        self.config = config
        self.hooks = hooks

    async def process_request(
        self,
        session: Session,
        messages: list[dict[str, Any]],
        tools: list[ToolDefinition],
    ) -> LLMTurn:
        """Run one streamed request through the engine.

        Raises:
            AbortError: If the session is aborted before or during the stream.
            TransportError: If the transport fails.
        """
        signal = session.abort_signal
        message_id = new_message_id()
        request = self.engine.prepare_request(
            PrepareRequestContext(
                model=self.config.model,
                messages=messages,
                tools=tools,
                temperature=self.config.temperature,
            )
        )
        await run_hook(self.hooks, "on_llm_request", session.id, request)
        signal.raise_if_aborted()

        state = self.engine.init_stream_processing_state()
        state.tool_call_id_prefix = f"call_{message_id.rsplit('_', 1)[-1]}"
        chunks: list[Any] = []
        streamed: list[str] = []
        start = time.monotonic()
        logger.debug(
            "Iteration %d: requesting %s via %s engine (%d messages, %d tools)",
            session.iteration,
            self.config.model,
            self.engine.name,
            len(messages),
            len(tools),
        )

        async for chunk in self.transport.stream(request, signal):
            if signal.aborted:
                raise AbortError(signal.reason or "Request was aborted")
            chunks.append(chunk)
            result = self.engine.process_streaming_chunk(chunk, state)
            if result.reasoning_content:
                self.event_stream.send_event(
                    AssistantStreamingThinkingMessageEvent(
                        content=result.reasoning_content, message_id=message_id
                    )
                )
            if result.content:
                streamed.append(result.content)
                self.event_stream.send_event(
                    AssistantStreamingMessageEvent(content=result.content, message_id=message_id)
                )
            if self.config.enable_streaming_tool_call_events:
                for update in result.streaming_tool_call_updates:
                    self.event_stream.send_event(
                        AssistantStreamingToolCallEvent(
                            tool_call_id=update.tool_call_id,
                            tool_name=update.tool_name,
                            arguments_delta=update.arguments_delta,
                            is_complete=update.is_complete,
                            message_id=message_id,
                        )
                    )

        response = self.engine.finalize_stream_processing(state)
        # Text an engine held back (e.g. a trailing "<") surfaces only at finalize.
        leftover = _unstreamed_suffix("".join(streamed), response.content)
        if leftover:
            self.event_stream.send_event(
                AssistantStreamingMessageEvent(content=leftover, message_id=message_id)
            )
        elapsed_ms = int((time.monotonic() - start) * 1000)
        await run_hook(self.hooks, "on_llm_streaming_response", session.id, chunks)
        await run_hook(self.hooks, "on_llm_response", session.id, response)
        logger.debug(
            "Iteration %d: %d chunks, %d tool call(s), finish_reason=%s, %dms",
            session.iteration,
            len(chunks),
            len(response.tool_calls),
            response.finish_reason,
            elapsed_ms,
        )

        if response.reasoning_content:
            self.event_stream.send_event(
                AssistantThinkingMessageEvent(
                    content=response.reasoning_content, message_id=message_id
                )
            )

        event: AssistantMessageEvent | None = None
        if response.content or response.tool_calls:
            event = AssistantMessageEvent(
                content=response.content,
                raw_content=response.raw_content,
                tool_calls=[tc.to_openai() for tc in response.tool_calls] or None,
                finish_reason=response.finish_reason,
                message_id=message_id,
                elapsed_ms=elapsed_ms,
            )
            self.event_stream.send_event(event)
        return LLMTurn(response=response, message_id=message_id, event=event)
