"""The agent loop: iterate request → decode → tools until done.

Usage::

    from agent_loop import AgentLoopRunner, LoopConfig

    def get_weather(city: str) -> dict:
        '''Current weather for a city.'''
        return {"city": city, "temp_c": 21}

    runner = AgentLoopRunner(
        tools=[get_weather],
        config=LoopConfig(model="gpt-4o-mini", tool_call_engine="prompt_engineering"),
    )
    final = await runner.execute("What's the weather in Paris?")
    print(final.content, final.finish_reason)

    async for event in runner.execute_streaming("And in Rome?"):
        if event.type == "assistant_streaming_message":
            print(event.content, end="", flush=True)

Neither entry point raises for model, tool or hook failures: the outcome is
always a terminal ``assistant_message`` event whose ``finish_reason`` says how
the run ended.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Iterable

from agent_loop.abort import AbortSignal
from agent_loop.config import LoopConfig
from agent_loop.datatypes import (
    LoopTerminationCheckResult,
    PrepareRequestResult,
    SessionStatus,
)
from agent_loop.engines import ToolCallEngine, ToolCallEngineKind, create_tool_call_engine
from agent_loop.errors import AbortError, TransportError
from agent_loop.event_stream import EventStream
from agent_loop.events import (
    AgentEventBase,
    AgentRunEndEvent,
    AgentRunStartEvent,
    AssistantMessageEvent,
    SystemEvent,
    UserMessageEvent,
)
from agent_loop.hooks import AgentHooks, run_hook
from agent_loop.llm_processor import LLMProcessor, new_message_id
from agent_loop.message_history import MessageHistory
from agent_loop.tool_processor import ToolProcessor
from agent_loop.tool_utils import ToolLike, ToolRegistry
from agent_loop.transport import LiteLLMTransport, ModelTransport

logger = logging.getLogger(__name__)

ABORT_MESSAGE = "Request was aborted"
MAX_ITERATIONS_MESSAGE = "Sorry, I could not complete this task. Maximum iterations reached."
ERROR_MESSAGE_TEMPLATE = "Sorry, an error occurred while processing your request: {error}"

_DONE = object()


@dataclass
class Session:
    """State of one execution call. Created at run start, discarded at loop end.

    ``resources`` holds session-scoped handles (a browser, an operator) that
    tools close over, instead of module-level singletons.
    """

    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    iteration: int = 0
    status: SessionStatus = "idle"
    abort_signal: AbortSignal = field(default_factory=AbortSignal)
    resources: dict[str, Any] = field(default_factory=dict)


class AgentLoopRunner:
    """Drives one session at a time against a single bound tool call engine.

    Args:
        tools: ToolDefinitions or typed callables, or a ready ToolRegistry.
        config: Loop policy; defaults to ``LoopConfig.from_env()``.
        hooks: Optional AgentHooks.
        engine: Engine kind, registered name or instance; defaults to
            ``config.tool_call_engine``.
        transport: Model transport; defaults to LiteLLMTransport().
        event_stream: Event log shared across runs (multi-turn memory).
    """

    def __init__(
        self,
        *,
        tools: ToolRegistry | Iterable[ToolLike] = (),
        config: LoopConfig | None = None,
        hooks: AgentHooks | None = None,
        engine: ToolCallEngine | ToolCallEngineKind | str | None = None,
        transport: ModelTransport | None = None,
        event_stream: EventStream | None = None,
    ) -> None:
        self.config = config or LoopConfig.from_env()
        self.hooks = hooks
        self.tool_registry = tools if isinstance(tools, ToolRegistry) else ToolRegistry(tools)
        self.engine = create_tool_call_engine(engine or self.config.tool_call_engine)
        self.transport = transport or LiteLLMTransport()
        self.event_stream = event_stream or EventStream(max_events=self.config.max_events)
        self.message_history = MessageHistory(self.event_stream, max_images=self.config.max_images)
        self.tool_processor = ToolProcessor(self.event_stream, hooks)
        self.llm_processor = LLMProcessor(
            self.engine, self.transport, self.event_stream, self.config, hooks
        )
        self.session: Session | None = None
        self._termination_requested = False

    # -- control ----------------------------------------------------------------

    @property
    def is_executing(self) -> bool:
        return self.session is not None and self.session.status == "executing"

    def abort(self, reason: str = ABORT_MESSAGE) -> bool:
        """Abort the running session. Returns False when nothing is running."""
        if not self.is_executing:
            return False
        assert self.session is not None
        self.session.abort_signal.abort(reason)
        return True

    def request_loop_termination(self) -> bool:
        """Stop after the current iteration, using its response as the final answer."""
        if not self.is_executing:
            return False
        self._termination_requested = True
        return True

    def dispose(self) -> None:
        self.abort()
        self.event_stream.dispose()

    # -- entry points -------------------------------------------------------------

    async def execute(
        self,
        input: str | list[dict[str, Any]],
        *,
        abort_signal: AbortSignal | None = None,
    ) -> AssistantMessageEvent:
        """Run the loop to completion and return the terminal assistant event."""
        if self.is_executing:
            raise RuntimeError("AgentLoopRunner is already executing a session")
        session = Session(abort_signal=abort_signal or AbortSignal())
        session.status = "executing"
        self.session = session
        self._termination_requested = False
        start = time.monotonic()

        self.event_stream.send_event(
            AgentRunStartEvent(
                session_id=session.id,
                model=self.config.model,
                tool_call_engine=self.engine.name,
            )
        )
        self.event_stream.send_event(UserMessageEvent(content=input))
        logger.info(
            "Agent run %s started (model=%s, engine=%s, max_iterations=%d)",
            session.id,
            self.config.model,
            self.engine.name,
            self.config.max_iterations,
        )

        final = await self._run_loop(session)

        elapsed_ms = int((time.monotonic() - start) * 1000)
        self.event_stream.send_event(
            AgentRunEndEvent(
                session_id=session.id,
                iterations=session.iteration,
                elapsed_ms=elapsed_ms,
                status=session.status,
            )
        )
        logger.info(
            "Agent run %s finished: status=%s finish_reason=%s iterations=%d elapsed_ms=%d",
            session.id,
            session.status,
            final.finish_reason,
            session.iteration,
            elapsed_ms,
        )
        return final

    async def execute_streaming(
        self,
        input: str | list[dict[str, Any]],
        *,
        abort_signal: AbortSignal | None = None,
    ) -> AsyncIterator[AgentEventBase]:
        """Run the loop, yielding every event of this run as it is appended.

        Closing the iterator early aborts the run.
        """
        signal = abort_signal or AbortSignal()
        queue: asyncio.Queue[Any] = asyncio.Queue()
        subscription = self.event_stream.subscribe(queue.put_nowait)
        task = asyncio.ensure_future(self.execute(input, abort_signal=signal))
        task.add_done_callback(lambda _t: queue.put_nowait(_DONE))
        try:
            while True:
                item = await queue.get()
                if item is _DONE:
                    break
                yield item
            task.result()
        finally:
            subscription.cancel()
            if not task.done():
                signal.abort("Stream consumer closed")
                await asyncio.wait([task])

    # -- loop -------------------------------------------------------------------

    async def _run_loop(self, session: Session) -> AssistantMessageEvent:
        signal = session.abort_signal
        final: AssistantMessageEvent | None = None
        try:
            for iteration in range(1, self.config.max_iterations + 1):
                if signal.aborted:
                    raise AbortError(signal.reason or ABORT_MESSAGE)
                session.iteration = iteration
                final = await self._run_iteration(session)
                if final is not None:
                    break
            else:
                final = self._max_iterations_reached(session)
        except AbortError as exc:
            logger.info("Agent run %s aborted: %s", session.id, exc)
            session.status = "aborted"
            final = self._terminal_message(ABORT_MESSAGE, "abort")
        except TransportError as exc:
            logger.error("Agent run %s failed: %s: %s", session.id, type(exc).__name__, exc)
            session.status = "error"
            final = self._error_message(exc)
        except Exception as exc:
            logger.exception("Unexpected failure in agent run %s", session.id)
            session.status = "error"
            final = self._error_message(exc)
        else:
            session.status = "idle"
        finally:
            await run_hook(self.hooks, "on_agent_loop_end", session)
        assert final is not None
        return final

    async def _run_iteration(self, session: Session) -> AssistantMessageEvent | None:
        """One iteration. Returns the final event when the loop should stop."""
        signal = session.abort_signal
        await run_hook(self.hooks, "on_each_agent_loop_start", session)

        system_prompt = self.config.instructions
        tools = self.tool_registry.list_tools()
        override = await run_hook(self.hooks, "on_prepare_request", session, system_prompt, tools)
        if isinstance(override, PrepareRequestResult):
            system_prompt, tools = override.system_prompt, list(override.tools)

        messages = self.message_history.to_messages(self.engine, system_prompt, tools)
        turn = await self.llm_processor.process_request(session, messages, tools)

        tool_calls = turn.response.tool_calls
        if tool_calls:
            await self.tool_processor.process_tool_calls(
                tool_calls, tools, session_id=session.id, abort_signal=signal
            )

        finished = not tool_calls
        decision = await run_hook(self.hooks, "on_before_loop_termination", session, turn.event)
        if isinstance(decision, LoopTerminationCheckResult):
            finished = decision.finished
            if decision.message:
                self._system(decision.message, "info")
        elif isinstance(decision, bool):
            finished = decision
        if self._termination_requested:
            logger.info("Loop termination requested for %s", session.id)
            finished = True

        await run_hook(self.hooks, "on_each_agent_loop_end", session)

        if signal.aborted:
            raise AbortError(signal.reason or ABORT_MESSAGE)
        if not finished:
            return None
        if turn.event is not None:
            return turn.event
        # Empty response (no content, no tool calls): still report a final answer.
        return self._terminal_message("", turn.response.finish_reason)

    # -- terminal events ----------------------------------------------------------

    def _system(self, message: str, level: str, details: dict[str, Any] | None = None) -> None:
        self.event_stream.send_event(SystemEvent(level=level, message=message, details=details))

    def _terminal_message(self, content: str, finish_reason: str) -> AssistantMessageEvent:
        event = AssistantMessageEvent(
            content=content,
            finish_reason=finish_reason,
            message_id=new_message_id(),
        )
        self.event_stream.send_event(event)
        return event

    def _error_message(self, exc: Exception) -> AssistantMessageEvent:
        self._system(
            f"Error: {exc}",
            "error",
            {"error_type": type(exc).__name__},
        )
        return self._terminal_message(ERROR_MESSAGE_TEMPLATE.format(error=exc), "error")

    def _max_iterations_reached(self, session: Session) -> AssistantMessageEvent:
        logger.warning(
            "Agent run %s reached max_iterations=%d without a final answer",
            session.id,
            self.config.max_iterations,
        )
        self._system(
            f"Maximum iterations reached ({self.config.max_iterations}), forcing termination",
            "warning",
        )
        return self._terminal_message(MAX_ITERATIONS_MESSAGE, "length")

