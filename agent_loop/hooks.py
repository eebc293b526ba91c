"""Optional extension points of the agent loop.

Every hook is best-effort: an exception inside a hook is logged as a
:class:`~agent_loop.errors.HookError` and the loop carries on with the value
it had before the hook ran. Hooks may be plain functions or coroutine
functions.
"""

from __future__ import annotations

import inspect
import logging
from dataclasses import dataclass, fields
from typing import TYPE_CHECKING, Any, Callable

from agent_loop.errors import HookError

if TYPE_CHECKING:
    from agent_loop.datatypes import (
        LoopTerminationCheckResult,
        ParsedModelResponse,
        PrepareRequestResult,
        ToolCall,
        ToolCallResult,
        ToolDefinition,
    )
    from agent_loop.events import AssistantMessageEvent
    from agent_loop.runner import Session

logger = logging.getLogger(__name__)


@dataclass
class AgentHooks:
    """Callbacks fired at fixed points of each run.

    Set only the ones you need. A hook that returns ``None`` leaves the value
    it was offered unchanged.

    Example::

        hooks = AgentHooks(
            on_before_tool_call=lambda sid, call, args: {**args, "safe_mode": True},
            on_after_tool_call=lambda sid, call, result: result,
            on_agent_loop_end=lambda session: print(f"done after {session.iteration}"),
        )
        runner = AgentLoopRunner(tools=[search], hooks=hooks)

    Attributes:
        on_each_agent_loop_start: ``(session) → None``. Start of every iteration.
        on_prepare_request: ``(session, system_prompt, tools) → PrepareRequestResult | None``.
            Overrides the system prompt and tool list for this iteration only.
        on_llm_request: ``(session_id, request) → None``. Observes the outbound request.
        on_llm_streaming_response: ``(session_id, chunks) → None``. Observes raw chunks.
        on_llm_response: ``(session_id, response) → None``. Observes the ParsedModelResponse.
        on_process_tool_calls: ``(session_id, tool_calls) → list[ToolCallResult] | None``.
            Returning results skips real execution (mocking, replay).
        on_before_tool_call: ``(session_id, tool_call, args) → dict | None``. Rewrites arguments.
        on_after_tool_call: ``(session_id, tool_call, result) → Any | None``. Rewrites the result.
        on_tool_call_error: ``(session_id, tool_call, error) → Any | None``. Translates a
            tool exception into result content.
        on_before_loop_termination: ``(session, final_event) → LoopTerminationCheckResult | bool | None``.
            Decides whether the loop stops; default is "stop when no tools were called".
        on_each_agent_loop_end: ``(session) → None``. End of every iteration.
        on_agent_loop_end: ``(session) → None``. Exactly once per run, on every exit path.
    """

    on_each_agent_loop_start: Callable[[Session], Any] | None = None
    on_prepare_request: (
        Callable[[Session, str, list[ToolDefinition]], PrepareRequestResult | None] | None
    ) = None
    on_llm_request: Callable[[str, dict[str, Any]], Any] | None = None
    on_llm_streaming_response: Callable[[str, list[Any]], Any] | None = None
    on_llm_response: Callable[[str, ParsedModelResponse], Any] | None = None
    on_process_tool_calls: (
        Callable[[str, list[ToolCall]], list[ToolCallResult] | None] | None
    ) = None
    on_before_tool_call: Callable[[str, ToolCall, dict[str, Any]], dict[str, Any] | None] | None = None
    on_after_tool_call: Callable[[str, ToolCall, Any], Any] | None = None
    on_tool_call_error: Callable[[str, ToolCall, Exception], Any] | None = None
    on_before_loop_termination: (
        Callable[[Session, AssistantMessageEvent | None], LoopTerminationCheckResult | bool | None]
        | None
    ) = None
    on_each_agent_loop_end: Callable[[Session], Any] | None = None
    on_agent_loop_end: Callable[[Session], Any] | None = None


def merge_hooks(*hook_sets: AgentHooks | None) -> AgentHooks:
    """Combine several hook sets into one.

    For each hook point the callbacks run in the given order; the first
    non-None return value wins. A failing callback doesn't stop the others.
    """
    present = [h for h in hook_sets if h is not None]
    merged = AgentHooks()
    for f in fields(AgentHooks):
        callbacks = [getattr(h, f.name) for h in present if getattr(h, f.name) is not None]
        if not callbacks:
            continue
        if len(callbacks) == 1:
            setattr(merged, f.name, callbacks[0])
            continue

        async def _chained(*args: Any, _callbacks: list[Callable[..., Any]] = callbacks, _name: str = f.name) -> Any:
            winner = None
            for cb in _callbacks:
                value = await _invoke(_name, cb, args)
                if winner is None and value is not None:
                    winner = value
            return winner

        setattr(merged, f.name, _chained)
    return merged


async def _invoke(name: str, fn: Callable[..., Any], args: tuple[Any, ...]) -> Any:
    try:
        result = fn(*args)
        if inspect.isawaitable(result):
            result = await result
        return result
    except Exception as exc:
        err = HookError(f"Hook {name} failed: {type(exc).__name__}: {exc}", hook_name=name, original=exc)
        logger.warning("%s", err, exc_info=True)
        return None


async def run_hook(hooks: AgentHooks | None, name: str, *args: Any) -> Any:
    """Invoke hook ``name`` if set. Returns its value, or None when unset or failing."""
    if hooks is None:
        return None
    fn = getattr(hooks, name, None)
    if fn is None:
        return None
    return await _invoke(name, fn, args)
