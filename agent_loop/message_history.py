"""Projection of the event stream into the messages the bound engine expects.

The projection is rebuilt from the event log on every iteration, so history
always reflects exactly what happened in the session. Streaming deltas,
system notices, plan and run lifecycle events never reach the model.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime
from typing import Any

from agent_loop.datatypes import MultimodalToolCallResult, ToolDefinition
from agent_loop.engines.base import ToolCallEngine
from agent_loop.event_stream import EventStream
from agent_loop.events import (
    AgentEventBase,
    AssistantMessageEvent,
    EnvironmentInputEvent,
    ToolResultEvent,
    UserMessageEvent,
)

logger = logging.getLogger(__name__)

IMAGE_PLACEHOLDER = "[Image omitted to conserve context]"


def _is_image(value: Any) -> bool:
    return isinstance(value, dict) and (
        value.get("type") == "image_url"
        or (value.get("type") == "image" and isinstance(value.get("data"), str))
    )


def _image_part(value: dict[str, Any]) -> dict[str, Any]:
    if value.get("type") == "image_url":
        return value
    mime = value.get("mimeType") or value.get("mime_type") or "image/png"
    return {"type": "image_url", "image_url": {"url": f"data:{mime};base64,{value['data']}"}}


def tool_result_to_parts(content: Any) -> list[dict[str, Any]]:
    """Convert raw tool output into chat content parts.

    Images (``{"type": "image", "data": <base64>, "mimeType": ...}`` or
    ``image_url`` parts), at the top level, inside a list, or as values of a
    dict, become image parts. Everything else is serialized as text with the
    image payloads left out.
    """
    if isinstance(content, str):
        return [{"type": "text", "text": content}]
    if _is_image(content):
        return [_image_part(content)]

    images: list[dict[str, Any]] = []
    rest: Any = content
    if isinstance(content, list):
        images = [_image_part(item) for item in content if _is_image(item)]
        rest = [item for item in content if not _is_image(item)]
        if images and len(rest) == 1:
            rest = rest[0]
    elif isinstance(content, dict):
        images = [_image_part(v) for v in content.values() if _is_image(v)]
        rest = {k: v for k, v in content.items() if not _is_image(v)}

    parts: list[dict[str, Any]] = []
    if not images or rest not in ([], {}):
        text = rest if isinstance(rest, str) else json.dumps(rest, ensure_ascii=False, indent=2, default=str)
        parts.append({"type": "text", "text": text})
    parts.extend(images)
    return parts


def _user_content(event: UserMessageEvent | EnvironmentInputEvent) -> str | list[dict[str, Any]]:
    content = event.content
    description = getattr(event, "description", None)
    if not description:
        return content if isinstance(content, str) else list(content)
    if isinstance(content, str):
        return f"{description}\n\n{content}"
    return [{"type": "text", "text": description}, *content]


class MessageHistory:
    """Builds the role-tagged message list for one iteration.

    Args:
        event_stream: The session's event log.
        max_images: Keep at most this many images (newest first); older ones
            are replaced by a text placeholder. None keeps all.
    """

    def __init__(self, event_stream: EventStream, max_images: int | None = None) -> None:
        self.event_stream = event_stream
        self.max_images = max_images

    def to_messages(
        self,
        engine: ToolCallEngine,
        system_prompt: str,
        tools: list[ToolDefinition] | None = None,
        *,
        now: datetime | None = None,
    ) -> list[dict[str, Any]]:
        current = now or datetime.now().astimezone()
        system = engine.prepare_prompt(system_prompt, tools or [])
        system += f"\n\nCurrent time: {current.strftime('%Y-%m-%d %H:%M:%S %Z').strip()}"
        messages: list[dict[str, Any]] = [{"role": "system", "content": system}]

        events = self.event_stream.get_events()
        for idx, event in enumerate(events):
            if isinstance(event, (UserMessageEvent, EnvironmentInputEvent)):
                messages.append({"role": "user", "content": _user_content(event)})
            elif isinstance(event, AssistantMessageEvent):
                if event.finish_reason in ("error", "abort"):
                    continue
                messages.append(engine.build_historical_assistant_message(event))
                results = self._results_for(event, events[idx + 1 :])
                if results:
                    messages.extend(engine.build_historical_tool_call_result_messages(results))

        if self.max_images is not None:
            self._limit_images(messages, self.max_images)
        return messages

    @staticmethod
    def _results_for(
        event: AssistantMessageEvent, later: list[AgentEventBase]
    ) -> list[MultimodalToolCallResult]:
        if not event.tool_calls:
            return []
        wanted = [tc.get("id") for tc in event.tool_calls]
        by_id: dict[str, ToolResultEvent] = {}
        for other in later:
            if isinstance(other, AssistantMessageEvent):
                break
            if isinstance(other, ToolResultEvent) and other.tool_call_id in wanted:
                by_id.setdefault(other.tool_call_id, other)
        missing = [tc_id for tc_id in wanted if tc_id not in by_id]
        if missing:
            logger.debug("No tool_result yet for %s", missing)
        return [
            MultimodalToolCallResult(
                tool_call_id=result.tool_call_id,
                tool_name=result.name,
                content=tool_result_to_parts(result.content),
            )
            for tc_id in wanted
            if (result := by_id.get(tc_id)) is not None
        ]

    @staticmethod
    def _limit_images(messages: list[dict[str, Any]], max_images: int) -> None:
        """Keep the newest ``max_images`` image parts; replace the rest in place."""
        kept = 0
        omitted = 0
        for message in reversed(messages):
            content = message.get("content")
            if not isinstance(content, list):
                continue
            for pos in range(len(content) - 1, -1, -1):
                part = content[pos]
                if not isinstance(part, dict) or part.get("type") != "image_url":
                    continue
                if kept < max_images:
                    kept += 1
                else:
                    content[pos] = {"type": "text", "text": IMAGE_PLACEHOLDER}
                    omitted += 1
        if omitted:
            logger.debug("Replaced %d older image(s) with placeholders (max_images=%d)", omitted, max_images)
