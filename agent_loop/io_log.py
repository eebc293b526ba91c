"""Persistent JSONL traces of model requests and responses.

Appends one JSONL record per request and per finalized response to:
    {LOG_DIR}/traces.jsonl

Records are written by the observation hooks returned from
:func:`trace_hooks`, so tracing is opt-in per runner::

    runner = AgentLoopRunner(tools=[search], hooks=merge_hooks(my_hooks, trace_hooks()))

Configured via env vars:

    AGENT_LOOP_LOG_ENABLED  "1" (default) or "0" to disable
    AGENT_LOOP_LOG_DIR      directory (default: ~/.agent_loop/traces)

Or override at runtime via configure().
"""

from __future__ import annotations

import json
import logging
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from agent_loop.datatypes import ParsedModelResponse
from agent_loop.hooks import AgentHooks

logger = logging.getLogger(__name__)

TRACE_FILE = "traces.jsonl"

_enabled: bool = os.environ.get("AGENT_LOOP_LOG_ENABLED", "1") == "1"
_log_dir: Path = Path(
    os.environ.get("AGENT_LOOP_LOG_DIR", str(Path.home() / ".agent_loop" / "traces"))
)


def configure(*, enabled: bool | None = None, log_dir: str | Path | None = None) -> None:
    """Override logging config at runtime."""
    global _enabled, _log_dir
    if enabled is not None:
        _enabled = enabled
    if log_dir is not None:
        _log_dir = Path(log_dir)


def trace_path() -> Path:
    return _log_dir / TRACE_FILE


def _copy_messages(messages: Any) -> list[dict[str, Any]] | None:
    """Shallow-copy messages for storage (full content, no truncation)."""
    if not isinstance(messages, list):
        return None
    return [dict(m) for m in messages if isinstance(m, dict)]


def log_record(kind: str, session_id: str, payload: dict[str, Any]) -> None:
    """Append one JSONL record. Never raises; tracing must not break a run."""
    if not _enabled:
        return
    try:
        _log_dir.mkdir(parents=True, exist_ok=True)
        record = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "kind": kind,
            "session_id": session_id,
            **payload,
        }
        with open(trace_path(), "a") as f:
            f.write(json.dumps(record, default=str) + "\n")
    except Exception:
        logger.debug("io_log.log_record failed", exc_info=True)


def log_request(session_id: str, request: dict[str, Any]) -> None:
    log_record(
        "request",
        session_id,
        {
            "model": request.get("model"),
            "messages": _copy_messages(request.get("messages")),
            "n_tools": len(request.get("tools") or []),
            "response_format": request.get("response_format"),
        },
    )


def log_response(session_id: str, response: ParsedModelResponse) -> None:
    log_record(
        "response",
        session_id,
        {
            "content": response.content,
            "reasoning_content": response.reasoning_content,
            "tool_calls": [tc.to_openai() for tc in response.tool_calls],
            "finish_reason": response.finish_reason,
        },
    )


def trace_hooks() -> AgentHooks:
    """Observation hooks that write every request/response of a run to the trace file."""
    return AgentHooks(on_llm_request=log_request, on_llm_response=log_response)


def read_trace(session_id: str | None = None) -> list[dict[str, Any]]:
    """Load trace records, optionally only those of one session. Bad lines are skipped."""
    path = trace_path()
    if not path.exists():
        return []
    records: list[dict[str, Any]] = []
    with open(path) as f:
        for line in f:
            line = line.strip()
            if not line:
                continue
            try:
                record = json.loads(line)
            except json.JSONDecodeError:
                logger.debug("Skipping malformed trace line: %s", line[:200])
                continue
            if session_id is None or record.get("session_id") == session_id:
                records.append(record)
    return records
