"""Tool call engines and the factory that selects one.

Usage::

    from agent_loop.engines import ToolCallEngineKind, create_tool_call_engine

    engine = create_tool_call_engine(ToolCallEngineKind.PROMPT_ENGINEERING)

Custom engines are registered by name and then selected like built-ins::

    register_tool_call_engine("my_markup", MyMarkupEngine)
    engine = create_tool_call_engine("my_markup")
"""

from __future__ import annotations

import enum
import logging
from typing import Callable

from agent_loop.engines.base import ToolCallEngine
from agent_loop.engines.native import NativeToolCallEngine
from agent_loop.engines.prompt_engineering import PromptEngineeringToolCallEngine
from agent_loop.engines.structured_outputs import StructuredOutputsToolCallEngine

logger = logging.getLogger(__name__)


class ToolCallEngineKind(str, enum.Enum):
    NATIVE = "native"
    PROMPT_ENGINEERING = "prompt_engineering"
    STRUCTURED_OUTPUTS = "structured_outputs"


EngineFactory = Callable[[], ToolCallEngine]

_BUILTIN_ENGINES: dict[str, EngineFactory] = {
    ToolCallEngineKind.NATIVE.value: NativeToolCallEngine,
    ToolCallEngineKind.PROMPT_ENGINEERING.value: PromptEngineeringToolCallEngine,
    ToolCallEngineKind.STRUCTURED_OUTPUTS.value: StructuredOutputsToolCallEngine,
}

_custom_engines: dict[str, EngineFactory] = {}


def register_tool_call_engine(name: str, factory: EngineFactory, *, replace: bool = False) -> None:
    """Register a constructor for a custom engine under ``name``.

    Raises:
        ValueError: If ``name`` is a built-in kind, or already registered and
            ``replace`` is False.
    """
    key = name.strip().lower()
    if not key:
        raise ValueError("Engine name must be non-empty")
    if key in _BUILTIN_ENGINES:
        raise ValueError(f"{key!r} is a built-in tool call engine")
    if key in _custom_engines and not replace:
        raise ValueError(f"Tool call engine {key!r} is already registered")
    _custom_engines[key] = factory
    logger.debug("Registered tool call engine %r", key)


def unregister_tool_call_engine(name: str) -> None:
    _custom_engines.pop(name.strip().lower(), None)


def available_tool_call_engines() -> list[str]:
    return [*_BUILTIN_ENGINES, *sorted(_custom_engines)]


def create_tool_call_engine(kind: ToolCallEngineKind | str | ToolCallEngine) -> ToolCallEngine:
    """Instantiate the engine for ``kind``; an engine instance is returned as-is."""
    if isinstance(kind, ToolCallEngine):
        return kind
    key = kind.value if isinstance(kind, ToolCallEngineKind) else str(kind).strip().lower()
    factory = _BUILTIN_ENGINES.get(key) or _custom_engines.get(key)
    if factory is None:
        raise ValueError(
            f"Unknown tool call engine {kind!r}. Available: {', '.join(available_tool_call_engines())}"
        )
    return factory()


__all__ = [
    "NativeToolCallEngine",
    "PromptEngineeringToolCallEngine",
    "StructuredOutputsToolCallEngine",
    "ToolCallEngine",
    "ToolCallEngineKind",
    "available_tool_call_engines",
    "create_tool_call_engine",
    "register_tool_call_engine",
    "unregister_tool_call_engine",
]
