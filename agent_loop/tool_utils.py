"""Tool definitions from plain Python functions, and the tool registry.

Usage:
    from agent_loop.tool_utils import ToolRegistry, callable_to_tool

    async def search(query: str, limit: int = 10) -> str:
        '''Search for entities.'''
        ...

    registry = ToolRegistry([search])
    registry.list_tools()   # [ToolDefinition(name="search", ...)]
"""

from __future__ import annotations

import inspect
import logging
import types
from typing import Any, Callable, Iterable, Union, get_args, get_origin, get_type_hints

from agent_loop.datatypes import ToolDefinition

logger = logging.getLogger(__name__)

_SCALAR_SCHEMAS: dict[type, str] = {
    bool: "boolean",
    int: "integer",
    float: "number",
    str: "string",
}
_SKIPPED_KINDS = (inspect.Parameter.VAR_POSITIONAL, inspect.Parameter.VAR_KEYWORD)


def _schema_for(annotation: Any) -> dict[str, Any]:
    """JSON Schema fragment for a parameter annotation.

    Handles str, int, float, bool, list[X], dict, Optional[X] and Any.
    """
    if annotation is Any:
        return {}
    origin = get_origin(annotation)
    members = get_args(annotation)

    if origin in (Union, types.UnionType):
        # Optional[X]: models omit the argument rather than send null.
        concrete = [m for m in members if m is not type(None)]
        if len(concrete) == 1:
            return _schema_for(concrete[0])
    elif annotation is list or origin is list:
        return {"type": "array", "items": _schema_for(members[0])} if members else {"type": "array"}
    elif annotation is dict or origin is dict:
        return {"type": "object"}
    elif annotation in _SCALAR_SCHEMAS:
        return {"type": _SCALAR_SCHEMAS[annotation]}

    raise ValueError(
        f"Unsupported type annotation: {annotation!r} "
        "(expected str, int, float, bool, list[X], dict, Optional[X] or Any)"
    )


def _description_of(fn: Callable[..., Any]) -> str:
    explicit = getattr(fn, "__tool_description__", None)
    if isinstance(explicit, str) and explicit.strip():
        return explicit.strip()
    doc = inspect.getdoc(fn)
    return doc.splitlines()[0].strip() if doc else ""


def _parameters_schema(fn: Callable[..., Any]) -> dict[str, Any]:
    try:
        hints = get_type_hints(fn)
    except (NameError, TypeError):
        hints = {}

    properties: dict[str, Any] = {}
    required: list[str] = []
    for pname, param in inspect.signature(fn).parameters.items():
        if pname in ("self", "cls") or param.kind in _SKIPPED_KINDS:
            continue
        if pname not in hints:
            raise ValueError(
                f"Parameter {pname!r} of {fn.__name__!r} has no type annotation; "
                "tool parameters need annotations to build a schema"
            )
        prop = _schema_for(hints[pname])
        if param.default is inspect.Parameter.empty:
            required.append(pname)
        else:
            prop["default"] = param.default
        properties[pname] = prop

    schema: dict[str, Any] = {"type": "object", "properties": properties}
    if required:
        schema["required"] = required
    return schema


def callable_to_tool(fn: Callable[..., Any], *, name: str | None = None) -> ToolDefinition:
    """Build a ToolDefinition from a typed sync or async callable.

    The description is ``fn.__tool_description__`` when set, else the first
    docstring line.

    Raises:
        ValueError: If a parameter is unannotated or has an unsupported type.
    """
    return ToolDefinition(
        name=name or fn.__name__,
        description=_description_of(fn),
        parameters=_parameters_schema(fn),
        function=fn,
    )


ToolLike = Union[ToolDefinition, Callable[..., Any]]


class ToolRegistry:
    """Name → ToolDefinition map; the only source of functions the tool processor runs."""

    def __init__(self, tools: Iterable[ToolLike] = ()) -> None:
        self._tools: dict[str, ToolDefinition] = {}
        for tool in tools:
            self.register(tool)

    def register(self, tool: ToolLike) -> ToolDefinition:
        """Add a tool. Plain callables are converted with :func:`callable_to_tool`.

        Raises:
            ValueError: If a tool with the same name is already registered.
        """
        definition = tool if isinstance(tool, ToolDefinition) else callable_to_tool(tool)
        if definition.name in self._tools:
            raise ValueError(
                f"Duplicate tool name {definition.name!r}: "
                f"{self._tools[definition.name].function!r} and {definition.function!r}."
            )
        self._tools[definition.name] = definition
        logger.debug("Registered tool %s", definition.name)
        return definition

    def unregister(self, name: str) -> None:
        self._tools.pop(name, None)

    def get(self, name: str) -> ToolDefinition | None:
        return self._tools.get(name)

    def list_tools(self) -> list[ToolDefinition]:
        return list(self._tools.values())

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)
