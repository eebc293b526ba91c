"""YAML/Jinja2 prompt templates.

The tool-format instructions that the prompt-engineering and
structured-outputs engines put into the system prompt are packaged as YAML
files under ``templates/``. A template is either a packaged name
(``"prompt_engineering"``) or a path to your own YAML file.

YAML format::

    name: prompt_engineering_tools
    version: "1.0"
    description: Inline <tool_call> markup instructions
    messages:
      - role: system
        content: |
          {{ instructions }}
          {% for tool in tools %}
          ## {{ tool.name }}
          {% endfor %}

Usage::

    from agent_loop.prompts import render_prompt, render_system_prompt

    messages = render_prompt("prompts/review.yaml", diff=diff_text)
    system = render_system_prompt("structured_outputs", instructions="Be brief.", tools_json="[]")
"""

from __future__ import annotations

import functools
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml  # type: ignore[import-untyped]
from jinja2 import BaseLoader, Environment, StrictUndefined, Template, TemplateNotFound

logger = logging.getLogger(__name__)

BUILTIN_TEMPLATES_DIR = Path(__file__).parent / "templates"


class _InlineLoader(BaseLoader):
    """Templates are compiled from YAML strings; no include/extends lookups."""

    def get_source(
        self, environment: Environment, template: str
    ) -> tuple[str, str | None, None]:
        raise TemplateNotFound(template)


# StrictUndefined: a variable missing from the context raises.
_env = Environment(loader=_InlineLoader(), undefined=StrictUndefined)


@dataclass(frozen=True)
class PromptTemplate:
    """A parsed YAML template with its message contents compiled."""

    name: str
    version: str | None
    description: str | None
    path: Path
    messages: tuple[tuple[str, Template], ...]

    def render(self, **context: Any) -> list[dict[str, str]]:
        rendered = [
            {"role": role, "content": template.render(**context).strip()}
            for role, template in self.messages
        ]
        logger.debug(
            "Rendered template %s (%d messages, %d chars)",
            self.name,
            len(rendered),
            sum(len(m["content"]) for m in rendered),
        )
        return rendered


def resolve_template_path(template: str | Path) -> Path:
    """Map a packaged template name or a filesystem path to a YAML file path."""
    if isinstance(template, str) and "/" not in template and not template.endswith((".yaml", ".yml")):
        return BUILTIN_TEMPLATES_DIR / f"{template}.yaml"
    path = Path(template)
    return path if path.is_absolute() else Path.cwd() / path


@functools.lru_cache(maxsize=64)
def _load(path: Path) -> PromptTemplate:
    if not path.exists():
        raise FileNotFoundError(f"Prompt template not found: {path}")
    raw = yaml.safe_load(path.read_text(encoding="utf-8"))
    if not isinstance(raw, dict):
        raise ValueError(f"Prompt YAML must be a mapping, got {type(raw).__name__}: {path}")

    entries = raw.get("messages")
    if not entries:
        raise ValueError(f"Prompt YAML missing 'messages' key: {path}")
    if not isinstance(entries, list):
        raise ValueError(f"'messages' must be a list, got {type(entries).__name__}: {path}")

    compiled: list[tuple[str, Template]] = []
    for i, entry in enumerate(entries):
        if not isinstance(entry, dict) or "role" not in entry or "content" not in entry:
            raise ValueError(f"Message {i} must have 'role' and 'content' keys: {path}")
        compiled.append((str(entry["role"]), _env.from_string(str(entry["content"]))))

    version = raw.get("version")
    return PromptTemplate(
        name=str(raw.get("name") or path.stem),
        version=str(version) if version is not None else None,
        description=raw.get("description"),
        path=path,
        messages=tuple(compiled),
    )


def load_template(template: str | Path) -> PromptTemplate:
    """Parse and compile a template. Results are cached per resolved path.

    Raises:
        FileNotFoundError: If the file doesn't exist.
        yaml.YAMLError: If the YAML is malformed.
        ValueError: If the YAML structure is invalid (no messages, bad entries).
    """
    return _load(resolve_template_path(template))


def render_prompt(template: str | Path, **context: Any) -> list[dict[str, str]]:
    """Render a template into chat messages: ``[{"role": ..., "content": ...}]``.

    Raises:
        jinja2.UndefinedError: If a template variable is missing from ``context``,
            plus everything :func:`load_template` raises.
    """
    return load_template(template).render(**context)


def render_system_prompt(template: str | Path, **context: Any) -> str:
    """Render a template and join its system message contents."""
    parts = [m["content"] for m in render_prompt(template, **context) if m["role"] == "system"]
    if not parts:
        raise ValueError(f"Prompt {template!s} has no system message")
    return "\n\n".join(parts)
