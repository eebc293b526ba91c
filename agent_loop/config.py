"""Typed runtime configuration for agent_loop."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Literal

logger = logging.getLogger(__name__)

MODEL_ENV = "AGENT_LOOP_MODEL"
TOOL_CALL_ENGINE_ENV = "AGENT_LOOP_TOOL_CALL_ENGINE"
MAX_ITERATIONS_ENV = "AGENT_LOOP_MAX_ITERATIONS"
TEMPERATURE_ENV = "AGENT_LOOP_TEMPERATURE"
MAX_IMAGES_ENV = "AGENT_LOOP_MAX_IMAGES"
MAX_EVENTS_ENV = "AGENT_LOOP_MAX_EVENTS"
STREAMING_TOOL_CALL_EVENTS_ENV = "AGENT_LOOP_STREAMING_TOOL_CALL_EVENTS"

DEFAULT_MODEL = "gpt-4o-mini"
DEFAULT_INSTRUCTIONS = "You are a helpful assistant that can use the provided tools."
DEFAULT_MAX_ITERATIONS = 10
DEFAULT_TEMPERATURE = 0.7
DEFAULT_MAX_EVENTS = 1000

ToolCallEngineName = Literal["native", "prompt_engineering", "structured_outputs"]

_ENGINE_NAMES: frozenset[str] = frozenset({"native", "prompt_engineering", "structured_outputs"})
_TRUE = {"1", "true", "yes", "on", ""}
_FALSE = {"0", "false", "no", "off"}


def _positive_int_env(name: str, default: int | None) -> int | None:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        value = 0
    if value <= 0:
        logger.warning(
            "Invalid %s=%r; expected a positive integer. Defaulting to %s.",
            name,
            raw,
            default,
        )
        return default
    return value


@dataclass(frozen=True)
class LoopConfig:
    """Runtime policy/config resolved once and passed explicitly to the runner."""

    model: str = DEFAULT_MODEL
    instructions: str = DEFAULT_INSTRUCTIONS
    tool_call_engine: ToolCallEngineName = "native"
    max_iterations: int = DEFAULT_MAX_ITERATIONS
    temperature: float = DEFAULT_TEMPERATURE
    max_images: int | None = None
    max_events: int = DEFAULT_MAX_EVENTS
    enable_streaming_tool_call_events: bool = True

    def __post_init__(self) -> None:
        if self.max_iterations < 1:
            raise ValueError(f"max_iterations must be >= 1, got {self.max_iterations}")
        if self.max_images is not None and self.max_images < 0:
            raise ValueError(f"max_images must be >= 0, got {self.max_images}")

    @classmethod
    def from_env(cls) -> "LoopConfig":
        """Build typed config from AGENT_LOOP_* environment variables."""
        engine_raw = os.environ.get(TOOL_CALL_ENGINE_ENV, "native").strip().lower()
        if engine_raw in _ENGINE_NAMES:
            tool_call_engine: ToolCallEngineName = engine_raw  # type: ignore[assignment]
        else:
            logger.warning(
                "Invalid %s=%r; expected native/prompt_engineering/structured_outputs. "
                "Defaulting to native.",
                TOOL_CALL_ENGINE_ENV,
                engine_raw,
            )
            tool_call_engine = "native"

        temperature_raw = os.environ.get(TEMPERATURE_ENV, "").strip()
        temperature = DEFAULT_TEMPERATURE
        if temperature_raw:
            try:
                temperature = float(temperature_raw)
            except ValueError:
                logger.warning(
                    "Invalid %s=%r; expected a float. Defaulting to %s.",
                    TEMPERATURE_ENV,
                    temperature_raw,
                    DEFAULT_TEMPERATURE,
                )

        streaming_raw = os.environ.get(STREAMING_TOOL_CALL_EVENTS_ENV, "on").strip().lower()
        if streaming_raw in _FALSE:
            streaming_events = False
        elif streaming_raw in _TRUE:
            streaming_events = True
        else:
            logger.warning(
                "Invalid %s=%r; expected on/off boolean. Defaulting to on.",
                STREAMING_TOOL_CALL_EVENTS_ENV,
                streaming_raw,
            )
            streaming_events = True

        return cls(
            model=os.environ.get(MODEL_ENV, DEFAULT_MODEL).strip() or DEFAULT_MODEL,
            tool_call_engine=tool_call_engine,
            max_iterations=_positive_int_env(MAX_ITERATIONS_ENV, DEFAULT_MAX_ITERATIONS) or DEFAULT_MAX_ITERATIONS,
            temperature=temperature,
            max_images=_positive_int_env(MAX_IMAGES_ENV, None),
            max_events=_positive_int_env(MAX_EVENTS_ENV, DEFAULT_MAX_EVENTS) or DEFAULT_MAX_EVENTS,
            enable_streaming_tool_call_events=streaming_events,
        )
