"""Structured error types for agent_loop.

Only two kinds of error ever end an agent loop early: transport failures and
aborts. Everything else is contained where it happens and reported as data
(a ``tool_result`` with ``error`` set, a log line for a failed hook):

    from agent_loop.errors import TransportRateLimitError, AbortError

    try:
        async for chunk in transport.stream(request, abort_signal):
            ...
    except AbortError:
        # Caller asked to stop; no further network or tool work
        ...
    except TransportRateLimitError:
        # Provider throttled us; the runner reports finish_reason="error"
        ...
"""

from __future__ import annotations


class AgentLoopError(Exception):
    """Base for all agent_loop errors."""

    def __init__(self, message: str, original: Exception | None = None) -> None:
        super().__init__(message)
        self.original = original


class DecodeDegradation(AgentLoopError):
    """Malformed partial JSON or markup in a stream. Recovered silently."""


class ToolExecutionError(AgentLoopError):
    """A tool function raised. Surfaced as a tool_result with ``error`` set."""

    def __init__(
        self,
        message: str,
        *,
        tool_name: str,
        original: Exception | None = None,
    ) -> None:
        super().__init__(message, original=original)
        self.tool_name = tool_name


class HookError(AgentLoopError):
    """A hook raised. Logged; the pipeline continues with pre-hook values."""

    def __init__(
        self,
        message: str,
        *,
        hook_name: str,
        original: Exception | None = None,
    ) -> None:
        super().__init__(message, original=original)
        self.hook_name = hook_name


class AbortError(AgentLoopError):
    """The session's abort signal fired."""


class TransportError(AgentLoopError):
    """The model transport failed. Terminates the loop with finish_reason=error."""


class TransportRateLimitError(TransportError):
    """Rate limit or quota (429)."""


class TransportAuthError(TransportError):
    """Authentication failed (401/403)."""


class TransportContentFilterError(TransportError):
    """Content policy violation, the request was blocked."""


class TransportModelNotFoundError(TransportError):
    """Model doesn't exist (404)."""


class TransportTransientError(TransportError):
    """Server error (500/502/503), timeout, connection."""


# Checked in order; the first matching litellm exception class decides.
_LITELLM_CLASSES: tuple[tuple[type[TransportError], tuple[str, ...]], ...] = (
    (TransportAuthError, ("AuthenticationError", "PermissionDeniedError")),
    (TransportModelNotFoundError, ("NotFoundError",)),
    (TransportContentFilterError, ("ContentPolicyViolationError",)),
    (TransportRateLimitError, ("RateLimitError", "BudgetExceededError")),
    (
        TransportTransientError,
        ("InternalServerError", "ServiceUnavailableError", "APIConnectionError", "BadGatewayError", "Timeout"),
    ),
)

_TRANSIENT_MARKERS = ("timeout", "timed out", "connection", "500", "502", "503", "server error")


def _litellm_classes(names: tuple[str, ...]) -> tuple[type[BaseException], ...]:
    """Exception classes litellm actually exports under ``names`` (varies by version)."""
    import litellm

    found = (getattr(litellm, n, None) for n in names)
    return tuple(c for c in found if isinstance(c, type) and issubclass(c, BaseException))


def _classify_message(text: str) -> type[TransportError]:
    if "401" in text or "403" in text or any(w in text for w in ("authentication", "unauthorized", "forbidden")):
        return TransportAuthError
    if "404" in text or "not found" in text or "does not exist" in text:
        return TransportModelNotFoundError
    if "content" in text and ("policy" in text or "filter" in text):
        return TransportContentFilterError
    if "429" in text or "quota" in text or ("rate" in text and "limit" in text):
        return TransportRateLimitError
    if any(marker in text for marker in _TRANSIENT_MARKERS):
        return TransportTransientError
    return TransportError


def classify_error(error: Exception) -> type[TransportError]:
    """Pick the TransportError subtype for a provider exception.

    litellm's exception classes decide first; otherwise the message text
    (or the exception type name when the message is blank) is matched.
    """
    for error_cls, names in _LITELLM_CLASSES:
        classes = _litellm_classes(names)
        if classes and isinstance(error, classes):
            return error_cls
    return _classify_message((str(error) or type(error).__name__).lower())


def wrap_error(error: Exception) -> AgentLoopError:
    """Wrap a transport exception in the appropriate TransportError subclass.

    AgentLoopError instances (including AbortError) are returned unchanged.
    """
    if isinstance(error, AgentLoopError):
        return error
    cls = classify_error(error)
    return cls(str(error) or type(error).__name__, original=error)
