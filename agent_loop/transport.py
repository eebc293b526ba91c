"""Model transport: request params in, async stream of raw chunks out.

The loop only depends on the :class:`ModelTransport` protocol.
:class:`LiteLLMTransport` is the default implementation; timeouts and
retries are its business (litellm's ``timeout`` / ``num_retries``), the loop
itself never sets timers.
"""

from __future__ import annotations

import logging
from typing import Any, AsyncIterator, Protocol

import litellm

from agent_loop.abort import AbortSignal
from agent_loop.errors import AbortError, TransportError, wrap_error

logger = logging.getLogger(__name__)

litellm.suppress_debug_info = True


class ModelTransport(Protocol):
    def stream(
        self, request: dict[str, Any], abort_signal: AbortSignal | None = None
    ) -> AsyncIterator[Any]:
        """Yield raw streaming chunks for ``request``.

        Raises:
            TransportError: On provider or network failure.
            AbortError: When ``abort_signal`` fires between chunks.
        """
        ...


async def _inner_acompletion(**kwargs: Any) -> Any:
    """Single seam around litellm so tests can patch the network call."""
    return await litellm.acompletion(**kwargs)


class LiteLLMTransport:
    """Streams chat completions through ``litellm.acompletion``.

    Args:
        timeout: Per-request timeout in seconds, enforced by litellm.
        num_retries: litellm-level retries for transient failures.
        api_base: Optional provider base URL.
        api_key: Optional API key (otherwise litellm reads the environment).
        extra_kwargs: Passed through to every ``acompletion`` call.
    """

    def __init__(
        self,
        *,
        timeout: float = 60,
        num_retries: int = 2,
        api_base: str | None = None,
        api_key: str | None = None,
        extra_kwargs: dict[str, Any] | None = None,
    ) -> None:
        self.timeout = timeout
        self.num_retries = num_retries
        self.api_base = api_base
        self.api_key = api_key
        self.extra_kwargs = dict(extra_kwargs or {})

    def _call_kwargs(self, request: dict[str, Any]) -> dict[str, Any]:
        kwargs: dict[str, Any] = {
            **self.extra_kwargs,
            **request,
            "stream": True,
            "timeout": self.timeout,
            "num_retries": self.num_retries,
        }
        if self.api_base:
            kwargs["api_base"] = self.api_base
        if self.api_key:
            kwargs["api_key"] = self.api_key
        return kwargs

    async def stream(
        self, request: dict[str, Any], abort_signal: AbortSignal | None = None
    ) -> AsyncIterator[Any]:
        if abort_signal is not None:
            abort_signal.raise_if_aborted()
        model = request.get("model")
        try:
            response = await _inner_acompletion(**self._call_kwargs(request))
        except Exception as exc:
            err = wrap_error(exc)
            logger.error("Model request to %s failed: %s", model, err)
            raise err from exc

        n_chunks = 0
        try:
            async for chunk in response:
                if abort_signal is not None and abort_signal.aborted:
                    raise AbortError(abort_signal.reason or "Request was aborted")
                n_chunks += 1
                yield chunk
        except (AbortError, TransportError):
            raise
        except Exception as exc:
            err = wrap_error(exc)
            logger.error("Stream from %s failed after %d chunks: %s", model, n_chunks, err)
            raise err from exc
        finally:
            close = getattr(response, "aclose", None)
            if close is not None:
                try:
                    await close()
                except Exception:
                    logger.debug("Closing litellm stream failed", exc_info=True)
        logger.debug("Stream from %s finished (%d chunks)", model, n_chunks)
