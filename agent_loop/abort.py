"""Cooperative cancellation shared by the runner, transport and tool processor."""

from __future__ import annotations

import asyncio

from agent_loop.errors import AbortError


class AbortSignal:
    """One-shot abort flag.

    Checked at iteration start, before the network call, between streamed
    chunks and before each tool call. Setting it never interrupts a chunk
    that is already being decoded.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str | None = None

    @property
    def aborted(self) -> bool:
        return self._event.is_set()

    def abort(self, reason: str = "Request was aborted") -> None:
        if self._event.is_set():
            return
        self.reason = reason
        self._event.set()

    def raise_if_aborted(self) -> None:
        if self._event.is_set():
            raise AbortError(self.reason or "Request was aborted")

    async def wait(self) -> None:
        await self._event.wait()
