"""Cancellation signal handed to every tool execution."""

from __future__ import annotations

import asyncio


class CancellationToken:
    """One-shot cancellation flag that can be polled or awaited.

    Tokens are created and cancelled on the event loop that runs the session.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str | None:
        return self._reason

    def cancel(self, reason: str = "cancelled") -> None:
        if self._event.is_set():
            return
        self._reason = reason
        self._event.set()

    async def wait(self) -> str | None:
        await self._event.wait()
        return self._reason
