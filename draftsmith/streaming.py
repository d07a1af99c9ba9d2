"""Simulated streaming for providers that return a complete reply.

This only paces the display of text that already exists. Stopping it never
touches the request that produced the text, and cancelling that request
does not stop a stream that is already rendering.
"""

import asyncio
from collections.abc import AsyncIterator, Awaitable, Callable

SHORT_CHUNK_CHARS = 40
SHORT_INTERVAL_SECONDS = 0.016
LONG_TEXT_CHARS = 3000
LONG_CHUNK_CHARS = 80
LONG_INTERVAL_SECONDS = 0.010


def pacing_for(text: str) -> tuple[int, float]:
    """Chunk size and interval: faster steps for long replies."""
    if len(text) > LONG_TEXT_CHARS:
        return LONG_CHUNK_CHARS, LONG_INTERVAL_SECONDS
    return SHORT_CHUNK_CHARS, SHORT_INTERVAL_SECONDS


class SimulatedStream:
    """Yield progressively longer prefixes of ``text`` until done or stopped."""

    def __init__(
        self,
        text: str,
        chunk_chars: int | None = None,
        interval: float | None = None,
        sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
    ):
        default_chunk, default_interval = pacing_for(text)
        self.text = text
        self.chunk_chars = max(1, chunk_chars or default_chunk)
        self.interval = default_interval if interval is None else max(0.0, interval)
        self._sleep = sleep
        self._stopped = False

    @property
    def stopped(self) -> bool:
        return self._stopped

    def stop(self) -> None:
        """Stop pacing; the caller shows the full text right away."""
        self._stopped = True

    async def __aiter__(self) -> AsyncIterator[str]:
        for end in range(self.chunk_chars, len(self.text) + self.chunk_chars, self.chunk_chars):
            if self._stopped:
                return
            yield self.text[:end]
            await self._sleep(self.interval)

    async def render(self, emit: Callable[[str], None]) -> bool:
        """Emit each new delta through ``emit``; returns False if stopped early."""
        shown = 0
        async for prefix in self:
            emit(prefix[shown:])
            shown = len(prefix)
        if shown < len(self.text):
            emit(self.text[shown:])
            return False
        return True
