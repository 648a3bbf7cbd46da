"""
Throttled progress reporting.

``ProgressThrottler.update`` may be called on every stream event; the reporter
is invoked at most once per interval and always ends up with the latest text.
"""
import asyncio
import inspect
import logging
import time
from typing import Awaitable, Callable, Optional, Union

logger = logging.getLogger(__name__)

# Progress messages longer than this are cut; the final answer is sent in full elsewhere.
MAX_PROGRESS_CHARS = 3000

Reporter = Callable[[str], Union[None, Awaitable[None]]]


def shorten_progress(text: str, limit: int = MAX_PROGRESS_CHARS) -> str:
    if len(text) <= limit:
        return text
    return text[: limit - 3] + "..."


class ProgressThrottler:
    def __init__(self, report: Reporter, interval: float = 2.0, clock: Callable[[], float] = time.monotonic) -> None:
        self._report = report
        self.interval = interval
        self._clock = clock
        self._last_emit: Optional[float] = None
        self._pending: Optional[str] = None
        self._timer: Optional[asyncio.TimerHandle] = None
        # Chain of in-flight async deliveries; each waits for the one before it.
        self._delivery: Optional[asyncio.Future] = None
        self.emitted = 0

    def update(self, text: str) -> None:
        self._pending = text
        now = self._clock()
        elapsed = None if self._last_emit is None else now - self._last_emit
        if elapsed is None or elapsed >= self.interval:
            self._flush()
        elif self._timer is None:
            loop = asyncio.get_running_loop()
            self._timer = loop.call_later(self.interval - elapsed, self._on_timer)

    def stop(self) -> None:
        """Cancel any scheduled delivery. Deliveries already started run to completion."""
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    async def wait_delivered(self) -> None:
        """Wait until every started delivery has finished."""
        if self._delivery is not None:
            await asyncio.shield(self._delivery)

    def _on_timer(self) -> None:
        self._timer = None
        self._flush()

    def _flush(self) -> None:
        if self._pending is None:
            return
        text, self._pending = self._pending, None
        self._last_emit = self._clock()
        self.emitted += 1
        try:
            result = self._report(shorten_progress(text))
        except Exception as e:
            logger.warning(f"Progress update failed: {type(e).__name__}: {e}")
            return
        if inspect.isawaitable(result):
            self._delivery = asyncio.ensure_future(self._deliver_after(self._delivery, result))

    async def _deliver_after(self, previous: Optional[asyncio.Future], result: Awaitable[None]) -> None:
        if previous is not None:
            await previous
        try:
            await result
        except Exception as e:
            logger.warning(f"Progress update failed: {type(e).__name__}: {e}")
