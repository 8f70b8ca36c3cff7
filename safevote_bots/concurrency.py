"""
Run-level cancellation and windowed batch execution.

Every agent phase is executed through run_in_windows(): agents are split
into fixed-size windows, each window runs fully in parallel and settles
before the next one starts.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, List, Optional, Sequence, TypeVar

from .errors import RunCancelled

logger = logging.getLogger(__name__)

T = TypeVar('T')
R = TypeVar('R')


class CancelToken:
    """
    Cooperative cancellation signal shared by one run.

    Cancellation means "stop issuing new work": it is observed before new
    windows, retries and harness sleeps, and never interrupts a request
    already in flight.
    """

    def __init__(self):
        self._event = asyncio.Event()
        self.reason: Optional[str] = None

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._event.is_set():
            self.reason = reason
            logger.warning(f"Run cancellation requested: {reason}")
            self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise RunCancelled(self.reason or "cancelled")

    async def sleep(self, seconds: float) -> None:
        """Sleep for `seconds`, waking early with RunCancelled if cancelled."""
        self.raise_if_cancelled()
        if seconds <= 0:
            return
        try:
            await asyncio.wait_for(self._event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return
        self.raise_if_cancelled()


@dataclass
class WindowResult:
    """Results of one batch window, in submission order."""
    index: int
    size: int
    results: List[Any] = field(default_factory=list)

    @property
    def errors(self) -> List[BaseException]:
        return [r for r in self.results if isinstance(r, BaseException)]

    @property
    def values(self) -> List[Any]:
        return [r for r in self.results if not isinstance(r, BaseException)]


async def run_in_windows(
    items: Sequence[T],
    worker: Callable[[T], Awaitable[R]],
    window_size: int,
    delay: float = 0.0,
    cancel_token: Optional[CancelToken] = None,
    on_window: Optional[Callable[[WindowResult], None]] = None,
) -> List[WindowResult]:
    """
    Execute `worker` over `items` in sequential windows of `window_size`.

    An exception in one worker never cancels its siblings; it is returned
    in place of that worker's result. No window starts after cancellation.

    Args:
        items: Work items, one agent invocation each
        worker: Coroutine function run for each item
        window_size: Concurrency limit
        delay: Pause between windows in seconds
        cancel_token: Optional run cancellation token
        on_window: Callback invoked after each window settles

    Returns:
        One WindowResult per executed window
    """
    if window_size < 1:
        raise ValueError("window_size must be at least 1")

    windows: List[WindowResult] = []
    total_windows = (len(items) + window_size - 1) // window_size

    for index, start in enumerate(range(0, len(items), window_size)):
        if cancel_token is not None and cancel_token.cancelled:
            logger.warning(f"Cancelled before window {index + 1}/{total_windows}")
            break

        chunk = items[start:start + window_size]
        logger.info(f"Window {index + 1}/{total_windows}: running {len(chunk)} operations")

        results = await asyncio.gather(*(worker(item) for item in chunk), return_exceptions=True)
        window = WindowResult(index=index, size=len(chunk), results=list(results))
        windows.append(window)

        for error in window.errors:
            if not isinstance(error, RunCancelled):
                logger.error(f"Operation failed in window {index + 1}: {error!r}")

        if on_window is not None:
            on_window(window)

        is_last = start + window_size >= len(items)
        if not is_last and delay > 0:
            if cancel_token is not None:
                try:
                    await cancel_token.sleep(delay)
                except RunCancelled:
                    logger.warning("Cancelled during inter-window delay")
                    break
            else:
                await asyncio.sleep(delay)

    return windows
