import asyncio
import logging
from collections.abc import Awaitable, Callable

logger = logging.getLogger(__name__)


class Ticker:
    """Repeating timer that runs an async callback every ``interval`` seconds.

    Each tick runs the callback as its own task. A tick that arrives while the
    previous callback is still running is skipped, so callbacks never overlap.
    Stopping the ticker only disarms the timer; a running callback finishes.
    Must be started from inside a running event loop.
    """

    def __init__(self, callback: Callable[[], Awaitable[None]], interval: float, name: str = "ticker"):
        if interval <= 0:
            raise ValueError(f"interval must be positive, got {interval}")
        self._callback = callback
        self._interval = interval
        self._name = name
        self._timer_task: asyncio.Task | None = None
        self._inflight: asyncio.Task | None = None
        self._deadline: float | None = None

    @property
    def interval(self) -> float:
        return self._interval

    @property
    def running(self) -> bool:
        return self._timer_task is not None and not self._timer_task.done()

    @property
    def busy(self) -> bool:
        return self._inflight is not None and not self._inflight.done()

    @property
    def next_tick_at(self) -> float | None:
        """Event loop time of the next tick, or None when stopped."""
        return self._deadline if self.running else None

    def start(self) -> None:
        if self.running:
            return
        loop = asyncio.get_running_loop()
        self._deadline = loop.time() + self._interval
        self._timer_task = loop.create_task(self._run(), name=f"{self._name}-timer")
        logger.info("Ticker %s armed, interval: %s seconds", self._name, self._interval)

    def stop(self) -> None:
        if self._timer_task is not None:
            self._timer_task.cancel()
            self._timer_task = None
            logger.info("Ticker %s disarmed", self._name)
        self._deadline = None

    def reschedule(self, interval: float) -> None:
        """Change the interval. When running, the next tick is ``interval`` seconds from now."""
        if interval <= 0:
            raise ValueError(f"interval must be positive, got {interval}")
        self._interval = interval
        if self.running:
            self.stop()
            self.start()

    def fire(self) -> asyncio.Task:
        """Run the callback now unless it is already running. Returns the in-flight task."""
        if self.busy:
            logger.info("Ticker %s: previous run still in progress, skipping tick.", self._name)
            return self._inflight
        self._inflight = asyncio.get_running_loop().create_task(self._callback(), name=f"{self._name}-run")
        self._inflight.add_done_callback(self._on_done)
        return self._inflight

    async def drain(self) -> None:
        """Wait for an in-flight callback, if any, to finish."""
        if self.busy:
            await asyncio.wait([self._inflight])

    async def _run(self) -> None:
        loop = asyncio.get_running_loop()
        while True:
            await asyncio.sleep(max(0.0, self._deadline - loop.time()))
            self._deadline = loop.time() + self._interval
            self.fire()

    def _on_done(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Ticker %s callback failed", self._name, exc_info=exc)
