"""Time sources and periodic schedulers used by the budget monitor.

Nothing in the core reads the wall clock directly: reports and budget checks
ask a clock for "now", and periodic checks are driven by a ticker. Tests use
ManualClock and ManualTicker so no real timers are involved.
"""
import asyncio
import datetime as dt
import logging
from typing import Callable, Optional

logger = logging.getLogger(__name__)


class SystemClock:
    """Wall clock returning naive local time."""

    def now(self) -> dt.datetime:
        return dt.datetime.now()


class ManualClock:
    """Clock that only moves when told to."""

    def __init__(self, start: dt.datetime):
        self._now = start

    def now(self) -> dt.datetime:
        return self._now

    def set(self, value: dt.datetime) -> None:
        self._now = value

    def advance(self, **delta) -> dt.datetime:
        """Move forward by a timedelta given as keyword arguments."""
        self._now = self._now + dt.timedelta(**delta)
        return self._now


class AsyncioTicker:
    """Runs a callback every `interval_seconds` on the running event loop.

    The callback does blocking work (database reads), so each tick runs it in
    a worker thread. Failures are logged and the ticker keeps going.
    """

    def __init__(self, interval_seconds: float):
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self.interval_seconds = interval_seconds
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self, callback: Callable[[], object]) -> None:
        if self.running:
            return
        loop = asyncio.get_running_loop()
        self._task = loop.create_task(self._run(callback))

    async def _run(self, callback: Callable[[], object]) -> None:
        while True:
            await asyncio.sleep(self.interval_seconds)
            try:
                await asyncio.to_thread(callback)
            except Exception:
                logger.exception("Scheduled tick failed")

    def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            self._task = None


class ManualTicker:
    """Ticker for tests: `fire()` invokes the callback synchronously."""

    def __init__(self):
        self._callback: Optional[Callable[[], object]] = None

    @property
    def running(self) -> bool:
        return self._callback is not None

    def start(self, callback: Callable[[], object]) -> None:
        self._callback = callback

    def fire(self):
        if self._callback is None:
            raise RuntimeError("Ticker has not been started")
        return self._callback()

    def stop(self) -> None:
        self._callback = None
