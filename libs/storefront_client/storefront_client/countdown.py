from __future__ import annotations

import logging
import threading
from typing import Callable, Optional

logger = logging.getLogger("storefront.client.timer")


class ThreadTicker:
    """Calls ``callback`` every ``interval`` seconds on a daemon thread until cancelled."""

    def __init__(self, interval: float, callback: Callable[[], None]):
        self.interval = interval
        self.callback = callback
        self._stopped = threading.Event()
        self._thread = threading.Thread(target=self._run, name="otp-countdown", daemon=True)

    def start(self) -> None:
        self._thread.start()

    def _run(self) -> None:
        while not self._stopped.wait(self.interval):
            try:
                self.callback()
            except Exception:
                logger.exception("Countdown tick failed")

    def cancel(self) -> None:
        self._stopped.set()
        if self._thread.is_alive() and threading.current_thread() is not self._thread:
            self._thread.join(timeout=self.interval + 1)

    @property
    def running(self) -> bool:
        return self._thread.is_alive() and not self._stopped.is_set()


TickerFactory = Callable[[float, Callable[[], None]], ThreadTicker]


class Countdown:
    """Resend cooldown: a single repeating one-second tick with explicit start/stop.

    With ``ticker_factory=None`` nothing ticks on its own and the owner calls
    ``tick()``; that is how an event loop (or a test) drives it.
    """

    def __init__(
        self,
        on_tick: Optional[Callable[[int], None]] = None,
        *,
        interval: float = 1.0,
        ticker_factory: Optional[TickerFactory] = ThreadTicker,
    ):
        self.on_tick = on_tick
        self.interval = interval
        self.ticker_factory = ticker_factory
        self._remaining = 0
        self._ticker: Optional[ThreadTicker] = None
        self._lock = threading.Lock()

    @property
    def remaining(self) -> int:
        return self._remaining

    @property
    def active(self) -> bool:
        return self._remaining > 0

    def start(self, seconds: int) -> None:
        """(Re)start from ``seconds``; any running ticker is replaced."""
        self.stop()
        with self._lock:
            self._remaining = max(int(seconds), 0)
            if self._remaining and self.ticker_factory is not None:
                self._ticker = self.ticker_factory(self.interval, self.tick)
                self._ticker.start()

    def tick(self) -> int:
        with self._lock:
            if self._remaining > 0:
                self._remaining -= 1
            remaining = self._remaining
            finished = remaining == 0
            ticker = self._ticker if finished else None
            if finished:
                self._ticker = None
        if ticker is not None:
            ticker.cancel()
        if self.on_tick is not None:
            self.on_tick(remaining)
        return remaining

    def stop(self) -> None:
        with self._lock:
            ticker, self._ticker = self._ticker, None
            self._remaining = 0
        if ticker is not None:
            ticker.cancel()
