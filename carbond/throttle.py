"""Tickers for soft and hard rate limiting."""

from __future__ import annotations

import queue
import threading
import time
from collections import deque
from typing import Callable, Optional


class TickerClosed(Exception):
    """Raised by ThrottleTicker.get once the ticker is closed and drained."""


class ThrottleTicker:
    """A bounded stream of permits produced at a fixed rate.

    A soft ticker yields ``True`` at ``rate_per_sec`` per second. A hard ticker
    yields as fast as it is read, ``True`` for the first ``rate_per_sec``
    values of each second and ``False`` after that. A rate of zero or less
    gives a ticker that is closed from the start.
    """

    def __init__(self, rate_per_sec: int, hard: bool = False) -> None:
        self.rate_per_sec = rate_per_sec
        self.is_hard = hard
        self._items: deque[bool] = deque()
        self._capacity = max(rate_per_sec, 0)
        self._cond = threading.Condition()
        self._closed = False
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

        if rate_per_sec <= 0:
            self._closed = True
            return

        producer = self._hard_loop if hard else self._soft_loop
        self._thread = threading.Thread(
            target=self._run, args=(producer,), name="throttle-ticker", daemon=True
        )
        self._thread.start()

    @classmethod
    def soft(cls, rate_per_sec: int) -> "ThrottleTicker":
        return cls(rate_per_sec, False)

    @classmethod
    def hard(cls, rate_per_sec: int) -> "ThrottleTicker":
        return cls(rate_per_sec, True)

    def get(self, block: bool = True, timeout: Optional[float] = None) -> bool:
        """Take the next permit.

        Raises queue.Empty when none is available in time and TickerClosed
        when the ticker is closed and nothing is left.
        """
        with self._cond:
            deadline = None if timeout is None else time.monotonic() + timeout
            while not self._items:
                if self._closed:
                    raise TickerClosed()
                if not block:
                    raise queue.Empty()
                if deadline is None:
                    self._cond.wait()
                else:
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        raise queue.Empty()
                    self._cond.wait(remaining)
            value = self._items.popleft()
            self._cond.notify_all()
            return value

    def stop(self) -> None:
        """Stop producing permits and wait for the producer to finish."""
        self._stop_event.set()
        with self._cond:
            self._cond.notify_all()
        if self._thread is not None:
            self._thread.join()

    def __enter__(self) -> "ThrottleTicker":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.stop()

    def _run(self, producer: Callable[[], None]) -> None:
        try:
            producer()
        finally:
            with self._cond:
                self._closed = True
                self._cond.notify_all()

    def _send(self, value: bool) -> bool:
        with self._cond:
            while len(self._items) >= self._capacity and not self._stop_event.is_set():
                self._cond.wait()
            if self._stop_event.is_set():
                return False
            self._items.append(value)
            self._cond.notify_all()
            return True

    def _soft_schedule(self) -> tuple[float, int]:
        rate = self.rate_per_sec
        delimiter, chunk = rate, 1
        if rate > 1000:
            delimiter = min(range(100, 1000), key=lambda i: rate % i)
            chunk = rate // delimiter
        return (1_000_000_000 // delimiter) / 1e9, chunk

    def _soft_loop(self) -> None:
        step, chunk = self._soft_schedule()
        next_tick = time.monotonic() + step
        while True:
            delay = next_tick - time.monotonic()
            if delay > 0 and self._stop_event.wait(delay):
                return
            if self._stop_event.is_set():
                return
            for _ in range(chunk):
                if not self._send(True):
                    return
            now = time.monotonic()
            next_tick += step
            if next_tick < now:
                next_tick = now
        

    def _hard_loop(self) -> None:
        rate = self.rate_per_sec
        tick = time.monotonic() + 1.0
        sent = 0
        while True:
            if not self._send(sent < rate):
                return
            if time.monotonic() < tick:
                if sent < rate:
                    sent += 1
            else:
                sent = 0
                tick = time.monotonic() + 1.0