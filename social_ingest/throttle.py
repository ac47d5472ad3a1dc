from __future__ import annotations

import threading
import time
from contextlib import contextmanager
from typing import Callable, Iterator

from .errors import PassCancelled


class ServiceGate:
    """
    Concurrency and request-rate ceiling for one external service.

    At most `max_concurrent` calls run at once, and consecutive call starts are
    spaced by at least `min_interval_seconds`. Waiting wakes early when
    `cancel_event` is set.
    """

    def __init__(
        self,
        name: str,
        *,
        max_concurrent: int = 1,
        min_interval_seconds: float = 0.0,
        cancel_event: threading.Event | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be >= 1")
        if min_interval_seconds < 0:
            raise ValueError("min_interval_seconds must be >= 0")

        self.name = name
        self._slots = threading.BoundedSemaphore(int(max_concurrent))
        self._interval = float(min_interval_seconds)
        self._cancel = cancel_event or threading.Event()
        self._clock = clock
        self._pace_lock = threading.Lock()
        self._next_start = 0.0

    def _acquire_slot(self) -> None:
        while not self._slots.acquire(timeout=0.1):
            if self._cancel.is_set():
                raise PassCancelled(f"cancelled while waiting for {self.name}")

    def _wait_for_pace(self) -> None:
        if self._interval <= 0:
            return
        with self._pace_lock:
            now = self._clock()
            start = max(now, self._next_start)
            self._next_start = start + self._interval
        delay = start - now
        if delay > 0 and self._cancel.wait(delay):
            raise PassCancelled(f"cancelled while pacing {self.name}")

    @contextmanager
    def slot(self) -> Iterator[None]:
        if self._cancel.is_set():
            raise PassCancelled(f"cancelled before calling {self.name}")
        self._acquire_slot()
        try:
            self._wait_for_pace()
            yield
        finally:
            self._slots.release()


def cancellable_sleep(cancel_event: threading.Event) -> Callable[[float], None]:
    """Build a retry sleep function that raises PassCancelled when the event fires."""

    def _sleep(seconds: float) -> None:
        if cancel_event.wait(max(0.0, float(seconds))):
            raise PassCancelled("cancelled during retry backoff")

    return _sleep
