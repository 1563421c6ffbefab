"""Silence watchdog: ends an idle session as if the hotkey were released."""

from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Optional

from interfaces import Scheduler, TimerHandle

logger = logging.getLogger(__name__)


class SilenceWatchdog:
    def __init__(
        self,
        scheduler: Scheduler,
        on_timeout: Callable[[], None],
        has_text: Callable[[], bool],
        threshold_s: float = 3.0,
        interval_s: float = 0.5,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._scheduler = scheduler
        self._on_timeout = on_timeout
        self._has_text = has_text
        self._threshold_s = threshold_s
        self._interval_s = interval_s
        self._clock = clock
        self._lock = threading.Lock()
        self._last_event = 0.0
        self._handle: Optional[TimerHandle] = None
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    def start(self) -> None:
        with self._lock:
            self._last_event = self._clock()
            self._running = True
            self._schedule()

    def touch(self) -> None:
        with self._lock:
            self._last_event = self._clock()

    def cancel(self) -> None:
        with self._lock:
            self._running = False
            if self._handle is not None:
                self._handle.cancel()
                self._handle = None

    def _schedule(self) -> None:
        self._handle = self._scheduler.call_later(self._interval_s, self._poll)

    def _poll(self) -> None:
        with self._lock:
            if not self._running:
                return
            elapsed = self._clock() - self._last_event
        # has_text reads controller state, so it is called without our lock held.
        if elapsed < self._threshold_s or not self._has_text():
            with self._lock:
                if self._running:
                    self._schedule()
            return
        with self._lock:
            if not self._running:
                return
            self._running = False
            self._handle = None
        logger.info("No recognition events for %.1fs, stopping session", elapsed)
        self._on_timeout()
