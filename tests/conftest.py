from __future__ import annotations

import time
from typing import Callable

import pytest

from scheduler import TimerHandle


class ManualScheduler:
    """Deterministic scheduler: timers only run inside ``advance``."""

    def __init__(self) -> None:
        self.now = 0.0
        self._timers: list[TimerHandle] = []

    def call_later(self, delay_s: float, callback: Callable[[], None]) -> TimerHandle:
        handle = TimerHandle(self.now + max(0.0, delay_s), callback)
        self._timers.append(handle)
        return handle

    @property
    def pending(self) -> list[TimerHandle]:
        return [t for t in self._timers if not t.cancelled]

    def advance(self, seconds: float) -> None:
        target = self.now + seconds
        while True:
            due = [t for t in self.pending if t.deadline <= target + 1e-9]
            if not due:
                break
            handle = min(due, key=lambda t: t.deadline)
            self._timers.remove(handle)
            self.now = max(self.now, handle.deadline)
            handle.callback()
        self.now = target


@pytest.fixture
def scheduler() -> ManualScheduler:
    return ManualScheduler()


def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> bool:
    deadline = time.time() + timeout
    while time.time() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()
