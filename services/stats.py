"""
Per-instance message counters.

Each driver instance gets a ``sent`` and a ``received`` counter that report
how many messages passed through in the last minute.  The registry is
created once in ``main.py`` and handed to the bridge; nothing here is global.
"""

from __future__ import annotations

import time
from typing import Callable

_WINDOW = 60  # seconds


class TickCounter:
    """Sliding one-minute counter with one bucket per second.

    Buckets are rotated lazily whenever the counter is touched, so no timer
    task has to be kept alive.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._data = [0] * _WINDOW
        self._head = int(clock())

    def _rotate(self) -> None:
        now = int(self._clock())
        elapsed = now - self._head
        if elapsed <= 0:
            return
        if elapsed >= _WINDOW:
            self._data = [0] * _WINDOW
        else:
            self._data = [0] * elapsed + self._data[:-elapsed]
        self._head = now

    def add(self, value: int = 1) -> None:
        self._rotate()
        self._data[0] += value

    def get(self) -> int:
        self._rotate()
        return sum(self._data)


class StatsRegistry:

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._counters: dict[str, tuple[TickCounter, TickCounter]] = {}

    def _pair(self, instance_id: str) -> tuple[TickCounter, TickCounter]:
        if instance_id not in self._counters:
            self._counters[instance_id] = (TickCounter(self._clock), TickCounter(self._clock))
        return self._counters[instance_id]

    def sent(self, instance_id: str) -> TickCounter:
        return self._pair(instance_id)[0]

    def received(self, instance_id: str) -> TickCounter:
        return self._pair(instance_id)[1]
