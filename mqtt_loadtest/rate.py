"""Rate control for publishers.

A publisher fires `repeat_count` times, `repeat_delay` seconds apart.

The naive loop (publish, then sleep `delay`) drifts: every iteration adds the
time spent publishing on top of the delay, so 1000 messages at 10 ms end up
taking noticeably longer than 10 s. Instead, signal `i` is due at

    start + i * delay

and the controller only waits for whatever is left until that instant. If a
publish took longer than the delay, the next signal fires immediately.
"""

from __future__ import annotations

import threading
import time
from typing import Callable, Iterator

Clock = Callable[[], float]
Wait = Callable[[float], object]


class RateController:
    """Lazy, finite, drift-free sequence of fire signals.

    Iterating yields the repetition index (0 .. repeat_count - 1). Setting the
    `cancel` event ends the sequence early, including in the middle of a wait.
    """

    def __init__(
        self,
        *,
        repeat_count: int,
        repeat_delay: float,
        cancel: threading.Event | None = None,
        clock: Clock = time.monotonic,
        wait: Wait | None = None,
    ) -> None:
        if repeat_count < 0:
            raise ValueError("repeat_count must be >= 0")
        if repeat_delay < 0:
            raise ValueError("repeat_delay must be >= 0")

        self.repeat_count = repeat_count
        self.repeat_delay = repeat_delay
        self._cancel = cancel or threading.Event()
        self._clock = clock
        # Event.wait doubles as an interruptible sleep.
        self._wait = wait or self._cancel.wait

    def due_time(self, start: float, index: int) -> float:
        return start + index * self.repeat_delay

    def __iter__(self) -> Iterator[int]:
        start = self._clock()
        for i in range(self.repeat_count):
            if self._cancel.is_set():
                return
            if self.repeat_delay > 0:
                remaining = self.due_time(start, i) - self._clock()
                if remaining > 0:
                    self._wait(remaining)
                    if self._cancel.is_set():
                        return
            yield i

    def __len__(self) -> int:
        return self.repeat_count
