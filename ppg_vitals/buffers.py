"""Time-keyed sliding window used by every stage that keeps history."""

from __future__ import annotations

from collections import deque
from typing import Deque, Tuple

import numpy as np


class TimeWindow:
    """
    Ring buffer of ``(timestamp_ms, value)`` pairs bounded by elapsed time.

    Samples older than ``window_ms`` relative to the newest sample are
    evicted on insert.  ``max_samples`` bounds memory independently of the
    frame rate.
    """

    def __init__(self, window_ms: float, max_samples: int = 1024) -> None:
        if window_ms <= 0:
            raise ValueError("window_ms must be positive")
        self.window_ms = float(window_ms)
        self._items: Deque[Tuple[float, float]] = deque(maxlen=max_samples)

    def append(self, timestamp_ms: float, value: float) -> None:
        # A clock that jumps backwards invalidates the whole window.
        if self._items and timestamp_ms < self._items[-1][0]:
            self._items.clear()
        self._items.append((float(timestamp_ms), float(value)))
        cutoff = timestamp_ms - self.window_ms
        while self._items and self._items[0][0] < cutoff:
            self._items.popleft()

    def times(self) -> np.ndarray:
        return np.fromiter((t for t, _ in self._items), dtype=np.float64,
                           count=len(self._items))

    def values(self) -> np.ndarray:
        return np.fromiter((v for _, v in self._items), dtype=np.float64,
                           count=len(self._items))

    def latest(self, n: int) -> np.ndarray:
        """Return the newest *n* values (fewer if the window is shorter)."""
        vals = self.values()
        return vals[-n:] if n > 0 else vals[:0]

    @property
    def span_ms(self) -> float:
        if len(self._items) < 2:
            return 0.0
        return self._items[-1][0] - self._items[0][0]

    @property
    def last_time(self) -> float | None:
        return self._items[-1][0] if self._items else None

    def clear(self) -> None:
        self._items.clear()

    def __len__(self) -> int:
        return len(self._items)
