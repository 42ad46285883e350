from __future__ import annotations

import math
import time
from typing import Callable, Dict, Optional, Tuple


class RateLimiter:
    """Fixed-window request counter per key, local to this process."""

    def __init__(
        self,
        limit: int,
        window_s: float,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.limit = limit
        self.window_s = window_s
        self._clock = clock
        self._windows: Dict[str, Tuple[float, int]] = {}

    def hit(self, key: str) -> Optional[int]:
        """Count one request; returns seconds to wait when over the limit."""
        if self.limit <= 0:
            return None
        now = self._clock()
        started, count = self._windows.get(key, (now, 0))
        if now - started >= self.window_s:
            started, count = now, 0
        if count >= self.limit:
            return max(1, math.ceil(started + self.window_s - now))
        self._windows[key] = (started, count + 1)
        return None

    def reset(self) -> None:
        self._windows.clear()
