import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Protocol

class RateLimiter(Protocol):
    def check(self, key: str) -> bool:
        ...

@dataclass
class _Window:
    count: int
    reset_at: float

class FixedWindowRateLimiter:
    """Counts requests per key in fixed windows; state lives for the process lifetime."""

    def __init__(self, max_requests: int, window_seconds: float, clock: Callable[[], float] = time.monotonic):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock
        self._windows: Dict[str, _Window] = {}
        self._lock = threading.Lock()

    def check(self, key: str) -> bool:
        now = self._clock()
        with self._lock:
            window = self._windows.get(key)
            if window is None or window.reset_at <= now:
                self._windows[key] = _Window(count=1, reset_at=now + self.window_seconds)
                return True
            window.count += 1
            return window.count <= self.max_requests
