"""
Progress reporting and cooperative cancellation.

The host supplies ``report(percent, message) -> continue?``. The reporter keeps
percentages monotone, throttles calls and turns a negative answer into
``Cancelled``.
"""

from __future__ import annotations

import threading
import time
from typing import Callable, Optional

from .errors import Cancelled

ProgressCallback = Callable[[int, str], Optional[bool]]


class ProgressReporter:
    def __init__(self, callback: Optional[ProgressCallback] = None, *, min_interval: float = 0.05):
        self._callback = callback
        self._min_interval = float(min_interval)
        self._last_percent = 0
        self._last_call = 0.0
        self._last_message = ""
        self._cancelled = threading.Event()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    @property
    def last_percent(self) -> int:
        return self._last_percent

    def report(self, percent: float, message: str = "", *, force: bool = False) -> None:
        """
        Forward progress to the host callback.

        Raises:
            Cancelled: if the callback returned False (now or earlier).
        """
        if self._cancelled.is_set():
            raise Cancelled(self._last_message or "Operation cancelled")
        if self._callback is None:
            return

        pct = int(max(self._last_percent, min(100, int(percent))))
        now = time.monotonic()
        if not force and pct == self._last_percent and (now - self._last_call) < self._min_interval:
            return

        self._last_percent = pct
        self._last_message = str(message)
        self._last_call = now
        if self._callback(pct, str(message)) is False:
            self._cancelled.set()
            raise Cancelled(f"Cancelled during: {message}")

    def span(self, start: float, end: float, message: str) -> Callable[[float], None]:
        """Return ``f(fraction)`` reporting ``start + fraction * (end - start)``."""
        lo = float(start)
        hi = float(end)

        def _step(fraction: float) -> None:
            f = min(1.0, max(0.0, float(fraction)))
            self.report(lo + f * (hi - lo), message)

        return _step
