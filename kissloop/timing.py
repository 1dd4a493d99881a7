"""A small stopwatch for timing processing steps."""

from __future__ import annotations

import time


class TicToc:
    """Stopwatch based on a monotonic clock; starts running when created."""

    def __init__(self) -> None:
        self._start = 0.0
        self.tic()

    def tic(self) -> None:
        """Restart the stopwatch."""
        self._start = time.perf_counter()

    def toc(self, unit: str = "msec") -> float:
        """Return the time elapsed since the last ``tic`` in ``msec`` or ``sec``."""
        elapsed = time.perf_counter() - self._start
        if unit == "msec":
            return elapsed * 1000.0
        if unit == "sec":
            return elapsed
        raise ValueError(f"Unsupported unit: {unit}. Use 'msec' or 'sec'.")