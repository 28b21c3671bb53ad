"""
Monotonic stopwatch used to instrument payment calls.
"""
from __future__ import annotations

import time


class Stopwatch:
    """Measure elapsed wall time with ``time.perf_counter``.

    Usable directly or as a context manager::

        with Stopwatch() as sw:
            ...
        logger.info("done", duration_ms=sw.elapsed_ms)
    """

    def __init__(self) -> None:
        self._start = time.perf_counter()
        self._end: float | None = None

    def __enter__(self) -> "Stopwatch":
        self.restart()
        return self

    def __exit__(self, *exc_info) -> None:
        self.stop()

    def restart(self) -> None:
        self._start = time.perf_counter()
        self._end = None

    def stop(self) -> float:
        self._end = time.perf_counter()
        return self.elapsed_ms

    @property
    def elapsed_ms(self) -> float:
        end = self._end if self._end is not None else time.perf_counter()
        return round((end - self._start) * 1000, 2)
