"""Render progress reporting.

Values are clamped to ``[0, 1]`` and never decrease.  A render reports
0 when it starts and exactly one final 1.0 when it succeeds.
"""

from typing import Callable, Optional

ProgressCallback = Callable[[float], None]


class ProgressReporter:
    """Monotonic, clamped progress forwarded to an optional callback."""

    def __init__(self, callback: Optional[ProgressCallback] = None) -> None:
        self._callback = callback
        self._value = 0.0
        self._started = False
        self._finished = False

    @property
    def value(self) -> float:
        return self._value

    @property
    def finished(self) -> bool:
        return self._finished

    def start(self) -> None:
        if self._started:
            return
        self._started = True
        self._emit(0.0)

    def update(self, value: float) -> None:
        """Report *value*; ignored if it would move backwards or reach 1.0 early."""
        if self._finished:
            return
        if not self._started:
            self.start()
        if value != value:  # NaN
            return
        # 1.0 is reserved for finish()
        value = max(0.0, min(float(value), 0.999))
        if value <= self._value:
            return
        self._value = value
        self._emit(value)

    def finish(self) -> None:
        if self._finished:
            return
        if not self._started:
            self.start()
        self._finished = True
        self._value = 1.0
        self._emit(1.0)

    def __call__(self, value: float) -> None:
        self.update(value)

    def _emit(self, value: float) -> None:
        if self._callback is not None:
            self._callback(value)


class PhaseProgress:
    """Maps a sub-phase's ``[0, 1]`` progress onto ``[lo, hi]`` of a parent."""

    def __init__(self, parent: Callable[[float], None], lo: float, hi: float) -> None:
        if not 0.0 <= lo <= hi <= 1.0:
            raise ValueError("phase range must satisfy 0 <= lo <= hi <= 1")
        self._parent = parent
        self.lo = lo
        self.hi = hi

    def __call__(self, value: float) -> None:
        value = max(0.0, min(float(value), 1.0))
        self._parent(self.lo + (self.hi - self.lo) * value)
