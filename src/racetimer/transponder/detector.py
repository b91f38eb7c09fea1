from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable, Optional

UNSET = 0


@dataclass(frozen=True)
class PeakEvent:
    """A settled peak: the value held and how long it was held (seconds)."""

    peak: int
    duration: float
    heartbeat: bool = False


class PeakDetector:
    """
    Online hysteresis filter over signal-strength samples.

    A sample outside ``[last_peak - threshold, last_peak + threshold]`` closes
    the current peak and starts a new one. A peak held for ``heartbeat_sec``
    without a violation is re-emitted as a heartbeat. A value of 0 means no
    peak has been seen yet.
    """

    def __init__(
        self,
        threshold: int = 3,
        heartbeat_sec: float = 1.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        if threshold < 0:
            raise ValueError("threshold must be >= 0")
        self.threshold = threshold
        self.heartbeat_sec = heartbeat_sec
        self._clock = clock
        self.last_peak = UNSET
        self.last_peak_time = clock()

    def reset(self) -> None:
        self.last_peak = UNSET
        self.last_peak_time = self._clock()

    def band(self) -> tuple[int, int]:
        return max(self.last_peak - self.threshold, 0), self.last_peak + self.threshold

    def feed(self, sample: int, now: Optional[float] = None) -> Optional[PeakEvent]:
        now = self._clock() if now is None else now
        if self.last_peak == UNSET:
            self.last_peak = sample
            self.last_peak_time = now
            return None
        low, high = self.band()
        if sample < low or sample > high:
            event = PeakEvent(peak=self.last_peak, duration=now - self.last_peak_time)
            self.last_peak = sample
            self.last_peak_time = now
            return event
        elapsed = now - self.last_peak_time
        if elapsed >= self.heartbeat_sec:
            self.last_peak_time = now
            return PeakEvent(peak=self.last_peak, duration=elapsed, heartbeat=True)
        return None
