"""Simulated transponder for running without hardware."""
from __future__ import annotations

import logging
import struct
import threading
import time
from typing import Callable, Optional

import numpy as np

from .frames import DeviceInfo, RawSample, RequestCode, decode_clock, decode_sample, decode_version, pad_response

logger = logging.getLogger(__name__)


class SimulatedLink:
    """
    Drop-in replacement for :class:`TransponderLink`.

    Each sample request blocks for a random 1-5 s pause and returns a random
    signal strength in [50, 100), like a gate that is crossed at irregular
    intervals.
    """

    def __init__(
        self,
        seed: Optional[int] = None,
        rssi_range: tuple[int, int] = (50, 100),
        pause_range: tuple[float, float] = (1.0, 5.0),
        sleep: Callable[[float], None] = time.sleep,
        firmware_version: int = 1,
    ):
        self._rng = np.random.default_rng(seed)
        self._rssi_range = rssi_range
        self._pause_range = pause_range
        self._sleep = sleep
        self._firmware_version = firmware_version
        self._started = time.monotonic()
        self._lap_id = 0
        self._lock = threading.Lock()
        logger.info("Using simulated transponder (seed=%s)", seed)

    def request(self, code: int) -> bytes:
        with self._lock:
            clock_ms = int((time.monotonic() - self._started) * 1000) & 0xFFFFFFFF
            if code == RequestCode.CLOCK:
                return pad_response(struct.pack(">I", clock_ms))
            if code == RequestCode.VERSION:
                return pad_response(bytes([0, self._firmware_version]))
            if code == RequestCode.SAMPLE:
                pause = float(self._rng.uniform(*self._pause_range))
                self._sleep(pause)
                rssi = int(self._rng.integers(*self._rssi_range))
                self._lap_id = (self._lap_id + 1) & 0xFF
                return pad_response(struct.pack(">BHB", self._lap_id, clock_ms & 0xFFFF, rssi))
            return pad_response(b"")

    def read_clock(self) -> int:
        return decode_clock(self.request(RequestCode.CLOCK))

    def read_version(self) -> int:
        return decode_version(self.request(RequestCode.VERSION))

    def read_sample(self) -> RawSample:
        return decode_sample(self.request(RequestCode.SAMPLE))

    def identify(self) -> DeviceInfo:
        return DeviceInfo(clock_ms=self.read_clock(), firmware_version=self.read_version())

    def close(self) -> None:
        pass
