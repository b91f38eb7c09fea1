from __future__ import annotations

import logging
import threading
import time
from typing import Optional

import serial

from ..exceptions import LinkIOError, LinkTimeoutError, NoDataError, PortUnavailableError
from .config import SerialSettings
from .frames import (
    RESPONSE_SIZE,
    DeviceInfo,
    RawSample,
    RequestCode,
    decode_clock,
    decode_sample,
    decode_version,
    pad_response,
)

logger = logging.getLogger(__name__)


class TransponderLink:
    """
    Request/response channel to the transponder.

    Every request writes one code byte and performs exactly one blocking read
    of up to ``RESPONSE_SIZE`` bytes. The lock is held for the whole exchange,
    so the link can be shared between the event loop and a helper thread.
    """

    def __init__(self, handle, settings: SerialSettings):
        self._serial = handle
        self.settings = settings
        self._lock = threading.Lock()
        self._closed = False

    @classmethod
    def open(cls, settings: SerialSettings) -> "TransponderLink":
        try:
            handle = serial.Serial(
                port=settings.port,
                baudrate=settings.baudrate,
                bytesize=serial.EIGHTBITS,
                parity=serial.PARITY_NONE,
                stopbits=serial.STOPBITS_ONE,
                xonxoff=False,
                rtscts=False,
                dsrdtr=False,
                timeout=settings.timeout,
            )
            # Pulsing DTR resets the board; it must be asserted after open.
            handle.dtr = True
        except (serial.SerialException, OSError, ValueError) as exc:
            raise PortUnavailableError(
                f"Cannot open {settings.port} @ {settings.baudrate}: {exc}", port=settings.port
            ) from exc
        link = cls(handle, settings)
        try:
            link._drain()
        except (serial.SerialException, OSError) as exc:
            link.close()
            raise PortUnavailableError(f"Cannot drain {settings.port}: {exc}", port=settings.port) from exc
        logger.info("Transponder ready on %s @ %d baud", settings.port, settings.baudrate)
        return link

    def _drain(self) -> int:
        cleared = 0
        self._serial.timeout = self.settings.drain_timeout
        try:
            while True:
                chunk = self._serial.read(RESPONSE_SIZE)
                if not chunk:
                    break
                cleared += len(chunk)
                logger.debug("Cleared %d bytes from input buffer", len(chunk))
        finally:
            self._serial.timeout = self.settings.timeout
        return cleared

    def request(self, code: int) -> bytes:
        with self._lock:
            if self._closed:
                raise LinkIOError("Link is closed", code=code)
            started = time.monotonic()
            try:
                self._serial.write(bytes([code]))
                self._serial.flush()
                data = self._read_response()
            except serial.SerialTimeoutException as exc:
                raise LinkTimeoutError(f"Write timeout for 0x{code:02X}", code=code) from exc
            except (serial.SerialException, OSError) as exc:
                raise LinkIOError(f"I/O error for 0x{code:02X}: {exc}", code=code) from exc
            elapsed = time.monotonic() - started
        if not data:
            if elapsed >= self.settings.timeout:
                raise LinkTimeoutError(f"Read timeout for 0x{code:02X} after {elapsed:.1f}s", code=code)
            raise NoDataError(f"No data received for 0x{code:02X}", code=code)
        logger.debug("0x%02X -> %d bytes: %s", code, len(data), bytes(data[:8]).hex(" "))
        return pad_response(data)

    def _read_response(self) -> bytes:
        # read(n) waits for all n bytes or the timeout; the device sends only a
        # few, so block for the first one and take what arrived with it.
        data = bytearray(self._serial.read(1))
        while data and len(data) < RESPONSE_SIZE:
            waiting = min(self._serial.in_waiting, RESPONSE_SIZE - len(data))
            if not waiting:
                break
            data += self._serial.read(waiting)
        return bytes(data)

    def read_clock(self) -> int:
        return decode_clock(self.request(RequestCode.CLOCK))

    def read_version(self) -> int:
        return decode_version(self.request(RequestCode.VERSION))

    def read_sample(self) -> RawSample:
        return decode_sample(self.request(RequestCode.SAMPLE))

    def identify(self) -> DeviceInfo:
        return DeviceInfo(clock_ms=self.read_clock(), firmware_version=self.read_version())

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
            try:
                self._serial.close()
            except (serial.SerialException, OSError):
                logger.debug("Error closing %s", self.settings.port, exc_info=True)


def open_link(settings: SerialSettings, simulate: bool = False, seed: Optional[int] = None):
    if simulate:
        from .simulator import SimulatedLink

        return SimulatedLink(seed=seed)
    return TransponderLink.open(settings)
