from __future__ import annotations

import enum
import struct
from dataclasses import dataclass

RESPONSE_SIZE = 256
NS_BLOB_SIZE = 8
NS_MAX = (1 << (8 * NS_BLOB_SIZE)) - 1


class RequestCode(enum.IntEnum):
    CLOCK = 0x33
    VERSION = 0x3D
    SAMPLE = 0x0D


@dataclass(frozen=True)
class RawSample:
    lap_id: int
    ms_val: int
    rssi: int


@dataclass(frozen=True)
class DeviceInfo:
    clock_ms: int
    firmware_version: int


def pad_response(data: bytes) -> bytes:
    """Return *data* as a fixed-size response buffer (zero-filled, truncated)."""
    return bytes(data[:RESPONSE_SIZE]).ljust(RESPONSE_SIZE, b"\x00")


def _check(buffer: bytes, needed: int) -> None:
    if len(buffer) < needed:
        raise ValueError(f"Response buffer too short: {len(buffer)} < {needed} bytes")


def decode_clock(buffer: bytes) -> int:
    """Device clock in milliseconds, big-endian in bytes 0-3."""
    _check(buffer, 4)
    return struct.unpack_from(">I", buffer, 0)[0]


def decode_version(buffer: bytes) -> int:
    _check(buffer, 2)
    return buffer[1]


def decode_sample(buffer: bytes) -> RawSample:
    _check(buffer, 4)
    lap_id, ms_val, rssi = struct.unpack_from(">BHB", buffer, 0)
    return RawSample(lap_id=lap_id, ms_val=ms_val, rssi=rssi)


def encode_ns(value: int) -> bytes:
    """Encode a nanosecond count as an 8-byte big-endian blob."""
    if value < 0 or value > NS_MAX:
        raise ValueError(f"Nanosecond value out of range: {value}")
    return value.to_bytes(NS_BLOB_SIZE, "big")


def decode_ns(blob: bytes) -> int:
    # Older rows hold 16-byte values; any width decodes the same way.
    if not blob:
        raise ValueError("Empty nanosecond blob")
    return int.from_bytes(bytes(blob), "big")
