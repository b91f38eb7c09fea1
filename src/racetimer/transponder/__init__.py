"""
Transponder link, gate-crossing detection and the worker loop.

The worker owns the serial link and turns its signal-strength samples into
crossing events bound to the active race. Control callers talk to it only
through a :class:`CommandChannel`.
"""

from .commands import Command, CommandChannel, GetCount, Increment, StartRace, StopRace
from .config import DetectorConfig, HostRuntime, SerialSettings, ServerConfig, TimerConfig, load_config
from .detector import PeakDetector, PeakEvent
from .frames import (
    DeviceInfo,
    RawSample,
    RequestCode,
    decode_clock,
    decode_ns,
    decode_sample,
    decode_version,
    encode_ns,
)
from .link import TransponderLink, open_link
from .simulator import SimulatedLink
from .worker import NodeEvent, RaceContext, TimerWorker

__all__ = [
    "Command",
    "CommandChannel",
    "GetCount",
    "Increment",
    "StartRace",
    "StopRace",
    "DetectorConfig",
    "HostRuntime",
    "SerialSettings",
    "ServerConfig",
    "TimerConfig",
    "load_config",
    "PeakDetector",
    "PeakEvent",
    "DeviceInfo",
    "RawSample",
    "RequestCode",
    "decode_clock",
    "decode_ns",
    "decode_sample",
    "decode_version",
    "encode_ns",
    "TransponderLink",
    "open_link",
    "SimulatedLink",
    "NodeEvent",
    "RaceContext",
    "TimerWorker",
]
