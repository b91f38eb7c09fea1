from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Sequence


@dataclass
class SerialSettings:
    port: str = "/dev/ttyUSB0"
    baudrate: int = 115200
    timeout: float = 5.0
    drain_timeout: float = 0.1


@dataclass
class DetectorConfig:
    threshold: int = 3
    heartbeat_sec: float = 1.0


@dataclass
class HostRuntime:
    queue_maxsize: int = 32
    reply_timeout: float = 5.0
    error_backoff_sec: float = 0.05
    stats_log_interval: float = 60.0
    broadcast_buffer: int = 100
    broadcast_events: bool = False


@dataclass
class ServerConfig:
    host: str = "127.0.0.1"
    port: int = 3000


@dataclass
class TimerConfig:
    serial: SerialSettings = field(default_factory=SerialSettings)
    detector: DetectorConfig = field(default_factory=DetectorConfig)
    host: HostRuntime = field(default_factory=HostRuntime)
    server: ServerConfig = field(default_factory=ServerConfig)
    database: Path = Path("racetimer.db")
    simulate: bool = False

    def validate(self) -> None:
        if self.detector.threshold < 0:
            raise ValueError("detector.threshold must be >= 0")
        if self.detector.heartbeat_sec <= 0:
            raise ValueError("detector.heartbeat_sec must be > 0")
        if self.host.queue_maxsize < 1:
            raise ValueError("host.queue_maxsize must be >= 1")
        if self.host.broadcast_buffer < 1:
            raise ValueError("host.broadcast_buffer must be >= 1")
        if self.serial.timeout <= 0:
            raise ValueError("serial.timeout must be > 0")


def _load_json(path: Path) -> Dict[str, Any]:
    with path.open("r", encoding="utf-8") as fh:
        return json.load(fh)


def _merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    merged: Dict[str, Any] = {**base}
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            merged[key] = _merge(base[key], value)  # type: ignore[index]
        else:
            merged[key] = value
    return merged


def load_config(path: Path | str | None = None, overrides: Sequence[str] | None = None) -> TimerConfig:
    """
    Load the timer configuration from JSON and apply CLI-style overrides.

    A missing *path* (or ``None``) yields the defaults. Overrides are dotted
    `key=value` pairs, e.g.:
        ["serial.port=/dev/ttyACM0", "detector.threshold=4"]
    """
    data: Dict[str, Any] = {}
    if path is not None and Path(path).exists():
        data = _load_json(Path(path))
    override_data: Dict[str, Any] = {}
    for override in overrides or []:
        key, raw_value = _parse_override(override)
        _assign_nested(override_data, key, raw_value)
    merged = _merge(data, override_data)
    serial_data = _section(merged, "serial")
    detector_data = _section(merged, "detector")
    host_data = _section(merged, "host")
    server_data = _section(merged, "server")
    config = TimerConfig(
        serial=SerialSettings(
            port=str(serial_data.get("port", "/dev/ttyUSB0")),
            baudrate=int(serial_data.get("baudrate", 115200)),
            timeout=float(serial_data.get("timeout", 5.0)),
            drain_timeout=float(serial_data.get("drain_timeout", 0.1)),
        ),
        detector=DetectorConfig(
            threshold=int(detector_data.get("threshold", 3)),
            heartbeat_sec=float(detector_data.get("heartbeat_sec", 1.0)),
        ),
        host=HostRuntime(
            queue_maxsize=int(host_data.get("queue_maxsize", 32)),
            reply_timeout=float(host_data.get("reply_timeout", 5.0)),
            error_backoff_sec=float(host_data.get("error_backoff_sec", 0.05)),
            stats_log_interval=float(host_data.get("stats_log_interval", 60.0)),
            broadcast_buffer=int(host_data.get("broadcast_buffer", 100)),
            broadcast_events=bool(host_data.get("broadcast_events", False)),
        ),
        server=ServerConfig(
            host=str(server_data.get("host", "127.0.0.1")),
            port=int(server_data.get("port", 3000)),
        ),
        database=Path(merged.get("database") or "racetimer.db"),
        simulate=bool(merged.get("simulate", False)),
    )
    config.validate()
    return config


def _section(data: Dict[str, Any], name: str) -> Dict[str, Any]:
    section = data.get(name) or {}
    if not isinstance(section, dict):
        raise ValueError(f"Config section '{name}' must be an object, got {section!r}")
    return section


def _parse_override(item: str) -> tuple[str, Any]:
    if "=" not in item:
        raise ValueError(f"Override '{item}' must use key=value syntax")
    key, raw_value = item.split("=", 1)
    key = key.strip()
    if not key:
        raise ValueError("Override key may not be empty")
    value = _coerce_value(raw_value.strip())
    return key, value


def _coerce_value(raw: str) -> Any:
    if raw.lower() in {"true", "false"}:
        return raw.lower() == "true"
    try:
        if "." in raw or "e" in raw.lower():
            return float(raw)
        return int(raw)
    except ValueError:
        pass
    if raw.startswith("[") and raw.endswith("]"):
        return json.loads(raw)
    if raw.startswith("{") and raw.endswith("}"):
        return json.loads(raw)
    return raw


def _assign_nested(target: Dict[str, Any], dotted_key: str, value: Any) -> None:
    cursor = target
    parts = dotted_key.split(".")
    for part in parts[:-1]:
        cursor = cursor.setdefault(part, {})
        if not isinstance(cursor, dict):
            raise ValueError(f"Override '{dotted_key}' conflicts with a scalar value for '{part}'")
    cursor[parts[-1]] = value
