"""Exception hierarchy for racetimer."""

from __future__ import annotations


class RaceTimerError(Exception):
    """Base exception for all racetimer errors."""


class PortUnavailableError(RaceTimerError):
    """The serial port could not be opened or configured."""

    def __init__(self, message: str, *, port: str = "") -> None:
        self.port = port
        super().__init__(message)


class LinkError(RaceTimerError):
    """Transient failure of a single hardware request."""

    def __init__(self, message: str, *, code: int | None = None) -> None:
        self.code = code
        super().__init__(message)


class LinkTimeoutError(LinkError, TimeoutError):
    """The device did not answer before the read timeout expired."""


class NoDataError(LinkError):
    """The read returned zero bytes (no sample available yet)."""


class LinkIOError(LinkError):
    """Write, flush or read failed at the OS/driver level."""


class PersistenceError(RaceTimerError):
    """A database operation failed."""


class ChannelClosedError(RaceTimerError):
    """The worker is gone; the command channel no longer accepts or answers."""
