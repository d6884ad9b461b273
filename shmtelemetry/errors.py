"""Exception taxonomy shared by the codec, the record store and the intensity engine.

Every error is non-retryable for the unit that raised it: the caller logs it
and moves on to the next message, frame or window.
"""

from __future__ import annotations

from typing import Any


class TelemetryError(ValueError):
    pass


class ProtocolError(TelemetryError):
    """A byte payload does not match the accelerometer wire format.

    ``partial`` holds whatever was decoded before the failure; callers must
    discard it rather than feed it downstream.
    """

    def __init__(
        self,
        message: str,
        *,
        offset: int = 0,
        declared: int | None = None,
        actual: int | None = None,
        partial: Any = None,
    ) -> None:
        super().__init__(message)
        self.offset = offset
        self.declared = declared
        self.actual = actual
        self.partial = partial if partial is not None else []


class SizeOverflow(ProtocolError):
    pass


class TruncatedPacket(ProtocolError):
    pass


class EnvelopeTooShort(ProtocolError):
    pass


class TruncatedInput(ProtocolError):
    pass


class CorruptFrame(TelemetryError):
    """A record frame's length-prefixed section ends before its declared size."""

    def __init__(
        self,
        message: str,
        *,
        offset: int,
        declared: int,
        actual: int,
        frames: list | None = None,
    ) -> None:
        super().__init__(message)
        self.offset = offset
        self.declared = declared
        self.actual = actual
        self.frames = frames if frames is not None else []


class InsufficientWindow(TelemetryError):
    def __init__(self, message: str, *, required: int, actual: int) -> None:
        super().__init__(message)
        self.required = required
        self.actual = actual


class IntensityDomainError(TelemetryError):
    """The percentile amplitude is zero, negative or not finite."""

    def __init__(self, message: str, *, amplitude: float) -> None:
        super().__init__(message)
        self.amplitude = amplitude


class RecordStoreClosed(RuntimeError):
    pass
