"""Domain-specific errors for sensorgate."""

from __future__ import annotations


class SensorGateError(Exception):
    """Base error for sensorgate."""


class ConfigLoadError(SensorGateError):
    """Raised when reading configuration sources fails."""


class SchemaValidationError(SensorGateError):
    """Raised when a configuration file does not conform to schema or semantics."""


class DecodeError(SensorGateError):
    """Base error for frames that cannot be tokenized."""


class UnknownFieldError(DecodeError):
    """Raised when a token names a field missing from the message schema."""

    def __init__(self, name: str, suggestion: str | None) -> None:
        self.name = name
        self.suggestion = suggestion
        message = f'Unknown field label "{name}".'
        if suggestion is not None:
            message += f' Did you mean "{suggestion}"?'
        super().__init__(message)


class FieldValueError(DecodeError):
    """Raised when a field decoder rejects its raw value."""

    def __init__(self, field: str, raw_value: str | None, reason: str) -> None:
        self.field = field
        self.raw_value = raw_value
        super().__init__(f"{field}: {reason}: {raw_value!r}")


class MissingIdError(DecodeError):
    """Raised when a frame carries no sender identity."""


class SessionError(SensorGateError):
    """Base error for out-of-order session control."""


class NoSessionError(SessionError):
    """Raised on sensor data or session end without an open session."""


class EmptySessionError(SessionError):
    """Raised when a session ends without any rows."""


class CapacityError(SessionError):
    """Raised when a session buffer is full."""


class TransportError(SensorGateError):
    """Base transport error."""


class TransportOpenError(TransportError):
    """Raised when a serial port cannot be opened."""


class TransportWriteError(TransportError):
    """Raised when writing to the serial port fails."""


class HandshakeTimeout(SensorGateError):
    """Raised when a device does not answer the identify challenge in time."""


class PortSelectionError(SensorGateError):
    """Raised when a manual port choice cannot be resolved to a device."""


class CommandError(SensorGateError):
    """Raised when a console line or backend command cannot become a send request."""
