"""Custom exceptions for serial session, flashing and console operations."""

from __future__ import annotations


class EspSerialToolsError(Exception):
    """Common base exception for all esp_serial_tools errors."""
    pass


class SerialCommunicationError(EspSerialToolsError):
    """Base exception for I/O failures on an open serial port.

    Raised when writing, reading, or toggling control lines fails after the
    port was opened successfully.
    """
    pass


class PortNotOpenError(SerialCommunicationError):
    """Exception for operations attempted on a closed serial resource."""
    pass


class SerialConnectionError(EspSerialToolsError):
    """Base exception for failures while establishing a connection.

    The session always returns to ``DISCONNECTED`` when one of these is
    raised from ``connect``.
    """
    pass


class NoPortSelectedError(SerialConnectionError):
    """Exception for a dismissed or empty port selection."""
    pass


class PortUnavailableError(SerialConnectionError):
    """Exception for a port that cannot be opened (busy, missing, no permission)."""
    pass


class HandshakeError(SerialConnectionError):
    """Exception for a failed bootloader handshake after the port was opened."""
    pass


class OperationNotPermittedError(EspSerialToolsError):
    """Exception for an action that is invalid in the current session state.

    Attributes:
        operation: The rejected operation name.
        state: The session state at the time of the request.
    """

    def __init__(self, message: str, *, operation: str, state: str) -> None:
        super().__init__(message)
        self.operation = operation
        self.state = state


class FlashError(EspSerialToolsError):
    """Exception for a failed flash or erase job.

    Attributes:
        stage: The job stage that failed (``validate``, ``connect``,
            ``write``, ``finalize``, ``reset`` or ``erase``).
        detail: The underlying error message.
    """

    def __init__(self, message: str, *, stage: str, detail: str = "") -> None:
        super().__init__(message)
        self.stage = stage
        self.detail = detail


class EmptyFirmwareError(FlashError):
    """Exception for a flash request with no firmware bytes."""

    def __init__(self, message: str) -> None:
        super().__init__(message, stage="validate", detail="empty firmware image")


class ResourceReleaseError(EspSerialToolsError):
    """Exception for failures while releasing the port during disconnect.

    Never propagated out of ``disconnect``; created so the failure is logged
    with a consistent type.
    """
    pass
