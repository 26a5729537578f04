"""
Error taxonomy for the ThermSmart protocol core.
"""

from typing import Optional


class ThermSmartError(Exception):
    """Base exception for ThermSmart operations."""

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.cause = cause


class RadioUnavailableError(ThermSmartError):
    """The radio did not power on within the allowed time."""
    pass


class RadioStateChangedError(ThermSmartError):
    """The radio left the powered-on state while an operation was running."""

    def __init__(self, state, message: Optional[str] = None):
        super().__init__(message or f"State changed to {state.value}")
        self.state = state


class ScanFailedError(ThermSmartError):
    """A scan could not be started."""
    pass


class DeviceNotFoundError(ThermSmartError):
    """No matching sensor was discovered."""
    pass


class ConnectFailedError(ThermSmartError):
    """Connecting to the sensor failed."""
    pass


class SubscribeFailedError(ThermSmartError):
    """Subscribing to the notify characteristic failed."""
    pass


class WriteFailedError(ThermSmartError):
    """Writing to the command characteristic failed."""
    pass


class ProtocolMismatchError(ThermSmartError):
    """The device does not speak the expected protocol (wrong device or firmware)."""
    pass


class UnexpectedDisconnectError(ThermSmartError):
    """The sensor dropped the link while an operation was in flight."""
    pass


class CommandTimeoutError(ThermSmartError):
    """No response arrived for a command."""
    pass


class SessionStateError(ThermSmartError):
    """A session operation was called in the wrong state."""
    pass


class CommandInProgressError(SessionStateError):
    """A command was issued while another one is still outstanding."""
    pass


class SessionClosedError(SessionStateError):
    """The session was closed locally."""
    pass
