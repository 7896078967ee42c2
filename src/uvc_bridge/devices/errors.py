"""Exception taxonomy shared by the device layer and the drivers.

Every error derives from BridgeError so callers can catch the whole family.
Where a builtin exception already names the condition the error also
subclasses it (ValueError, MemoryError, TimeoutError), which keeps
``except TimeoutError`` working for code that doesn't know about us.

Fatal vs. non-fatal:
    FrameDroppedError and DeviceTimeoutError are per-tick outcomes. The
    acquisition loop reports them and keeps streaming.
    DeviceDisconnectedError ends the session.
"""

from __future__ import annotations

__all__ = [
    "BridgeError",
    "DeviceBusyError",
    "DeviceDisconnectedError",
    "DeviceTimeoutError",
    "DeviceUnavailableError",
    "FrameDroppedError",
    "InvalidHandleError",
    "InvalidParametersError",
    "OutOfResourcesError",
    "PropertyUnsupportedError",
    "TickInProgressError",
]


class BridgeError(Exception):
    """Base exception for uvc-bridge operations."""

    pass


class DeviceUnavailableError(BridgeError):
    """Raised when no camera is present or it cannot be opened."""

    pass


class DeviceBusyError(BridgeError):
    """Raised when the requested camera is already held."""

    pass


class InvalidHandleError(BridgeError):
    """Raised on a released, unknown or wrong-state handle or buffer."""

    pass


class PropertyUnsupportedError(BridgeError):
    """Raised when the device rejects a property id."""

    def __init__(self, prop: object, message: str | None = None) -> None:
        self.prop = prop
        super().__init__(message or f"Property not supported by device: {prop}")


class InvalidParametersError(BridgeError, ValueError):
    """Raised for bad detection parameters or an incompatible buffer."""

    pass


class OutOfResourcesError(BridgeError, MemoryError):
    """Raised when a frame buffer cannot be allocated."""

    pass


class FrameDroppedError(BridgeError):
    """Raised when the device produced no frame this tick."""

    pass


class DeviceTimeoutError(BridgeError, TimeoutError):
    """Raised when a blocking device call exceeds its timeout."""

    pass


class DeviceDisconnectedError(BridgeError):
    """Raised when the device has gone away. Fatal to the session."""

    pass


class TickInProgressError(BridgeError):
    """Raised when run_once is entered while another tick is running."""

    pass
