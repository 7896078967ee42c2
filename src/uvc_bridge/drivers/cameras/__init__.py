"""Camera driver module.

Provides capture and property control for UVC cameras through OpenCV, and
a digital twin for development without hardware.

Protocols:
    CameraDriver: Interface for camera discovery and opening
    CameraSession: Interface for property and capture operations

Implementations:
    OpenCVCameraDriver/OpenCVCameraSession: Real UVC devices via cv2
    DigitalTwinCameraDriver/DigitalTwinCameraSession: Simulated cameras

Processing:
    render_frame: Detection, overlay and pixel-format conversion into a
        FrameBuffer, shared by both implementations.
"""

from __future__ import annotations

from types import TracebackType
from typing import Protocol, runtime_checkable

from uvc_bridge.devices.detection import DetectionParameters
from uvc_bridge.devices.frame_buffer import FrameBuffer
from uvc_bridge.devices.properties import CameraProperty
from uvc_bridge.drivers.cameras.opencv import (
    PROPERTY_MAP,
    OpenCVCameraDriver,
    OpenCVCameraSession,
)
from uvc_bridge.drivers.cameras.processing import render_frame
from uvc_bridge.drivers.cameras.twin import (
    DEFAULT_CAMERAS,
    DigitalTwinCameraDriver,
    DigitalTwinCameraSession,
    DigitalTwinConfig,
    ImageSource,
    PropertyRange,
    create_directory_camera,
    create_file_camera,
)
from uvc_bridge.drivers.cameras.types import CameraInfo, Circle, FrameResult


@runtime_checkable
class CameraSession(Protocol):  # pragma: no cover
    """Protocol for an opened camera.

    A session owns the device exclusively until close(). It is not
    reentrant; DeviceManager serializes calls per handle.
    """

    def get_property(self, prop: CameraProperty) -> float:
        """Return the device's current value for prop.

        Raises:
            PropertyUnsupportedError: If the device rejects prop.
        """
        ...

    def set_property(self, prop: CameraProperty, value: float) -> float:
        """Request a value and return the read-back, which may be clamped.

        Raises:
            PropertyUnsupportedError: If the device rejects prop.
        """
        ...

    def capture_frame(
        self, out: FrameBuffer, params: DetectionParameters
    ) -> FrameResult:
        """Read one frame, process it and write it into out.

        On success every pixel of out has been overwritten. On failure out
        is left as it was.

        Raises:
            FrameDroppedError: No frame this time.
            DeviceTimeoutError: The read exceeded its timeout.
            DeviceDisconnectedError: The device has gone away.
        """
        ...

    def close(self) -> None:
        """Release the device. Safe to call more than once."""
        ...

    def __enter__(self) -> CameraSession:
        ...

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        ...


@runtime_checkable
class CameraDriver(Protocol):  # pragma: no cover
    """Protocol for camera discovery and opening."""

    def get_connected_cameras(self) -> dict[int, CameraInfo]:
        """Return discovery records keyed by device index."""
        ...

    def open(self, device_index: int) -> CameraSession:
        """Open a camera exclusively.

        Raises:
            DeviceUnavailableError: No such camera, or it cannot be opened.
            DeviceBusyError: The camera is already open.
        """
        ...


__all__ = [
    # Protocols
    "CameraDriver",
    "CameraSession",
    # OpenCV
    "OpenCVCameraDriver",
    "OpenCVCameraSession",
    "PROPERTY_MAP",
    # Digital twin
    "DEFAULT_CAMERAS",
    "DigitalTwinCameraDriver",
    "DigitalTwinCameraSession",
    "DigitalTwinConfig",
    "ImageSource",
    "PropertyRange",
    "create_directory_camera",
    "create_file_camera",
    # Types
    "CameraInfo",
    "Circle",
    "FrameResult",
    "render_frame",
]
