"""Device handles and the device manager.

DeviceManager is the boundary between the acquisition loop and a camera
driver. It hands out opaque DeviceHandle values and resolves them back to
driver sessions on every call, so a released or forged handle is rejected
here and never reaches the driver.

Example:
    from uvc_bridge.devices.device import DeviceManager
    from uvc_bridge.drivers.cameras import DigitalTwinCameraDriver

    manager = DeviceManager(DigitalTwinCameraDriver())
    handle = manager.acquire_device()
    try:
        width = manager.set_property(handle, CameraProperty.FRAME_WIDTH, 640)
        result = manager.capture_frame(handle, buffer, DetectionParameters())
    finally:
        manager.release_device(handle)
"""

from __future__ import annotations

import itertools
import threading
from dataclasses import dataclass
from typing import TYPE_CHECKING

from uvc_bridge.devices.detection import DetectionParameters
from uvc_bridge.devices.errors import (
    BridgeError,
    DeviceBusyError,
    DeviceUnavailableError,
    InvalidHandleError,
)
from uvc_bridge.devices.frame_buffer import FrameBuffer
from uvc_bridge.devices.properties import CameraProperty
from uvc_bridge.observability import get_logger

if TYPE_CHECKING:
    from uvc_bridge.drivers.cameras import CameraDriver, CameraSession
    from uvc_bridge.drivers.cameras.types import CameraInfo, FrameResult

logger = get_logger(__name__)

__all__ = ["DeviceHandle", "DeviceManager"]

_serials = itertools.count(1)


@dataclass(frozen=True)
class DeviceHandle:
    """Opaque reference to one acquisition of a camera.

    Attributes:
        device_index: Camera index the handle was acquired for.
        serial: Process-unique number of this acquisition. Re-acquiring the
            same camera yields a different serial, so a stale handle never
            aliases a new one.
    """

    device_index: int
    serial: int


@dataclass
class _Slot:
    session: CameraSession
    lock: threading.Lock


class DeviceManager:
    """Owns open camera sessions and the handles that refer to them.

    Exactly one live handle exists per camera index. Every call on a handle
    runs under that handle's lock, so property calls and captures on one
    device never interleave.
    """

    def __init__(self, driver: CameraDriver) -> None:
        """Create a manager over driver.

        Args:
            driver: Camera driver used to open devices.
        """
        self._driver = driver
        self._slots: dict[DeviceHandle, _Slot] = {}
        self._lock = threading.Lock()

    def __repr__(self) -> str:
        return f"DeviceManager(driver={self._driver!r}, live={len(self._slots)})"

    @property
    def driver(self) -> CameraDriver:
        return self._driver

    @property
    def live_handles(self) -> list[DeviceHandle]:
        with self._lock:
            return list(self._slots)

    def get_connected_cameras(self) -> dict[int, CameraInfo]:
        return self._driver.get_connected_cameras()

    def is_live(self, handle: DeviceHandle) -> bool:
        with self._lock:
            return handle in self._slots

    def acquire_device(self, device_index: int = 0) -> DeviceHandle:
        """Open a camera and return a handle for it.

        Args:
            device_index: Camera to open; 0 is the first/default camera.

        Returns:
            New live handle.

        Raises:
            DeviceBusyError: If this manager or the driver already holds it.
            DeviceUnavailableError: If the camera is missing or won't open.
        """
        with self._lock:
            if any(h.device_index == device_index for h in self._slots):
                raise DeviceBusyError(f"Camera {device_index} is already acquired")

        try:
            session = self._driver.open(device_index)
        except BridgeError:
            raise
        except Exception as e:
            raise DeviceUnavailableError(
                f"Failed to open camera {device_index}: {e}"
            ) from e

        handle = DeviceHandle(device_index=device_index, serial=next(_serials))
        with self._lock:
            self._slots[handle] = _Slot(session=session, lock=threading.Lock())
        logger.info("Device acquired", device_index=device_index, serial=handle.serial)
        return handle

    def release_device(self, handle: DeviceHandle) -> None:
        """Close the session behind handle.

        Waits for any in-flight call on the handle to finish first.

        Raises:
            InvalidHandleError: If handle is released or was never acquired.
        """
        with self._lock:
            slot = self._slots.pop(handle, None)
        if slot is None:
            raise InvalidHandleError(f"Handle {handle} is not live")

        with slot.lock:
            slot.session.close()
        logger.info(
            "Device released", device_index=handle.device_index, serial=handle.serial
        )

    def get_property(self, handle: DeviceHandle, prop: CameraProperty) -> float:
        """Return the device's current value of prop.

        Raises:
            InvalidHandleError: If handle is not live.
            PropertyUnsupportedError: If the device rejects prop.
        """
        slot = self._slot(handle)
        with slot.lock:
            return slot.session.get_property(CameraProperty(prop))

    def set_property(
        self, handle: DeviceHandle, prop: CameraProperty, value: float
    ) -> float:
        """Request prop=value and return the value the device reports back.

        Raises:
            InvalidHandleError: If handle is not live.
            PropertyUnsupportedError: If the device rejects prop.
        """
        slot = self._slot(handle)
        with slot.lock:
            return slot.session.set_property(CameraProperty(prop), float(value))

    def capture_frame(
        self,
        handle: DeviceHandle,
        out: FrameBuffer,
        params: DetectionParameters,
    ) -> FrameResult:
        """Capture one processed frame into out.

        Parameters and buffer layout are checked before the device is
        touched, so a rejected call leaves both device and buffer as they
        were.

        Raises:
            InvalidHandleError: If handle is not live or out was released.
            InvalidParametersError: Invalid params or a malformed buffer.
            FrameDroppedError: No frame this time.
            DeviceTimeoutError: The read exceeded its timeout.
            DeviceDisconnectedError: The device has gone away.
        """
        slot = self._slot(handle)
        params.validate()
        out.check_compatible(out.width, out.height)
        with slot.lock:
            return slot.session.capture_frame(out, params)

    def release_all(self) -> None:
        """Release every live handle, logging rather than raising on errors."""
        for handle in self.live_handles:
            try:
                self.release_device(handle)
            except Exception as e:
                logger.warning(
                    "Error releasing device",
                    device_index=handle.device_index,
                    error=str(e),
                )

    def _slot(self, handle: DeviceHandle) -> _Slot:
        with self._lock:
            slot = self._slots.get(handle)
        if slot is None:
            raise InvalidHandleError(f"Handle {handle} is not live")
        return slot
