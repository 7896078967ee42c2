"""OpenCV Camera Driver - UVC cameras through cv2.VideoCapture.

Hardware half of the CameraDriver protocol. Every VideoCapture call for a
session runs on that session's single worker thread, and the caller waits
on it with ``capture_timeout_s``:

    caller ──submit──▶ [ThreadPoolExecutor(max_workers=1)] ──▶ VideoCapture
           ◀─result(timeout)──

A read that outlives the timeout surfaces as DeviceTimeoutError while the
worker keeps waiting on the device. Because the worker is single-threaded,
later property calls queue behind the stuck read instead of touching the
capture concurrently, and close() queues the release behind it.

The device writes into a private array returned by ``read()``; only a
completed read is rendered into the caller's FrameBuffer, so a late read
can never scribble over the shared buffer.

Property support:
    OpenCV offers no capability query. A property is treated as supported
    until ``VideoCapture.set`` returns False for it, after which it raises
    PropertyUnsupportedError for the rest of the session.

Example:
    driver = OpenCVCameraDriver(capture_timeout_s=1.0)
    with driver.open(0) as session:
        session.set_property(CameraProperty.FRAME_WIDTH, 640)
        result = session.capture_frame(buffer, DetectionParameters())
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable, Mapping
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from types import MappingProxyType, TracebackType
from typing import Any, TypeVar, final

import cv2

from uvc_bridge.devices.detection import DetectionParameters
from uvc_bridge.devices.errors import (
    DeviceBusyError,
    DeviceDisconnectedError,
    DeviceTimeoutError,
    DeviceUnavailableError,
    FrameDroppedError,
    InvalidHandleError,
    PropertyUnsupportedError,
)
from uvc_bridge.devices.frame_buffer import FrameBuffer
from uvc_bridge.devices.properties import CameraProperty
from uvc_bridge.drivers.cameras.processing import render_frame
from uvc_bridge.drivers.cameras.types import CameraInfo, FrameResult
from uvc_bridge.observability import get_logger

logger = get_logger(__name__)

__all__ = [
    "DEFAULT_CAPTURE_TIMEOUT_S",
    "PROPERTY_MAP",
    "OpenCVCameraDriver",
    "OpenCVCameraSession",
]

T = TypeVar("T")

DEFAULT_CAPTURE_TIMEOUT_S = 2.0
MIN_CLOSE_WAIT_S = 1.0

#: Indices scanned by get_connected_cameras().
DEFAULT_MAX_SCAN = 4

PROPERTY_MAP: Mapping[CameraProperty, int] = MappingProxyType(
    {
        CameraProperty.FRAME_WIDTH: cv2.CAP_PROP_FRAME_WIDTH,
        CameraProperty.FRAME_HEIGHT: cv2.CAP_PROP_FRAME_HEIGHT,
        CameraProperty.FPS: cv2.CAP_PROP_FPS,
        CameraProperty.EXPOSURE: cv2.CAP_PROP_EXPOSURE,
        CameraProperty.GAIN: cv2.CAP_PROP_GAIN,
        CameraProperty.CONTRAST: cv2.CAP_PROP_CONTRAST,
        CameraProperty.ISO_SPEED: cv2.CAP_PROP_ISO_SPEED,
        CameraProperty.SATURATION: cv2.CAP_PROP_SATURATION,
    }
)

# A UVC device can only be streamed by one VideoCapture at a time; this
# registry covers every driver instance in the process.
_held_indices: set[int] = set()
_held_lock = threading.Lock()


def _claim_index(device_index: int) -> None:
    with _held_lock:
        if device_index in _held_indices:
            raise DeviceBusyError(f"Camera {device_index} is already open")
        _held_indices.add(device_index)


def _release_index(device_index: int) -> None:
    with _held_lock:
        _held_indices.discard(device_index)


@final
class OpenCVCameraDriver:
    """Camera driver for UVC devices via cv2.VideoCapture."""

    def __init__(
        self,
        capture_timeout_s: float = DEFAULT_CAPTURE_TIMEOUT_S,
        api_preference: int = cv2.CAP_ANY,
        max_scan: int = DEFAULT_MAX_SCAN,
    ) -> None:
        """Initialize the driver.

        Args:
            capture_timeout_s: Bound on every blocking VideoCapture call.
            api_preference: OpenCV backend, e.g. cv2.CAP_DSHOW on Windows or
                cv2.CAP_V4L2 on Linux. CAP_ANY lets OpenCV choose.
            max_scan: Indices scanned by get_connected_cameras().

        Raises:
            ValueError: If capture_timeout_s is not positive.
        """
        if capture_timeout_s <= 0:
            raise ValueError(
                f"capture_timeout_s must be positive, got {capture_timeout_s}"
            )
        self.capture_timeout_s = capture_timeout_s
        self.api_preference = api_preference
        self.max_scan = max_scan

    def __repr__(self) -> str:
        return (
            f"OpenCVCameraDriver(api_preference={self.api_preference}, "
            f"capture_timeout_s={self.capture_timeout_s})"
        )

    def get_connected_cameras(self) -> dict[int, CameraInfo]:
        """Try indices 0..max_scan-1 and describe the ones that open.

        Indices currently held by an open session are skipped rather than
        opened a second time.
        """
        cameras: dict[int, CameraInfo] = {}
        for index in range(self.max_scan):
            with _held_lock:
                if index in _held_indices:
                    continue
            cap = cv2.VideoCapture(index, self.api_preference)
            try:
                if not cap.isOpened():
                    continue
                cameras[index] = CameraInfo(
                    Name=f"UVC camera {index}",
                    MaxWidth=int(cap.get(cv2.CAP_PROP_FRAME_WIDTH) or 0),
                    MaxHeight=int(cap.get(cv2.CAP_PROP_FRAME_HEIGHT) or 0),
                    MaxFPS=float(cap.get(cv2.CAP_PROP_FPS) or 0.0),
                    Backend=cap.getBackendName(),
                )
            finally:
                cap.release()
        logger.debug("Scanned UVC cameras", count=len(cameras))
        return cameras

    def open(self, device_index: int) -> OpenCVCameraSession:
        """Open a camera exclusively for this process.

        Args:
            device_index: OpenCV camera index.

        Returns:
            Session owning the VideoCapture.

        Raises:
            DeviceBusyError: If another session in this process holds it.
            DeviceUnavailableError: If OpenCV cannot open the device.
        """
        _claim_index(device_index)
        try:
            cap = cv2.VideoCapture(device_index, self.api_preference)
        except cv2.error as e:
            _release_index(device_index)
            raise DeviceUnavailableError(
                f"Failed to open camera {device_index}: {e}"
            ) from e

        if not cap.isOpened():
            cap.release()
            _release_index(device_index)
            logger.error("Camera could not be opened", device_index=device_index)
            raise DeviceUnavailableError(f"Camera {device_index} could not be opened")

        logger.info(
            "Camera opened",
            device_index=device_index,
            backend=self.api_preference,
            capture_timeout_s=self.capture_timeout_s,
        )
        return OpenCVCameraSession(device_index, cap, self.capture_timeout_s)


@final
class OpenCVCameraSession:
    """An open UVC camera. All device I/O goes through one worker thread."""

    def __init__(
        self,
        device_index: int,
        capture: cv2.VideoCapture,
        capture_timeout_s: float = DEFAULT_CAPTURE_TIMEOUT_S,
    ) -> None:
        self._device_index = device_index
        self._cap = capture
        self._timeout = capture_timeout_s
        self._executor = ThreadPoolExecutor(
            max_workers=1, thread_name_prefix=f"uvc-camera-{device_index}"
        )
        self._unsupported: set[CameraProperty] = set()
        self._sequence = 0
        self._closed = False

    def __enter__(self) -> OpenCVCameraSession:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        self.close()

    def __repr__(self) -> str:
        state = "closed" if self._closed else "open"
        return f"OpenCVCameraSession(device_index={self._device_index}, {state})"

    @property
    def device_index(self) -> int:
        return self._device_index

    def get_property(self, prop: CameraProperty) -> float:
        """Read prop from the device.

        Raises:
            InvalidHandleError: If the session is closed.
            PropertyUnsupportedError: If an earlier write of prop was rejected.
            DeviceTimeoutError: If the device did not answer in time.
        """
        self._check_open()
        if prop in self._unsupported:
            raise PropertyUnsupportedError(prop.name)
        return float(self._call(self._cap.get, PROPERTY_MAP[prop]))

    def set_property(self, prop: CameraProperty, value: float) -> float:
        """Write prop and return what the device reports afterwards.

        Raises:
            InvalidHandleError: If the session is closed.
            PropertyUnsupportedError: If the backend rejects the write.
            DeviceTimeoutError: If the device did not answer in time.
        """
        self._check_open()
        if prop in self._unsupported:
            raise PropertyUnsupportedError(prop.name)
        cv_id = PROPERTY_MAP[prop]
        if not self._call(self._cap.set, cv_id, float(value)):
            self._unsupported.add(prop)
            logger.warning(
                "Backend rejected property",
                device_index=self._device_index,
                property=prop.name,
                value=value,
            )
            raise PropertyUnsupportedError(prop.name)
        return float(self._call(self._cap.get, cv_id))

    def capture_frame(
        self, out: FrameBuffer, params: DetectionParameters
    ) -> FrameResult:
        """Read one frame and render it into out.

        Raises:
            InvalidHandleError: If the session is closed.
            DeviceTimeoutError: If read() exceeded capture_timeout_s.
            FrameDroppedError: If read() returned no frame.
            DeviceDisconnectedError: If the capture is no longer open.
        """
        self._check_open()
        start = time.perf_counter()
        try:
            ok, frame = self._call(self._cap.read)
        except cv2.error as e:
            raise FrameDroppedError(
                f"Camera {self._device_index} read failed: {e}"
            ) from e

        if not ok or frame is None:
            if not self._call(self._cap.isOpened):
                logger.error("Camera disconnected", device_index=self._device_index)
                raise DeviceDisconnectedError(
                    f"Camera {self._device_index} disconnected"
                )
            raise FrameDroppedError(f"Camera {self._device_index} returned no frame")

        read_ms = (time.perf_counter() - start) * 1000
        self._sequence += 1
        result = render_frame(frame, out, params, self._sequence)
        logger.debug(
            "Frame read",
            device_index=self._device_index,
            sequence=self._sequence,
            read_ms=round(read_ms, 2),
        )
        return result

    def close(self) -> None:
        """Release the device after any pending read. Idempotent.

        The release is queued behind the pending call on the worker thread,
        so it never races a read. close() waits at most
        max(capture_timeout_s, MIN_CLOSE_WAIT_S) for it; if the device is
        still stuck after that, close() returns and the release (and the
        device index) completes whenever the stuck call does.
        """
        if self._closed:
            return
        self._closed = True
        device_index = self._device_index
        release = self._executor.submit(self._cap.release)
        self._executor.shutdown(wait=False)
        try:
            release.result(timeout=max(self._timeout, MIN_CLOSE_WAIT_S))
        except FutureTimeoutError:
            logger.warning(
                "Pending camera call outlived close, release deferred",
                device_index=device_index,
            )
            release.add_done_callback(lambda _: _release_index(device_index))
            return
        except cv2.error as e:
            logger.warning(
                "Error releasing camera", device_index=device_index, error=str(e)
            )
        _release_index(device_index)
        logger.info("Camera closed", device_index=device_index)

    # -------------------------------------------------------------------------

    def _check_open(self) -> None:
        if self._closed:
            raise InvalidHandleError(f"Camera {self._device_index} session is closed")

    def _call(self, fn: Callable[..., T], *args: Any) -> T:
        """Run fn on the worker thread, bounded by the capture timeout."""
        future = self._executor.submit(fn, *args)
        try:
            return future.result(timeout=self._timeout)
        except FutureTimeoutError as e:
            logger.warning(
                "Camera call timed out",
                device_index=self._device_index,
                call=getattr(fn, "__name__", repr(fn)),
                timeout_s=self._timeout,
            )
            raise DeviceTimeoutError(
                f"Camera {self._device_index} did not respond within {self._timeout}s"
            ) from e
