"""Output sinks: where a processed frame buffer goes each tick.

The acquisition loop calls ``sink.consume(buffer, result)`` inside run_once
and the next tick overwrites the buffer, so consume() must finish with the
pixels before returning. A sink that needs them later copies or encodes
them, as JpegSink does.
"""

from __future__ import annotations

import threading
from typing import TYPE_CHECKING, Protocol, runtime_checkable

import cv2

from uvc_bridge.devices.frame_buffer import FrameBuffer, PixelFormat
from uvc_bridge.observability import get_logger

if TYPE_CHECKING:
    from uvc_bridge.drivers.cameras.types import FrameResult

logger = get_logger(__name__)

__all__ = ["JpegSink", "NullSink", "OutputSink", "WindowSink"]

DEFAULT_JPEG_QUALITY = 85

_TO_BGR = {
    PixelFormat.RGBA: cv2.COLOR_RGBA2BGR,
    PixelFormat.BGRA: cv2.COLOR_BGRA2BGR,
}


@runtime_checkable
class OutputSink(Protocol):  # pragma: no cover
    """Consumer of processed frames."""

    def consume(self, buffer: FrameBuffer, result: FrameResult) -> None:
        """Use the buffer's pixels. Must not keep a reference to buffer.data."""
        ...


class NullSink:
    """Discards frames, counting them."""

    def __init__(self) -> None:
        self.frames = 0
        self.last_result: FrameResult | None = None

    def consume(self, buffer: FrameBuffer, result: FrameResult) -> None:
        self.frames += 1
        self.last_result = result


class JpegSink:
    """Keeps the latest frame as JPEG bytes for readers on other threads.

    Example:
        sink = JpegSink()
        loop = AcquisitionLoop(manager, sink=sink)
        ...
        sequence, jpeg = sink.wait_for_frame(after=0, timeout=1.0)
    """

    def __init__(self, quality: int = DEFAULT_JPEG_QUALITY) -> None:
        if not 0 <= quality <= 100:
            raise ValueError(f"JPEG quality must be 0-100, got {quality}")
        self.quality = quality
        self._cond = threading.Condition()
        self._latest: bytes | None = None
        self._sequence = 0
        self.last_result: FrameResult | None = None

    @property
    def sequence(self) -> int:
        """Number of frames encoded so far."""
        with self._cond:
            return self._sequence

    def consume(self, buffer: FrameBuffer, result: FrameResult) -> None:
        """Encode the buffer to JPEG and publish it."""
        bgr = cv2.cvtColor(buffer.data, _TO_BGR[buffer.pixel_format])
        ok, encoded = cv2.imencode(
            ".jpg", bgr, [cv2.IMWRITE_JPEG_QUALITY, self.quality]
        )
        if not ok:
            logger.warning("JPEG encoding failed", sequence=result.sequence)
            return
        with self._cond:
            self._latest = encoded.tobytes()
            self._sequence += 1
            self.last_result = result
            self._cond.notify_all()

    def latest(self) -> bytes | None:
        """Most recent JPEG, or None before the first frame."""
        with self._cond:
            return self._latest

    def wait_for_frame(
        self, after: int = 0, timeout: float | None = None
    ) -> tuple[int, bytes] | None:
        """Block until a frame newer than ``after`` is available.

        Args:
            after: Sequence number the caller already has.
            timeout: Seconds to wait; None waits forever.

        Returns:
            (sequence, jpeg) for the newest frame, or None on timeout.
        """
        with self._cond:
            if not self._cond.wait_for(lambda: self._sequence > after, timeout):
                return None
            if self._latest is None:
                return None
            return self._sequence, self._latest


class WindowSink:
    """Shows frames in an OpenCV HighGUI window."""

    def __init__(self, window_name: str = "uvc-bridge") -> None:
        self.window_name = window_name
        self._opened = False

    def consume(self, buffer: FrameBuffer, result: FrameResult) -> None:
        bgr = cv2.cvtColor(buffer.data, _TO_BGR[buffer.pixel_format])
        cv2.imshow(self.window_name, bgr)
        self._opened = True
        cv2.waitKey(1)

    def close(self) -> None:
        if self._opened:
            cv2.destroyWindow(self.window_name)
            self._opened = False
