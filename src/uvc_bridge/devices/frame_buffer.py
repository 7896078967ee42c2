"""Fixed, address-stable RGBA frame buffers.

A FrameBuffer wraps one C-contiguous ``(height, width, 4)`` uint8 array. It
is allocated once when streaming starts and written in place every tick, so
its data pointer (``buffer.address``) never moves. A consumer that hands the
pointer to native code, such as a GPU texture upload, can rely on it for the
buffer's lifetime.

Lifetime is explicit. FrameBufferManager.allocate() creates a buffer and
release() retires it; any use afterwards raises InvalidHandleError instead
of touching freed memory.

Example:
    manager = FrameBufferManager()
    buffer = manager.allocate(640, 480)
    buffer.check_compatible(640, 480)
    ...
    manager.release(buffer)
"""

from __future__ import annotations

import threading
from enum import Enum

import numpy as np

from uvc_bridge.devices.errors import (
    InvalidHandleError,
    InvalidParametersError,
    OutOfResourcesError,
)
from uvc_bridge.observability import get_logger

__all__ = [
    "CHANNELS",
    "DEFAULT_MAX_PIXELS",
    "FrameBuffer",
    "FrameBufferManager",
    "PixelFormat",
]

logger = get_logger(__name__)

CHANNELS = 4

#: Upper bound on a single allocation: 8K UHD.
DEFAULT_MAX_PIXELS = 7680 * 4320


class PixelFormat(str, Enum):
    """Channel order of the 4-byte pixels."""

    RGBA = "rgba"
    BGRA = "bgra"


class FrameBuffer:
    """A fixed-size 4-channel 8-bit pixel buffer.

    Only FrameBufferManager creates these. Dimensions and pixel format are
    fixed at allocation.
    """

    def __init__(
        self, width: int, height: int, pixel_format: PixelFormat, data: np.ndarray
    ) -> None:
        self._width = width
        self._height = height
        self._pixel_format = pixel_format
        self._data: np.ndarray | None = data

    @property
    def width(self) -> int:
        return self._width

    @property
    def height(self) -> int:
        return self._height

    @property
    def pixel_format(self) -> PixelFormat:
        return self._pixel_format

    @property
    def shape(self) -> tuple[int, int, int]:
        return (self._height, self._width, CHANNELS)

    @property
    def pixel_count(self) -> int:
        return self._width * self._height

    @property
    def released(self) -> bool:
        return self._data is None

    @property
    def data(self) -> np.ndarray:
        """The backing array. Writes must be in place.

        Raises:
            InvalidHandleError: If the buffer has been released.
        """
        if self._data is None:
            raise InvalidHandleError("Frame buffer has been released")
        return self._data

    @property
    def address(self) -> int:
        """Address of the first pixel; stable until release."""
        return int(self.data.ctypes.data)

    def check_compatible(self, width: int, height: int) -> None:
        """Reject use of this buffer for a frame of other dimensions.

        Also re-checks the array itself in case someone rebound or reshaped
        it, since the writer relies on the exact layout.

        Raises:
            InvalidHandleError: If the buffer has been released.
            InvalidParametersError: On any dimension or layout mismatch.
        """
        data = self.data
        if (width, height) != (self._width, self._height):
            raise InvalidParametersError(
                f"Buffer is {self._width}x{self._height}, frame is {width}x{height}"
            )
        if (
            data.shape != self.shape
            or data.dtype != np.uint8
            or not data.flags["C_CONTIGUOUS"]
        ):
            raise InvalidParametersError(
                f"Buffer layout changed: shape={data.shape} dtype={data.dtype}"
            )

    def _release(self) -> None:
        self._data = None

    def __repr__(self) -> str:
        state = "released" if self.released else "live"
        return (
            f"FrameBuffer({self._width}x{self._height}, "
            f"{self._pixel_format.value}, {state})"
        )


class FrameBufferManager:
    """Allocates and releases FrameBuffers and tracks the live ones.

    More than one buffer may be live at a time, which leaves room for
    double-buffering. ``live_count`` lets tests assert nothing leaked.
    """

    def __init__(self, max_pixels: int = DEFAULT_MAX_PIXELS) -> None:
        self.max_pixels = max_pixels
        self._lock = threading.Lock()
        self._live: dict[int, FrameBuffer] = {}

    @property
    def live_count(self) -> int:
        with self._lock:
            return len(self._live)

    def allocate(
        self,
        width: int,
        height: int,
        pixel_format: PixelFormat = PixelFormat.RGBA,
    ) -> FrameBuffer:
        """Allocate a zeroed width x height buffer.

        Args:
            width: Pixels per row, a positive integer.
            height: Rows, a positive integer.
            pixel_format: Channel order the sink expects.

        Returns:
            New live FrameBuffer.

        Raises:
            InvalidParametersError: Non-integral or non-positive dimensions.
            OutOfResourcesError: Above max_pixels, or the allocation failed.
        """
        for name, value in (("width", width), ("height", height)):
            if isinstance(value, bool) or not isinstance(value, int | np.integer):
                raise InvalidParametersError(
                    f"{name} must be an integer, got {value!r}"
                )
            if value <= 0:
                raise InvalidParametersError(f"{name} must be positive, got {value}")
        width, height = int(width), int(height)

        if width * height > self.max_pixels:
            raise OutOfResourcesError(
                f"{width}x{height} exceeds the {self.max_pixels} pixel limit"
            )
        try:
            data = np.zeros((height, width, CHANNELS), dtype=np.uint8)
        except MemoryError as e:
            raise OutOfResourcesError(
                f"Failed to allocate {width}x{height} buffer: {e}"
            ) from e

        buffer = FrameBuffer(width, height, PixelFormat(pixel_format), data)
        with self._lock:
            self._live[id(buffer)] = buffer
        logger.debug(
            "Frame buffer allocated",
            width=width,
            height=height,
            pixel_format=buffer.pixel_format.value,
            address=hex(buffer.address),
        )
        return buffer

    def release(self, buffer: FrameBuffer) -> None:
        """Release a buffer allocated by this manager.

        Raises:
            InvalidHandleError: If the buffer was already released or did not
                come from this manager.
        """
        with self._lock:
            if buffer.released or id(buffer) not in self._live:
                raise InvalidHandleError(f"Cannot release {buffer!r}")
            del self._live[id(buffer)]
            buffer._release()
        logger.debug("Frame buffer released", width=buffer.width, height=buffer.height)
