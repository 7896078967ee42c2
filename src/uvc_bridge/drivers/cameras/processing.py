"""Frame processing shared by every camera driver.

Turns a BGR frame from the device into the pixels of a FrameBuffer:

    1. optional median blur (detection input only)
    2. grayscale + cv2.HoughCircles
    3. overlay: green outline and red center dot per circle
    4. conversion to the buffer's pixel format, written in place

The overlay only adds pixels; every pixel outside the drawn circles is the
raw camera pixel. With detection disabled the buffer receives exactly the
raw frame converted to RGBA/BGRA.
"""

from __future__ import annotations

import time
from typing import TYPE_CHECKING, Any

import cv2
import numpy as np

from uvc_bridge.devices.detection import DetectionParameters
from uvc_bridge.devices.errors import FrameDroppedError
from uvc_bridge.devices.frame_buffer import FrameBuffer, PixelFormat
from uvc_bridge.drivers.cameras.types import Circle, FrameResult

if TYPE_CHECKING:
    from numpy.typing import NDArray

__all__ = [
    "CENTER_COLOR_BGR",
    "OUTLINE_COLOR_BGR",
    "convert_to_pixel_format",
    "detect_circles",
    "draw_circles",
    "render_frame",
]

OUTLINE_COLOR_BGR = (0, 255, 0)
CENTER_COLOR_BGR = (0, 0, 255)
OUTLINE_THICKNESS = 2
CENTER_RADIUS = 3
MEDIAN_BLUR_KSIZE = 5

# HoughCircles rejects minDist <= 0; this is the "no spacing constraint" value.
MIN_DIST_FLOOR = float(np.finfo(np.float64).eps)

_CONVERSIONS: dict[tuple[int, PixelFormat], int] = {
    (1, PixelFormat.RGBA): cv2.COLOR_GRAY2RGBA,
    (1, PixelFormat.BGRA): cv2.COLOR_GRAY2BGRA,
    (3, PixelFormat.RGBA): cv2.COLOR_BGR2RGBA,
    (3, PixelFormat.BGRA): cv2.COLOR_BGR2BGRA,
    (4, PixelFormat.RGBA): cv2.COLOR_BGRA2RGBA,
}


def detect_circles(
    frame: NDArray[Any], params: DetectionParameters
) -> tuple[Circle, ...]:
    """Run Hough-gradient circle detection on a BGR frame.

    Args:
        frame: 3-channel BGR image.
        params: Validated detection parameters.

    Returns:
        Detected circles rounded to whole pixels; empty if none.
    """
    source = frame
    if params.apply_pre_blur:
        source = cv2.medianBlur(frame, MEDIAN_BLUR_KSIZE)
    gray = cv2.cvtColor(source, cv2.COLOR_BGR2GRAY)
    found = cv2.HoughCircles(
        gray,
        cv2.HOUGH_GRADIENT,
        dp=params.dp,
        minDist=max(float(params.min_dist), MIN_DIST_FLOOR),
        param1=params.param1,
        param2=params.param2,
        minRadius=params.min_radius,
        maxRadius=params.max_radius,
    )
    if found is None:
        return ()
    rounded = np.round(found[0, :]).astype("int")
    return tuple(Circle(int(x), int(y), int(r)) for x, y, r in rounded)


def draw_circles(frame: NDArray[Any], circles: tuple[Circle, ...]) -> NDArray[Any]:
    """Return a copy of frame with each circle outlined and its center marked."""
    annotated = frame.copy()
    for x, y, radius in circles:
        cv2.circle(annotated, (x, y), radius, OUTLINE_COLOR_BGR, OUTLINE_THICKNESS)
        cv2.circle(annotated, (x, y), CENTER_RADIUS, CENTER_COLOR_BGR, -1)
    return annotated


def convert_to_pixel_format(
    frame: NDArray[Any], pixel_format: PixelFormat
) -> NDArray[Any]:
    """Convert a gray, BGR or BGRA frame to 4-channel RGBA or BGRA.

    Raises:
        FrameDroppedError: If the frame has an unusable channel layout.
    """
    channels = 1 if frame.ndim == 2 else frame.shape[2]
    if channels == 4 and pixel_format == PixelFormat.BGRA:
        return frame
    code = _CONVERSIONS.get((channels, pixel_format))
    if code is None:
        raise FrameDroppedError(f"Unsupported frame layout: shape={frame.shape}")
    return cv2.cvtColor(frame, code)


def render_frame(
    frame: NDArray[Any] | None,
    out: FrameBuffer,
    params: DetectionParameters,
    sequence: int = 0,
) -> FrameResult:
    """Process one device frame into the buffer.

    The buffer is written with a single np.copyto at the very end, so an
    exception anywhere before that leaves its contents untouched. A frame
    whose size differs from the buffer is scaled to fit; the buffer's
    dimensions never change.

    Args:
        frame: Frame from the device, normally BGR uint8. Gray frames are
            accepted and expanded.
        out: Live destination buffer.
        params: Validated detection parameters.
        sequence: Frame counter to stamp on the result.

    Returns:
        FrameResult describing what was written.

    Raises:
        FrameDroppedError: Empty or malformed frame, or OpenCV failed on it.
        InvalidHandleError: If the buffer has been released.
    """
    start = time.perf_counter()
    if frame is None or frame.size == 0:
        raise FrameDroppedError("Device returned an empty frame")
    if frame.dtype != np.uint8:
        raise FrameDroppedError(f"Unsupported frame dtype: {frame.dtype}")

    target = out.data
    channels = frame.shape[2] if frame.ndim == 3 else 1
    if frame.ndim not in (2, 3) or channels not in (1, 3, 4):
        raise FrameDroppedError(f"Unsupported frame layout: shape={frame.shape}")
    source_height, source_width = frame.shape[:2]

    try:
        if channels == 1:
            frame = cv2.cvtColor(frame, cv2.COLOR_GRAY2BGR)
        elif channels == 4:
            frame = cv2.cvtColor(frame, cv2.COLOR_BGRA2BGR)

        if (source_width, source_height) != (out.width, out.height):
            frame = cv2.resize(frame, (out.width, out.height))

        circles: tuple[Circle, ...] = ()
        if params.enabled:
            circles = detect_circles(frame, params)
            if circles:
                frame = draw_circles(frame, circles)

        converted = convert_to_pixel_format(frame, out.pixel_format)
    except cv2.error as e:
        raise FrameDroppedError(f"Frame processing failed: {e}") from e

    np.copyto(target, converted)

    return FrameResult(
        width=out.width,
        height=out.height,
        circles=circles,
        sequence=sequence,
        duration_ms=(time.perf_counter() - start) * 1000,
        source_width=source_width,
        source_height=source_height,
    )
