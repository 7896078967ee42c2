"""Value types shared by the camera drivers."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, NamedTuple, TypedDict


class Circle(NamedTuple):
    """A detected circle in buffer pixel coordinates."""

    x: int
    y: int
    radius: int


class CameraInfo(TypedDict, total=False):
    """Discovery record returned by get_connected_cameras().

    Keys are PascalCase to match the driver discovery records used
    throughout the drivers package.
    """

    Name: str
    MaxWidth: int
    MaxHeight: int
    MaxFPS: float
    Backend: str


@dataclass(frozen=True)
class FrameResult:
    """Outcome of one successful capture into a frame buffer.

    Attributes:
        width: Buffer width the frame was written at.
        height: Buffer height the frame was written at.
        circles: Circles drawn onto the frame, empty when detection is off.
        sequence: Per-session frame counter, starting at 1.
        duration_ms: Time spent reading and processing the frame.
        source_width: Width of the frame as the device delivered it.
        source_height: Height of the frame as the device delivered it.
    """

    width: int
    height: int
    circles: tuple[Circle, ...] = ()
    sequence: int = 0
    duration_ms: float = 0.0
    source_width: int = 0
    source_height: int = 0

    @property
    def resized(self) -> bool:
        """True when the device frame had to be scaled to fit the buffer."""
        return (self.source_width, self.source_height) != (self.width, self.height)

    def to_dict(self) -> dict[str, Any]:
        return {
            "width": self.width,
            "height": self.height,
            "circles": [c._asdict() for c in self.circles],
            "sequence": self.sequence,
            "duration_ms": self.duration_ms,
            "source_width": self.source_width,
            "source_height": self.source_height,
        }
