"""Circle-detection parameters.

DetectionParameters is an immutable value passed into every capture call.
The acquisition loop validates it at the start of each tick, before anything
touches the device, so a bad edit made between ticks is rejected without
disturbing the buffer.

The fields map one-to-one onto ``cv2.HoughCircles`` arguments:

    =============  ===========================================
    dp             inverse accumulator resolution ratio
    min_dist       minimum distance between circle centers (px)
    param1         upper Canny threshold
    param2         accumulator threshold for centers
    min_radius     smallest radius reported (px)
    max_radius     largest radius reported (px)
    =============  ===========================================
"""

from __future__ import annotations

import dataclasses
import math
from dataclasses import dataclass
from typing import Any

from uvc_bridge.devices.errors import InvalidParametersError

__all__ = ["DetectionParameters", "DEFAULT_DETECTION"]


@dataclass(frozen=True)
class DetectionParameters:
    """Hough-gradient circle detection settings.

    Attributes:
        enabled: Run detection. When False the frame passes through
            unchanged apart from the pixel-format conversion.
        apply_pre_blur: Median-blur the frame before converting to gray.
        dp: Accumulator resolution ratio, > 0.
        min_dist: Minimum center distance in pixels, >= 0.
        param1: Canny high threshold, > 0.
        param2: Accumulator threshold, > 0.
        min_radius: Minimum radius in pixels, >= 0.
        max_radius: Maximum radius in pixels, >= min_radius.
    """

    enabled: bool = True
    apply_pre_blur: bool = False
    dp: float = 1.0
    min_dist: float = 120.0
    param1: float = 60.0
    param2: float = 30.0
    min_radius: int = 20
    max_radius: int = 110

    def validate(self) -> DetectionParameters:
        """Check every field, returning self so calls can be chained.

        Validation runs even when detection is disabled; a disabled set of
        parameters is still the set that will be used once re-enabled.

        Returns:
            This instance, unchanged.

        Raises:
            InvalidParametersError: Naming the first offending field.

        Example:
            >>> DetectionParameters(min_radius=50, max_radius=10).validate()
            Traceback (most recent call last):
            InvalidParametersError: max_radius (10) must be >= min_radius (50)
        """
        for name in ("dp", "min_dist", "param1", "param2"):
            value = getattr(self, name)
            if not isinstance(value, int | float) or isinstance(value, bool):
                raise InvalidParametersError(f"{name} must be a number, got {value!r}")
            if not math.isfinite(value):
                raise InvalidParametersError(f"{name} must be finite, got {value}")

        if self.dp <= 0:
            raise InvalidParametersError(f"dp must be > 0, got {self.dp}")
        if self.min_dist < 0:
            raise InvalidParametersError(f"min_dist must be >= 0, got {self.min_dist}")
        if self.param1 <= 0:
            raise InvalidParametersError(f"param1 must be > 0, got {self.param1}")
        if self.param2 <= 0:
            raise InvalidParametersError(f"param2 must be > 0, got {self.param2}")

        for name in ("min_radius", "max_radius"):
            value = getattr(self, name)
            if not isinstance(value, int) or isinstance(value, bool):
                raise InvalidParametersError(
                    f"{name} must be an integer, got {value!r}"
                )
        if self.min_radius < 0:
            raise InvalidParametersError(
                f"min_radius must be >= 0, got {self.min_radius}"
            )
        if self.max_radius < self.min_radius:
            raise InvalidParametersError(
                f"max_radius ({self.max_radius}) must be >= "
                f"min_radius ({self.min_radius})"
            )
        return self

    def replace(self, **changes: Any) -> DetectionParameters:
        """Return a copy with the given fields changed. Not validated."""
        return dataclasses.replace(self, **changes)

    def to_dict(self) -> dict[str, Any]:
        """Plain-dict form for JSON output and logging."""
        return dataclasses.asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DetectionParameters:
        """Build from a mapping, ignoring unknown keys.

        Args:
            data: Field values, typically from a JSON config file.

        Returns:
            New DetectionParameters; missing fields take their defaults.
        """
        names = {f.name for f in dataclasses.fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in names})


DEFAULT_DETECTION = DetectionParameters()
