"""Acquisition properties and batch synchronization.

CameraProperty enumerates the sensor properties uvc-bridge controls. The
numeric values are OpenCV's ``CAP_PROP_*`` ids so a property can be handed
straight to ``VideoCapture.get``/``set``.

Single-property access lives on DeviceManager (get_property/set_property).
This module adds the batch operations on top of it:

    requested = CameraProperties(width=640, height=480, exposure=-7)
    observed = sync_all_properties(manager, handle, requested)
    print(observed.width, observed.exposure)  # what the device accepted

Error policy:
    Single-property calls raise PropertyUnsupportedError. Batch calls catch
    it per property, log a warning, and report the property as None so one
    missing control never aborts stream start. Every other error propagates.
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass
from enum import IntEnum
from typing import Any, Protocol

from uvc_bridge.devices.errors import PropertyUnsupportedError
from uvc_bridge.observability import get_logger

__all__ = [
    "APPLY_ORDER",
    "CameraProperties",
    "CameraProperty",
    "DEFAULT_PROPERTIES",
    "PropertyAccess",
    "read_all_properties",
    "sync_all_properties",
]

logger = get_logger(__name__)


class CameraProperty(IntEnum):
    """Sensor property ids, numerically equal to cv2.CAP_PROP_* values."""

    FRAME_WIDTH = 3
    FRAME_HEIGHT = 4
    FPS = 5
    CONTRAST = 11
    SATURATION = 12
    GAIN = 14
    EXPOSURE = 15
    ISO_SPEED = 30

    @property
    def field_name(self) -> str:
        """Matching CameraProperties attribute."""
        return _FIELD_NAMES[self]


_FIELD_NAMES: dict[CameraProperty, str] = {
    CameraProperty.FRAME_WIDTH: "width",
    CameraProperty.FRAME_HEIGHT: "height",
    CameraProperty.FPS: "fps",
    CameraProperty.EXPOSURE: "exposure",
    CameraProperty.GAIN: "gain",
    CameraProperty.CONTRAST: "contrast",
    CameraProperty.ISO_SPEED: "iso",
    CameraProperty.SATURATION: "saturation",
}

#: Order in which sync_all_properties applies requested values. Resolution
#: goes first because many UVC devices reset exposure and gain on a mode
#: change; FPS goes last because the valid rates depend on the mode.
APPLY_ORDER: tuple[CameraProperty, ...] = (
    CameraProperty.FRAME_WIDTH,
    CameraProperty.FRAME_HEIGHT,
    CameraProperty.EXPOSURE,
    CameraProperty.GAIN,
    CameraProperty.CONTRAST,
    CameraProperty.ISO_SPEED,
    CameraProperty.SATURATION,
    CameraProperty.FPS,
)


@dataclass
class CameraProperties:
    """One value per CameraProperty.

    As a request, None means "leave unchanged". As a read-back, None means
    the device does not support the property.
    """

    width: float | None = None
    height: float | None = None
    fps: float | None = None
    exposure: float | None = None
    gain: float | None = None
    contrast: float | None = None
    iso: float | None = None
    saturation: float | None = None

    def get(self, prop: CameraProperty) -> float | None:
        return getattr(self, prop.field_name)

    def set(self, prop: CameraProperty, value: float | None) -> None:
        setattr(self, prop.field_name, value)

    def to_dict(self) -> dict[str, float | None]:
        return dataclasses.asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CameraProperties:
        """Build from a mapping, ignoring unknown keys."""
        names = {f.name for f in dataclasses.fields(cls)}
        values = {k: v for k, v in data.items() if k in names}
        return cls(**{k: None if v is None else float(v) for k, v in values.items()})


#: Startup values applied before streaming.
DEFAULT_PROPERTIES = CameraProperties(
    width=640, height=480, exposure=-7, gain=2, contrast=0, saturation=55
)


class PropertyAccess(Protocol):  # pragma: no cover
    """Anything exposing handle-based property access (DeviceManager)."""

    def get_property(self, handle: Any, prop: CameraProperty) -> float: ...

    def set_property(
        self, handle: Any, prop: CameraProperty, value: float
    ) -> float: ...


def read_all_properties(device: PropertyAccess, handle: Any) -> CameraProperties:
    """Read every property, reporting unsupported ones as None.

    Args:
        device: Property access surface, normally a DeviceManager.
        handle: Live device handle.

    Returns:
        Observed values.

    Raises:
        InvalidHandleError: If the handle is not live.
        BridgeError: Any failure other than an unsupported property.
    """
    observed = CameraProperties()
    for prop in CameraProperty:
        try:
            observed.set(prop, device.get_property(handle, prop))
        except PropertyUnsupportedError:
            observed.set(prop, None)
    return observed


def sync_all_properties(
    device: PropertyAccess, handle: Any, requested: CameraProperties
) -> CameraProperties:
    """Apply requested properties in APPLY_ORDER, then read everything back.

    Each property is an independent round trip; a failure halfway leaves the
    earlier properties applied. The device may clamp or round, so compare
    the returned read-back, not the request, against what you asked for.

    Args:
        device: Property access surface, normally a DeviceManager.
        handle: Live device handle.
        requested: Values to apply; None fields are left unchanged.

    Returns:
        Full read-back after all sets.

    Raises:
        InvalidHandleError: If the handle is not live.
        BridgeError: Any failure other than an unsupported property.
    """
    for prop in APPLY_ORDER:
        value = requested.get(prop)
        if value is None:
            continue
        try:
            actual = device.set_property(handle, prop, value)
        except PropertyUnsupportedError:
            logger.warning(
                "Property not supported, skipping",
                property=prop.name,
                requested=value,
            )
            continue
        if actual != value:
            logger.debug(
                "Property adjusted by device",
                property=prop.name,
                requested=value,
                actual=actual,
            )

    observed = read_all_properties(device, handle)
    logger.info("Properties synchronized", **observed.to_dict())
    return observed
