"""Test helper functions for uvc-bridge.

Example:
    from tests.helpers import assert_implements_protocol
    from uvc_bridge.drivers.cameras import CameraDriver

    def test_twin_implements_protocol():
        assert_implements_protocol(DigitalTwinCameraDriver(), CameraDriver)
"""

from __future__ import annotations

from typing import Any

import numpy as np

from uvc_bridge.drivers.cameras import CameraInfo

#: Single 640x480 camera, so file images are never rescaled.
SMALL_CAMERA: dict[int, CameraInfo] = {
    0: CameraInfo(Name="Test Camera", MaxWidth=640, MaxHeight=480, MaxFPS=30.0),
}

DISC_CENTER = (320, 240)
DISC_RADIUS = 50


def assert_implements_protocol(instance: object, protocol: type) -> None:
    """Assert that an instance implements a @runtime_checkable Protocol.

    On failure the message lists the protocol members the instance lacks,
    which is more useful than a bare isinstance() False.

    Raises:
        AssertionError: If instance doesn't implement protocol.
        TypeError: If protocol is not @runtime_checkable.
    """
    if isinstance(instance, protocol):
        return
    object_attrs = set(dir(object))
    members = {
        attr
        for attr in set(dir(protocol)) - object_attrs
        if not attr.startswith("_") or attr in ("__enter__", "__exit__")
    }
    missing = sorted(m for m in members if not hasattr(instance, m))
    raise AssertionError(
        f"{type(instance).__name__} does not implement {protocol.__name__}. "
        f"Missing: {', '.join(missing) if missing else 'unknown'}"
    )


def assert_all_implement_protocol(instances: list[Any], protocol: type) -> None:
    """assert_implements_protocol for each instance, naming the failing index."""
    for i, instance in enumerate(instances):
        try:
            assert_implements_protocol(instance, protocol)
        except AssertionError as e:
            raise AssertionError(f"Instance at index {i}: {e}") from e


def rgba_at(data: np.ndarray, x: int, y: int) -> list[int]:
    """Pixel (x, y) of an HxWx4 buffer as a plain list."""
    return [int(v) for v in data[y, x]]
