"""Pytest configuration and fixtures for uvc-bridge tests.

Everything here runs against the digital twin, so no camera is needed.
Hardware-facing code (OpenCVCameraDriver) is tested with a mocked
cv2.VideoCapture in its own module.
"""

from __future__ import annotations

from collections.abc import Iterator
from pathlib import Path

import cv2
import numpy as np
import pytest

from tests.helpers import DISC_CENTER, DISC_RADIUS, SMALL_CAMERA
from uvc_bridge.devices import DeviceManager, FrameBufferManager
from uvc_bridge.drivers.cameras import (
    DigitalTwinCameraDriver,
    DigitalTwinConfig,
    ImageSource,
)
from uvc_bridge.observability import reset_logging


class FakeClock:
    """Clock that only advances when slept on or told to."""

    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: list[float] = []

    def monotonic(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        if seconds > 0:
            self.now += seconds

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture(autouse=True)
def _reset_logging() -> Iterator[None]:
    """Drop any handler a test installed so the next one starts clean."""
    yield
    reset_logging()


@pytest.fixture
def twin_driver() -> DigitalTwinCameraDriver:
    """Default synthetic twin (one 1280x960 camera at index 0)."""
    return DigitalTwinCameraDriver()


@pytest.fixture
def manager(twin_driver: DigitalTwinCameraDriver) -> Iterator[DeviceManager]:
    """DeviceManager over the default twin; releases leftovers on teardown."""
    mgr = DeviceManager(twin_driver)
    yield mgr
    mgr.release_all()


@pytest.fixture
def buffers() -> FrameBufferManager:
    return FrameBufferManager()


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def disc_image(tmp_path: Path) -> Path:
    """640x480 PNG: one white disc of radius 50 centered on a black field."""
    img = np.zeros((480, 640, 3), dtype=np.uint8)
    cv2.circle(img, DISC_CENTER, DISC_RADIUS, (255, 255, 255), -1)
    path = tmp_path / "disc.png"
    assert cv2.imwrite(str(path), img)
    return path


@pytest.fixture
def disc_driver(disc_image: Path) -> DigitalTwinCameraDriver:
    """Twin replaying disc_image on a 640x480 camera."""
    config = DigitalTwinConfig(image_source=ImageSource.FILE, image_path=disc_image)
    return DigitalTwinCameraDriver(config=config, cameras=SMALL_CAMERA)
