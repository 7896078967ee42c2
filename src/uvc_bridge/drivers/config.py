"""Driver configuration and factory.

Supports switching between the OpenCV hardware driver and the digital twin
for testing and development without a camera attached.

Example:
    from uvc_bridge.drivers import config

    config.use_digital_twin()
    driver = config.get_factory().create_camera_driver()
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any

import cv2

from uvc_bridge.drivers.cameras import (
    CameraDriver,
    DigitalTwinCameraDriver,
    DigitalTwinConfig,
    ImageSource,
    OpenCVCameraDriver,
)
from uvc_bridge.drivers.cameras.opencv import DEFAULT_CAPTURE_TIMEOUT_S


class DriverMode(Enum):
    """Driver mode selection."""

    HARDWARE = "hardware"  # OpenCV VideoCapture
    DIGITAL_TWIN = "digital_twin"  # Simulated camera


@dataclass
class DriverConfig:
    """Configuration for driver selection and device settings.

    Attributes:
        mode: HARDWARE for a real UVC camera, DIGITAL_TWIN for simulation.
        device_index: Camera index to acquire (default 0, the first camera).
        capture_timeout_s: Bound on each blocking hardware call.
        api_preference: OpenCV backend id (cv2.CAP_ANY, cv2.CAP_DSHOW, ...).
        image_path: Image file or directory the twin replays; None for
            synthetic frames.
        twin: Full twin configuration; takes precedence over image_path.
    """

    mode: DriverMode = DriverMode.DIGITAL_TWIN
    device_index: int = 0
    capture_timeout_s: float = DEFAULT_CAPTURE_TIMEOUT_S
    api_preference: int = cv2.CAP_ANY
    image_path: Path | None = None
    twin: DigitalTwinConfig | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DriverConfig:
        """Build from a JSON-style mapping; unknown keys are ignored.

        Raises:
            ValueError: If ``mode`` is not a DriverMode value.
        """
        names = {f.name for f in dataclasses.fields(cls)} - {"twin"}
        values = {k: v for k, v in data.items() if k in names}
        if "mode" in values:
            values["mode"] = DriverMode(values["mode"])
        if values.get("image_path") is not None:
            values["image_path"] = Path(values["image_path"])
        return cls(**values)


class DriverFactory:
    """Creates the camera driver matching the configured mode."""

    def __init__(self, config: DriverConfig | None = None):
        self.config = config or DriverConfig()

    def create_camera_driver(self) -> CameraDriver:
        """Return an OpenCVCameraDriver or a DigitalTwinCameraDriver.

        In twin mode an ``image_path`` pointing at a directory selects
        directory replay; any other path selects single-file replay.
        """
        if self.config.mode == DriverMode.HARDWARE:
            return OpenCVCameraDriver(
                capture_timeout_s=self.config.capture_timeout_s,
                api_preference=self.config.api_preference,
            )

        twin_config = self.config.twin
        if twin_config is None:
            twin_config = DigitalTwinConfig()
            if self.config.image_path is not None:
                path = Path(self.config.image_path)
                twin_config.image_source = (
                    ImageSource.DIRECTORY if path.is_dir() else ImageSource.FILE
                )
                twin_config.image_path = path
        return DigitalTwinCameraDriver(twin_config)


_factory: DriverFactory | None = None


def get_factory() -> DriverFactory:
    """Return the global factory, creating a digital-twin one on first use."""
    global _factory
    if _factory is None:
        _factory = DriverFactory()
    return _factory


def configure(config: DriverConfig) -> None:
    """Replace the global factory with one built from config."""
    global _factory
    _factory = DriverFactory(config)


def use_digital_twin(preserve_config: bool = False) -> None:
    """Switch the global factory to the digital twin.

    Args:
        preserve_config: Keep device index, timeout and image path from the
            current configuration instead of resetting to defaults.
    """
    if preserve_config:
        current = get_factory().config
        configure(dataclasses.replace(current, mode=DriverMode.DIGITAL_TWIN))
    else:
        configure(DriverConfig(mode=DriverMode.DIGITAL_TWIN))


def use_hardware(preserve_config: bool = False) -> None:
    """Switch the global factory to the OpenCV hardware driver.

    Args:
        preserve_config: Keep the other settings of the current configuration.
    """
    if preserve_config:
        current = get_factory().config
        configure(dataclasses.replace(current, mode=DriverMode.HARDWARE))
    else:
        configure(DriverConfig(mode=DriverMode.HARDWARE))
