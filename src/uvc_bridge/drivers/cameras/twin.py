"""Digital Twin Camera Driver - Simulated UVC Camera for Testing.

Provides a simulated camera that follows the CameraDriver protocol, so the
acquisition loop, the CLI and the web preview all run without hardware.

Image Sources:
    Synthetic: Bright discs drifting over a dark background (seeded)
    Directory: Cycle through images in a folder
    File: Return same image repeatedly

Property model:
    Each property has a PropertyRange; writes are rounded to the range's
    step and clamped, then the clamped value is what reads back. Width and
    height snap to the nearest supported mode. FPS is read-only, so writes
    are accepted and ignored. Properties listed in
    ``DigitalTwinConfig.unsupported`` raise PropertyUnsupportedError.

Fault injection:
    ``drop_frames`` and ``timeout_frames`` name 1-based read attempts that
    fail with FrameDroppedError / DeviceTimeoutError. ``disconnect_after``
    makes every read after that many attempts raise DeviceDisconnectedError.

Example:
    from uvc_bridge.drivers.cameras.twin import (
        DigitalTwinCameraDriver,
        create_file_camera,
    )

    driver = DigitalTwinCameraDriver()
    with driver.open(0) as session:
        session.set_property(CameraProperty.EXPOSURE, -7)
        result = session.capture_frame(buffer, DetectionParameters())

    driver = create_file_camera("/data/coins.png")
"""

from __future__ import annotations

import math
import threading
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from types import MappingProxyType, TracebackType
from typing import TYPE_CHECKING, Any, final

import cv2
import numpy as np

from uvc_bridge.devices.detection import DetectionParameters
from uvc_bridge.devices.errors import (
    DeviceBusyError,
    DeviceDisconnectedError,
    DeviceTimeoutError,
    DeviceUnavailableError,
    FrameDroppedError,
    InvalidHandleError,
    InvalidParametersError,
    PropertyUnsupportedError,
)
from uvc_bridge.devices.frame_buffer import FrameBuffer
from uvc_bridge.devices.properties import CameraProperty
from uvc_bridge.drivers.cameras.processing import render_frame
from uvc_bridge.drivers.cameras.types import CameraInfo, FrameResult
from uvc_bridge.observability import get_logger

if TYPE_CHECKING:
    from numpy.typing import NDArray

logger = get_logger(__name__)

__all__ = [
    "DEFAULT_CAMERAS",
    "DEFAULT_PROPERTY_RANGES",
    "SUPPORTED_MODES",
    "DigitalTwinCameraDriver",
    "DigitalTwinCameraSession",
    "DigitalTwinConfig",
    "ImageSource",
    "PropertyRange",
    "create_directory_camera",
    "create_file_camera",
]


class ImageSource(Enum):
    """Image source for digital twin camera."""

    SYNTHETIC = "synthetic"  # Drifting discs
    DIRECTORY = "directory"  # Cycle through images in a folder
    FILE = "file"  # Return same image repeatedly


@dataclass(frozen=True)
class PropertyRange:
    """Simulated control range.

    Attributes:
        minimum: Smallest accepted value.
        maximum: Largest accepted value.
        default: Value at open.
        step: Writes are rounded to a multiple of this.
        writable: False makes writes no-ops.
    """

    minimum: float
    maximum: float
    default: float
    step: float = 1.0
    writable: bool = True

    def clamp(self, value: float) -> float:
        """Round to step, then clamp into [minimum, maximum]."""
        stepped = round(value / self.step) * self.step
        return float(min(self.maximum, max(self.minimum, stepped)))


# =============================================================================
# Constants
# =============================================================================

#: Resolutions the twin reports; filtered per camera by MaxWidth/MaxHeight.
SUPPORTED_MODES: tuple[tuple[int, int], ...] = (
    (320, 240),
    (640, 480),
    (800, 600),
    (1280, 720),
    (1280, 960),
    (1920, 1080),
)

#: Ranges follow the DirectShow conventions UVC webcams expose through
#: OpenCV; exposure is log2 seconds, so -7 is about 7.8 ms.
DEFAULT_PROPERTY_RANGES: Mapping[CameraProperty, PropertyRange] = MappingProxyType(
    {
        CameraProperty.FPS: PropertyRange(30, 30, 30, writable=False),
        CameraProperty.EXPOSURE: PropertyRange(-13, -1, -6),
        CameraProperty.GAIN: PropertyRange(0, 100, 0),
        CameraProperty.CONTRAST: PropertyRange(0, 100, 32),
        CameraProperty.SATURATION: PropertyRange(0, 100, 64),
        CameraProperty.ISO_SPEED: PropertyRange(100, 3200, 400, step=100),
    }
)

DEFAULT_CAMERAS: Mapping[int, CameraInfo] = MappingProxyType(
    {
        0: CameraInfo(
            Name="UVC Twin Camera",
            MaxWidth=1280,
            MaxHeight=960,
            MaxFPS=30.0,
            Backend="twin",
        ),
    }
)

_IMAGE_EXTENSIONS = {".jpg", ".jpeg", ".png", ".bmp", ".tif", ".tiff"}

_BACKGROUND_LEVEL = 40
_DISC_LEVEL = 220
_DISC_RADIUS_RANGE = (30, 60)


@dataclass
class DigitalTwinConfig:
    """Configuration for digital twin camera behavior."""

    image_source: ImageSource = ImageSource.SYNTHETIC
    image_path: Path | None = None  # Directory or file path
    cycle_images: bool = True  # Loop through directory images
    seed: int = 0  # Synthetic disc layout
    disc_count: int = 2
    unsupported: frozenset[CameraProperty] = frozenset()
    drop_frames: frozenset[int] = frozenset()
    timeout_frames: frozenset[int] = frozenset()
    disconnect_after: int | None = None
    property_ranges: Mapping[CameraProperty, PropertyRange] = field(
        default_factory=lambda: dict(DEFAULT_PROPERTY_RANGES)
    )


@final
class DigitalTwinCameraDriver:
    """Digital twin camera driver for development without hardware.

    Each driver instance tracks which of its cameras are open and refuses a
    second open of the same one, mirroring the exclusive access a real UVC
    device grants.

    Example:
        driver = DigitalTwinCameraDriver()

        config = DigitalTwinConfig(drop_frames=frozenset({3}))
        flaky = DigitalTwinCameraDriver(config=config)
    """

    def __init__(
        self,
        config: DigitalTwinConfig | None = None,
        cameras: Mapping[int, CameraInfo] | None = None,
    ) -> None:
        """Initialize the simulated driver.

        Args:
            config: Image source, property and fault-injection settings.
                Defaults to synthetic discs with no faults.
            cameras: Camera definitions keyed by device index. Defaults to
                DEFAULT_CAMERAS, a single 1280x960 camera at index 0.
        """
        self.config = config or DigitalTwinConfig()
        self._cameras: dict[int, CameraInfo] = (
            dict(cameras) if cameras is not None else dict(DEFAULT_CAMERAS)
        )
        self._held: set[int] = set()
        self._lock = threading.Lock()
        logger.info(
            "Digital twin camera driver initialized",
            image_source=self.config.image_source.value,
            num_cameras=len(self._cameras),
        )

    def __repr__(self) -> str:
        return (
            f"DigitalTwinCameraDriver("
            f"source={self.config.image_source.value}, "
            f"cameras={list(self._cameras.keys())})"
        )

    def get_connected_cameras(self) -> dict[int, CameraInfo]:
        """Return the configured simulated cameras."""
        logger.debug("Listing simulated cameras", count=len(self._cameras))
        return self._cameras.copy()

    def open(self, device_index: int) -> DigitalTwinCameraSession:
        """Open a simulated camera exclusively.

        Args:
            device_index: Key into the camera definitions.

        Returns:
            Session bound to that camera.

        Raises:
            DeviceUnavailableError: If no camera has that index.
            DeviceBusyError: If this driver already has it open.
        """
        if device_index not in self._cameras:
            logger.error("Camera not found", device_index=device_index)
            raise DeviceUnavailableError(f"Camera {device_index} not found")
        with self._lock:
            if device_index in self._held:
                raise DeviceBusyError(f"Camera {device_index} is already open")
            self._held.add(device_index)
        logger.info("Opening simulated camera", device_index=device_index)
        return DigitalTwinCameraSession(
            device_index,
            self._cameras[device_index],
            self.config,
            on_close=self._release_index,
        )

    def _release_index(self, device_index: int) -> None:
        with self._lock:
            self._held.discard(device_index)


@final
class DigitalTwinCameraSession:
    """An open simulated camera.

    Holds the simulated property state and produces one frame per
    capture_frame() call from the configured image source.
    """

    def __init__(
        self,
        device_index: int,
        info: CameraInfo,
        config: DigitalTwinConfig,
        on_close: Callable[[int], None] | None = None,
    ) -> None:
        self._device_index = device_index
        self._info = info
        self._config = config
        self._on_close = on_close
        self._closed = False

        max_w = info.get("MaxWidth", SUPPORTED_MODES[-1][0])
        max_h = info.get("MaxHeight", SUPPORTED_MODES[-1][1])
        self._modes = [m for m in SUPPORTED_MODES if m[0] <= max_w and m[1] <= max_h]
        if not self._modes:
            self._modes = [(max_w, max_h)]
        self._mode = self._modes[-1]

        self._ranges = dict(config.property_ranges)
        self._values: dict[CameraProperty, float] = {
            prop: rng.default for prop, rng in self._ranges.items()
        }

        self._attempts = 0
        self._sequence = 0
        self._image_files: list[Path] = []
        self._image_index = 0
        self._load_image_files()

        rng = np.random.default_rng(config.seed)
        self._discs = [
            _Disc(
                x=float(rng.uniform(0.2, 0.8)),
                y=float(rng.uniform(0.2, 0.8)),
                vx=float(rng.uniform(-0.01, 0.01)),
                vy=float(rng.uniform(-0.01, 0.01)),
                radius=int(rng.integers(*_DISC_RADIUS_RANGE)),
            )
            for _ in range(config.disc_count)
        ]
        self.last_frame: NDArray[Any] | None = None

    def __enter__(self) -> DigitalTwinCameraSession:
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
        return (
            f"DigitalTwinCameraSession(device_index={self._device_index}, "
            f"mode={self._mode[0]}x{self._mode[1]}, {state})"
        )

    @property
    def device_index(self) -> int:
        return self._device_index

    @property
    def supported_modes(self) -> list[tuple[int, int]]:
        return list(self._modes)

    def get_info(self) -> dict[str, Any]:
        return dict(self._info)

    def property_range(self, prop: CameraProperty) -> PropertyRange:
        """Range used to clamp writes to prop.

        Width and height report the span of the supported modes.

        Raises:
            PropertyUnsupportedError: If prop is unsupported.
        """
        self._check_supported(prop)
        if prop == CameraProperty.FRAME_WIDTH:
            widths = [m[0] for m in self._modes]
            return PropertyRange(min(widths), max(widths), self._mode[0])
        if prop == CameraProperty.FRAME_HEIGHT:
            heights = [m[1] for m in self._modes]
            return PropertyRange(min(heights), max(heights), self._mode[1])
        return self._ranges[prop]

    def get_property(self, prop: CameraProperty) -> float:
        """Return the current simulated value of prop.

        Raises:
            InvalidHandleError: If the session is closed.
            PropertyUnsupportedError: If prop is unsupported.
        """
        self._check_open()
        self._check_supported(prop)
        if prop == CameraProperty.FRAME_WIDTH:
            return float(self._mode[0])
        if prop == CameraProperty.FRAME_HEIGHT:
            return float(self._mode[1])
        return self._values[prop]

    def set_property(self, prop: CameraProperty, value: float) -> float:
        """Apply prop with clamping and return the read-back value.

        Raises:
            InvalidHandleError: If the session is closed.
            PropertyUnsupportedError: If prop is unsupported.
            InvalidParametersError: If value is not a finite number.
        """
        self._check_open()
        self._check_supported(prop)
        if not math.isfinite(value):
            raise InvalidParametersError(f"{prop.name} value must be finite")

        if prop == CameraProperty.FRAME_WIDTH:
            self._mode = self._nearest_mode(value, self._mode[1])
        elif prop == CameraProperty.FRAME_HEIGHT:
            self._mode = self._nearest_mode(self._mode[0], value)
        elif self._ranges[prop].writable:
            self._values[prop] = self._ranges[prop].clamp(value)

        actual = self.get_property(prop)
        logger.debug(
            "Simulated property set",
            device_index=self._device_index,
            property=prop.name,
            requested=value,
            actual=actual,
        )
        return actual

    def capture_frame(
        self, out: FrameBuffer, params: DetectionParameters
    ) -> FrameResult:
        """Produce the next simulated frame and render it into out.

        Raises:
            InvalidHandleError: If the session is closed.
            FrameDroppedError: Injected drop.
            DeviceTimeoutError: Injected timeout.
            DeviceDisconnectedError: Past ``disconnect_after``.
        """
        self._check_open()
        self._attempts += 1
        attempt = self._attempts
        config = self._config

        if config.disconnect_after is not None and attempt > config.disconnect_after:
            logger.warning(
                "Simulated disconnect", device_index=self._device_index, attempt=attempt
            )
            raise DeviceDisconnectedError(f"Camera {self._device_index} disconnected")
        if attempt in config.drop_frames:
            raise FrameDroppedError(f"Simulated drop on read {attempt}")
        if attempt in config.timeout_frames:
            raise DeviceTimeoutError(f"Simulated timeout on read {attempt}")

        frame = self._next_frame()
        self.last_frame = frame
        self._sequence += 1
        return render_frame(frame, out, params, self._sequence)

    def close(self) -> None:
        """Close the session and free the camera index. Idempotent."""
        if self._closed:
            return
        self._closed = True
        if self._on_close is not None:
            self._on_close(self._device_index)
        logger.info("Simulated camera closed", device_index=self._device_index)

    # -------------------------------------------------------------------------

    def _check_open(self) -> None:
        if self._closed:
            raise InvalidHandleError(f"Camera {self._device_index} session is closed")

    def _check_supported(self, prop: CameraProperty) -> None:
        is_mode = prop in (CameraProperty.FRAME_WIDTH, CameraProperty.FRAME_HEIGHT)
        if prop in self._config.unsupported or (
            not is_mode and prop not in self._ranges
        ):
            raise PropertyUnsupportedError(prop.name)

    def _nearest_mode(self, width: float, height: float) -> tuple[int, int]:
        return min(self._modes, key=lambda m: abs(m[0] - width) + abs(m[1] - height))

    def _load_image_files(self) -> None:
        if self._config.image_source != ImageSource.DIRECTORY:
            return
        if self._config.image_path is None:
            return
        path = Path(self._config.image_path)
        if not path.is_dir():
            return
        self._image_files = sorted(
            f for f in path.iterdir() if f.suffix.lower() in _IMAGE_EXTENSIONS
        )

    def _next_frame(self) -> NDArray[Any]:
        source = self._config.image_source
        img: NDArray[Any] | None = None
        if source == ImageSource.FILE and self._config.image_path is not None:
            img = cv2.imread(str(self._config.image_path))
        elif source == ImageSource.DIRECTORY and self._image_files:
            img = cv2.imread(str(self._image_files[self._image_index]))
            self._image_index += 1
            if self._config.cycle_images:
                self._image_index %= len(self._image_files)
            else:
                self._image_index = min(self._image_index, len(self._image_files) - 1)

        if img is None:
            return self._synthetic_frame()

        width, height = self._mode
        if img.shape[1] != width or img.shape[0] != height:
            img = cv2.resize(img, (width, height))
        return img

    def _synthetic_frame(self) -> NDArray[Any]:
        """Dark frame with bright discs; brightness follows exposure and gain."""
        width, height = self._mode
        frame = np.full((height, width, 3), _BACKGROUND_LEVEL, dtype=np.uint8)
        for disc in self._discs:
            disc.advance()
            center = (int(disc.x * width), int(disc.y * height))
            cv2.circle(frame, center, disc.radius, (_DISC_LEVEL,) * 3, -1)

        exposure = self._values.get(CameraProperty.EXPOSURE, -6.0)
        gain = self._values.get(CameraProperty.GAIN, 0.0)
        alpha = 2 ** ((exposure + 6) / 2) * (1 + gain / 100)
        if alpha != 1.0:
            frame = cv2.convertScaleAbs(frame, alpha=alpha)
        return frame


@dataclass
class _Disc:
    """One synthetic disc in normalized coordinates; bounces off the edges."""

    x: float
    y: float
    vx: float
    vy: float
    radius: int

    def advance(self) -> None:
        self.x += self.vx
        self.y += self.vy
        if not 0.1 <= self.x <= 0.9:
            self.vx = -self.vx
            self.x = min(0.9, max(0.1, self.x))
        if not 0.1 <= self.y <= 0.9:
            self.vy = -self.vy
            self.y = min(0.9, max(0.1, self.y))


def create_file_camera(image_path: Path | str) -> DigitalTwinCameraDriver:
    """Twin that returns the same image on every capture.

    Missing or unreadable files fall back to synthetic frames.
    """
    config = DigitalTwinConfig(
        image_source=ImageSource.FILE,
        image_path=Path(image_path),
    )
    return DigitalTwinCameraDriver(config=config)


def create_directory_camera(
    image_dir: Path | str,
    cycle: bool = True,
) -> DigitalTwinCameraDriver:
    """Twin that returns the images of a directory in sorted order.

    Args:
        image_dir: Folder of .jpg/.png/.bmp/.tif images.
        cycle: Loop back to the first image after the last one; otherwise
            the last image repeats.
    """
    config = DigitalTwinConfig(
        image_source=ImageSource.DIRECTORY,
        image_path=Path(image_dir),
        cycle_images=cycle,
    )
    return DigitalTwinCameraDriver(config=config)
