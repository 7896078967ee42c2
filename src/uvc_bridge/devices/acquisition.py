"""Acquisition loop: property sync, buffer lifetime and per-tick capture.

The loop is a small state machine:

    UNINITIALIZED --acquire()--> ACQUIRED --start()--> STREAMING
          |                          |                     |  run_once()
          +-------- shutdown() ------+------ shutdown() ---+----> RELEASED

RELEASED is terminal; create a new AcquisitionLoop to stream again.

start() applies the configured properties, reads them back, and allocates
the frame buffer at the size the device actually accepted. Each run_once()
validates the current detection parameters, captures into that same buffer
and hands it to the sink before returning. A dropped or timed-out frame is
reported in the TickResult and the loop keeps streaming; a disconnect
releases everything and re-raises.

Example:
    from uvc_bridge.devices import AcquisitionLoop, DeviceManager, JpegSink
    from uvc_bridge.drivers.cameras import DigitalTwinCameraDriver

    manager = DeviceManager(DigitalTwinCameraDriver())
    with AcquisitionLoop(manager, sink=JpegSink()) as loop:
        for tick in loop.run(max_fps=15, max_ticks=100):
            if not tick.ok:
                print(tick.status, tick.error)
"""

from __future__ import annotations

import copy
import threading
import time
from collections.abc import Callable, Iterator
from dataclasses import dataclass, field
from enum import Enum
from types import TracebackType
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from uvc_bridge.devices.detection import DetectionParameters
from uvc_bridge.devices.device import DeviceHandle, DeviceManager
from uvc_bridge.devices.errors import (
    BridgeError,
    DeviceDisconnectedError,
    DeviceTimeoutError,
    FrameDroppedError,
    InvalidHandleError,
    InvalidParametersError,
    TickInProgressError,
)
from uvc_bridge.devices.frame_buffer import (
    FrameBuffer,
    FrameBufferManager,
    PixelFormat,
)
from uvc_bridge.devices.properties import (
    DEFAULT_PROPERTIES,
    CameraProperties,
    CameraProperty,
    read_all_properties,
    sync_all_properties,
)
from uvc_bridge.devices.sinks import NullSink, OutputSink
from uvc_bridge.observability import LogContext, get_logger

if TYPE_CHECKING:
    from uvc_bridge.drivers.cameras.types import FrameResult
    from uvc_bridge.observability import CaptureStats

logger = get_logger(__name__)

__all__ = [
    "AcquisitionConfig",
    "AcquisitionLoop",
    "Clock",
    "LoopHooks",
    "LoopState",
    "SystemClock",
    "TickResult",
    "TickStatus",
]

DEFAULT_MAX_FPS: float = 30.0


# --- Clock ---


@runtime_checkable
class Clock(Protocol):  # pragma: no cover
    """Time source for run(); inject a fake one to test pacing.

    Example:
        class FakeClock:
            def __init__(self):
                self.now = 0.0

            def monotonic(self) -> float:
                return self.now

            def sleep(self, seconds: float) -> None:
                self.now += seconds
    """

    def monotonic(self) -> float:
        """Monotonic time in seconds."""
        ...

    def sleep(self, seconds: float) -> None:
        """Block for seconds; zero or negative returns immediately."""
        ...


class SystemClock:
    """Clock backed by the time module."""

    def monotonic(self) -> float:
        return time.monotonic()

    def sleep(self, seconds: float) -> None:
        if seconds > 0:
            time.sleep(seconds)


# --- States and results ---


class LoopState(Enum):
    """Lifecycle state of an AcquisitionLoop."""

    UNINITIALIZED = "uninitialized"
    ACQUIRED = "acquired"
    STREAMING = "streaming"
    RELEASED = "released"


class TickStatus(Enum):
    """Outcome of one run_once()."""

    OK = "ok"
    DROPPED = "dropped"
    TIMEOUT = "timeout"


@dataclass(frozen=True)
class TickResult:
    """What happened during one tick.

    Attributes:
        status: OK, DROPPED or TIMEOUT.
        tick: 1-based tick number within this loop.
        frame: Capture details when status is OK, else None.
        error: Error message for a failed tick.
        duration_ms: Wall time of the tick including the sink.
    """

    status: TickStatus
    tick: int
    frame: FrameResult | None = None
    error: str | None = None
    duration_ms: float = 0.0

    @property
    def ok(self) -> bool:
        return self.status is TickStatus.OK


# --- Configuration ---


@dataclass
class AcquisitionConfig:
    """Settings the loop applies when streaming starts.

    Attributes:
        device_index: Camera to acquire.
        properties: Requested startup properties; None fields are left alone.
        detection: Initial circle-detection parameters.
        pixel_format: Channel order of the frame buffer.
        max_fps: Default rate cap for run().
    """

    device_index: int = 0
    properties: CameraProperties = field(
        default_factory=lambda: copy.copy(DEFAULT_PROPERTIES)
    )
    detection: DetectionParameters = field(default_factory=DetectionParameters)
    pixel_format: PixelFormat = PixelFormat.RGBA
    max_fps: float = DEFAULT_MAX_FPS

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AcquisitionConfig:
        """Build from a JSON-style mapping.

        ``properties`` and ``detection`` are merged over the defaults, so a
        file only needs the values it changes.

        Example:
            >>> AcquisitionConfig.from_dict(
            ...     {"properties": {"exposure": -5}, "detection": {"param2": 40}}
            ... ).detection.param2
            40
        """
        config = cls()
        if "device_index" in data:
            config.device_index = int(data["device_index"])
        if "properties" in data:
            merged = {**config.properties.to_dict(), **data["properties"]}
            config.properties = CameraProperties.from_dict(merged)
        if "detection" in data:
            merged = {**config.detection.to_dict(), **data["detection"]}
            config.detection = DetectionParameters.from_dict(merged)
        if "pixel_format" in data:
            config.pixel_format = PixelFormat(data["pixel_format"])
        if "max_fps" in data:
            config.max_fps = float(data["max_fps"])
        return config


@dataclass
class LoopHooks:
    """Optional callbacks fired by the loop.

    Hooks run on the acquisition thread inside the call that triggers them.
    They must not call run_once() or shutdown(); use stop() to end run().

    Attributes:
        on_start: (buffer, observed_properties) once streaming starts.
        on_tick: (TickResult) after every tick, successful or not.
        on_drop: (TickResult) after a DROPPED or TIMEOUT tick.
        on_error: (exception) when a fatal error ends the session.
        on_release: () after the buffer and device have been released.
    """

    on_start: Callable[[FrameBuffer, CameraProperties], None] | None = None
    on_tick: Callable[[TickResult], None] | None = None
    on_drop: Callable[[TickResult], None] | None = None
    on_error: Callable[[BaseException], None] | None = None
    on_release: Callable[[], None] | None = None


# --- Loop ---


class AcquisitionLoop:
    """Drives one camera from acquisition to release.

    Not thread-safe for concurrent ticks: a second run_once() while one is
    in progress raises TickInProgressError. shutdown() may be called from
    another thread and waits for the in-flight tick.
    """

    def __init__(
        self,
        manager: DeviceManager,
        config: AcquisitionConfig | None = None,
        sink: OutputSink | None = None,
        buffers: FrameBufferManager | None = None,
        stats: CaptureStats | None = None,
        clock: Clock | None = None,
        hooks: LoopHooks | None = None,
    ) -> None:
        """Create a loop in the UNINITIALIZED state.

        Args:
            manager: Device manager wrapping the camera driver.
            config: Startup settings. Defaults to AcquisitionConfig().
            sink: Receives the buffer every successful tick. Defaults to
                NullSink.
            buffers: Frame buffer allocator. A private one by default.
            stats: Optional collector that records every tick.
            clock: Time source for run(). Defaults to SystemClock.
            hooks: Optional lifecycle callbacks.
        """
        self._manager = manager
        self.config = config or AcquisitionConfig()
        self.sink: OutputSink = sink or NullSink()
        self._buffers = buffers or FrameBufferManager()
        self._stats = stats
        self._clock: Clock = clock or SystemClock()
        self._hooks = hooks or LoopHooks()

        #: Detection parameters for the next tick. Reassign between ticks.
        self.detection: DetectionParameters = self.config.detection

        self._state = LoopState.UNINITIALIZED
        self._state_lock = threading.RLock()
        self._tick_lock = threading.Lock()
        self._handle: DeviceHandle | None = None
        self._buffer: FrameBuffer | None = None
        self._properties: CameraProperties | None = None
        self._frame_size: tuple[int, int] | None = None
        self._tick = 0
        self._consecutive_failures = 0
        self._running = False

    def __repr__(self) -> str:
        return (
            f"AcquisitionLoop(device_index={self.config.device_index}, "
            f"state={self._state.name})"
        )

    # --- Properties ---

    @property
    def state(self) -> LoopState:
        return self._state

    @property
    def handle(self) -> DeviceHandle | None:
        return self._handle

    @property
    def buffer(self) -> FrameBuffer | None:
        return self._buffer

    @property
    def properties(self) -> CameraProperties | None:
        """Last property read-back, None before start()."""
        return self._properties

    @property
    def frame_size(self) -> tuple[int, int] | None:
        """(width, height) of the frame buffer while streaming."""
        return self._frame_size

    @property
    def stats(self) -> CaptureStats | None:
        return self._stats

    @property
    def ticks(self) -> int:
        return self._tick

    @property
    def consecutive_failures(self) -> int:
        """Dropped or timed-out ticks since the last successful one."""
        return self._consecutive_failures

    @property
    def is_running(self) -> bool:
        return self._running

    # --- Lifecycle ---

    def acquire(self) -> DeviceHandle:
        """UNINITIALIZED -> ACQUIRED.

        Raises:
            InvalidHandleError: If the loop is not UNINITIALIZED.
            DeviceUnavailableError: If the camera cannot be opened.
            DeviceBusyError: If the camera is already held.
        """
        with self._state_lock:
            if self._state is not LoopState.UNINITIALIZED:
                raise InvalidHandleError(f"Cannot acquire in state {self._state.name}")
            self._handle = self._manager.acquire_device(self.config.device_index)
            self._state = LoopState.ACQUIRED
            return self._handle

    def start(self) -> FrameBuffer:
        """ACQUIRED -> STREAMING; acquires first when UNINITIALIZED.

        Applies ``config.properties``, then allocates the frame buffer at the
        width and height read back from the device. A dimension the device
        can't report falls back to the requested value. If anything fails
        once the device is held, the buffer and device are released and the
        loop is RELEASED before the error propagates.

        Returns:
            The frame buffer every tick writes into.

        Raises:
            InvalidHandleError: If already streaming or released.
            InvalidParametersError: If no frame size is known at all.
            OutOfResourcesError: If the buffer cannot be allocated.
        """
        with self._state_lock:
            if self._state is LoopState.UNINITIALIZED:
                self.acquire()
            if self._state is not LoopState.ACQUIRED or self._handle is None:
                raise InvalidHandleError(f"Cannot start in state {self._state.name}")

            try:
                observed = sync_all_properties(
                    self._manager, self._handle, self.config.properties
                )
                width, height = self._resolve_frame_size(observed)
                buffer = self._buffers.allocate(
                    width, height, self.config.pixel_format
                )
            except BaseException as e:
                logger.error(
                    "Start failed, releasing device",
                    device_index=self.config.device_index,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                self._release_resources(raise_errors=False)
                raise

            self._properties = observed
            self._buffer = buffer
            self._frame_size = (width, height)
            self._consecutive_failures = 0
            self._state = LoopState.STREAMING

        logger.info(
            "Streaming started",
            device_index=self.config.device_index,
            width=width,
            height=height,
            pixel_format=buffer.pixel_format.value,
        )
        if self._hooks.on_start:
            try:
                self._hooks.on_start(buffer, observed)
            except BaseException:
                with self._tick_lock, self._state_lock:
                    self._release_resources(raise_errors=False)
                raise
        return buffer

    def run_once(self) -> TickResult:
        """Capture, process and deliver one frame.

        Returns:
            TickResult with status OK, DROPPED or TIMEOUT.

        Raises:
            TickInProgressError: If another tick is running.
            InvalidHandleError: If the loop is not STREAMING.
            InvalidParametersError: If ``detection`` is invalid. Nothing on
                the device or in the buffer has changed.
            DeviceDisconnectedError: The device went away; the loop is now
                RELEASED.
        """
        if not self._tick_lock.acquire(blocking=False):
            raise TickInProgressError("A tick is already in progress")
        try:
            if (
                self._state is not LoopState.STREAMING
                or self._handle is None
                or self._buffer is None
            ):
                raise InvalidHandleError(
                    f"run_once requires STREAMING, loop is {self._state.name}"
                )
            params = self.detection.validate()
            buffer = self._buffer
            buffer.check_compatible(*self._frame_size_or_raise())

            self._tick += 1
            start = self._clock.monotonic()
            with LogContext(device_index=self._handle.device_index, tick=self._tick):
                try:
                    frame = self._manager.capture_frame(self._handle, buffer, params)
                except FrameDroppedError as e:
                    return self._failed_tick(TickStatus.DROPPED, e, start)
                except DeviceTimeoutError as e:
                    return self._failed_tick(TickStatus.TIMEOUT, e, start)
                except DeviceDisconnectedError as e:
                    logger.error("Device disconnected, releasing", error=str(e))
                    if self._hooks.on_error:
                        self._hooks.on_error(e)
                    with self._state_lock:
                        self._release_resources(raise_errors=False)
                    raise

                self.sink.consume(buffer, frame)
                duration_ms = (self._clock.monotonic() - start) * 1000
                self._consecutive_failures = 0
                if self._stats is not None:
                    self._stats.record(
                        duration_ms, success=True, circles=len(frame.circles)
                    )
                tick = TickResult(
                    status=TickStatus.OK,
                    tick=self._tick,
                    frame=frame,
                    duration_ms=duration_ms,
                )
                logger.debug(
                    "Tick complete",
                    circles=len(frame.circles),
                    duration_ms=round(duration_ms, 2),
                )
            if self._hooks.on_tick:
                self._hooks.on_tick(tick)
            return tick
        finally:
            self._tick_lock.release()

    def run(
        self, max_fps: float | None = None, max_ticks: int | None = None
    ) -> Iterator[TickResult]:
        """Yield tick results at up to max_fps until stopped.

        Starts the loop if needed. Stops after max_ticks ticks, when stop()
        is called, or when the loop leaves STREAMING. Pacing uses the
        injected Clock.

        Args:
            max_fps: Rate cap; defaults to ``config.max_fps``. Zero or
                negative disables pacing.
            max_ticks: Number of ticks to run; None runs until stopped.

        Yields:
            One TickResult per tick.
        """
        if self._state in (LoopState.UNINITIALIZED, LoopState.ACQUIRED):
            self.start()
        fps = self.config.max_fps if max_fps is None else max_fps
        min_interval = 1.0 / fps if fps > 0 else 0.0

        self._running = True
        count = 0
        try:
            while self._running and self._state is LoopState.STREAMING:
                if max_ticks is not None and count >= max_ticks:
                    break
                start = self._clock.monotonic()
                tick = self.run_once()
                count += 1
                yield tick

                elapsed = self._clock.monotonic() - start
                if elapsed < min_interval:
                    self._clock.sleep(min_interval - elapsed)
        finally:
            self._running = False

    def stop(self) -> None:
        """Ask run() to return after the current tick. Safe from any thread."""
        self._running = False

    def shutdown(self) -> None:
        """Release the buffer, then the device, and enter RELEASED.

        Waits for an in-flight tick. Idempotent once RELEASED; from
        UNINITIALIZED it only marks the loop released.

        Raises:
            BridgeError: The first error raised while releasing. The loop is
                RELEASED regardless.
        """
        self._running = False
        with self._tick_lock, self._state_lock:
            if self._state is LoopState.RELEASED:
                return
            if self._state is LoopState.UNINITIALIZED:
                self._state = LoopState.RELEASED
                return
            self._release_resources(raise_errors=True)

    def __enter__(self) -> AcquisitionLoop:
        self.start()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        try:
            self.shutdown()
        except BridgeError as e:
            if exc_type is None:
                raise
            logger.warning("Error during shutdown", error=str(e))

    # --- Property pass-throughs ---

    def get_property(self, prop: CameraProperty) -> float:
        """Current device value of prop (ACQUIRED or STREAMING)."""
        return self._manager.get_property(self._live_handle(), prop)

    def set_property(self, prop: CameraProperty, value: float) -> float:
        """Set prop and return the read-back (ACQUIRED or STREAMING).

        Changing the resolution while streaming does not resize the buffer;
        later frames are scaled to the buffer size.
        """
        actual = self._manager.set_property(self._live_handle(), prop, value)
        if self._properties is not None:
            self._properties.set(prop, actual)
        return actual

    def sync_properties(self, requested: CameraProperties) -> CameraProperties:
        """Apply a batch of properties and return the full read-back."""
        observed = sync_all_properties(self._manager, self._live_handle(), requested)
        self._properties = observed
        return observed

    def read_properties(self) -> CameraProperties:
        """Read every property back from the device."""
        observed = read_all_properties(self._manager, self._live_handle())
        self._properties = observed
        return observed

    # --- Private helpers ---

    def _live_handle(self) -> DeviceHandle:
        if (
            self._state not in (LoopState.ACQUIRED, LoopState.STREAMING)
            or self._handle is None
        ):
            raise InvalidHandleError(
                f"Property access requires a live device, loop is {self._state.name}"
            )
        return self._handle

    def _frame_size_or_raise(self) -> tuple[int, int]:
        if self._frame_size is None:
            raise InvalidHandleError("No frame size established")
        return self._frame_size

    def _resolve_frame_size(self, observed: CameraProperties) -> tuple[int, int]:
        requested = self.config.properties
        width = observed.width if observed.width else requested.width
        height = observed.height if observed.height else requested.height
        if not width or not height:
            raise InvalidParametersError(
                "Frame size unknown: device reports none and none was requested"
            )
        return int(round(width)), int(round(height))

    def _failed_tick(
        self, status: TickStatus, error: BridgeError, start: float
    ) -> TickResult:
        duration_ms = (self._clock.monotonic() - start) * 1000
        self._consecutive_failures += 1
        if self._stats is not None:
            self._stats.record(duration_ms, success=False, error_type=status.value)
        logger.warning(
            "Frame not captured",
            status=status.value,
            error=str(error),
            consecutive_failures=self._consecutive_failures,
        )
        tick = TickResult(
            status=status,
            tick=self._tick,
            error=str(error),
            duration_ms=duration_ms,
        )
        if self._hooks.on_drop:
            self._hooks.on_drop(tick)
        if self._hooks.on_tick:
            self._hooks.on_tick(tick)
        return tick

    def _release_resources(self, raise_errors: bool) -> None:
        """Release buffer then device; caller holds the state lock."""
        first_error: BridgeError | None = None

        if self._buffer is not None and not self._buffer.released:
            try:
                self._buffers.release(self._buffer)
            except BridgeError as e:
                logger.warning("Error releasing frame buffer", error=str(e))
                first_error = first_error or e
        self._buffer = None

        if self._handle is not None:
            try:
                self._manager.release_device(self._handle)
            except BridgeError as e:
                logger.warning(
                    "Error releasing device",
                    device_index=self._handle.device_index,
                    error=str(e),
                )
                first_error = first_error or e
        self._handle = None
        self._frame_size = None
        self._state = LoopState.RELEASED
        self._running = False
        logger.info("Acquisition released", device_index=self.config.device_index)

        if self._hooks.on_release:
            self._hooks.on_release()
        if raise_errors and first_error is not None:
            raise first_error
