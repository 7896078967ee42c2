"""Logical device layer - hardware-agnostic acquisition on top of the drivers."""

from uvc_bridge.devices.acquisition import (
    AcquisitionConfig,
    AcquisitionLoop,
    Clock,
    LoopHooks,
    LoopState,
    SystemClock,
    TickResult,
    TickStatus,
)
from uvc_bridge.devices.detection import DEFAULT_DETECTION, DetectionParameters
from uvc_bridge.devices.device import DeviceHandle, DeviceManager
from uvc_bridge.devices.errors import (
    BridgeError,
    DeviceBusyError,
    DeviceDisconnectedError,
    DeviceTimeoutError,
    DeviceUnavailableError,
    FrameDroppedError,
    InvalidHandleError,
    InvalidParametersError,
    OutOfResourcesError,
    PropertyUnsupportedError,
    TickInProgressError,
)
from uvc_bridge.devices.frame_buffer import (
    FrameBuffer,
    FrameBufferManager,
    PixelFormat,
)
from uvc_bridge.devices.properties import (
    APPLY_ORDER,
    DEFAULT_PROPERTIES,
    CameraProperties,
    CameraProperty,
    read_all_properties,
    sync_all_properties,
)
from uvc_bridge.devices.sinks import JpegSink, NullSink, OutputSink, WindowSink

__all__ = [
    # Acquisition
    "AcquisitionConfig",
    "AcquisitionLoop",
    "LoopHooks",
    "LoopState",
    "TickResult",
    "TickStatus",
    # Clock
    "Clock",
    "SystemClock",
    # Detection
    "DEFAULT_DETECTION",
    "DetectionParameters",
    # Device
    "DeviceHandle",
    "DeviceManager",
    # Errors
    "BridgeError",
    "DeviceBusyError",
    "DeviceDisconnectedError",
    "DeviceTimeoutError",
    "DeviceUnavailableError",
    "FrameDroppedError",
    "InvalidHandleError",
    "InvalidParametersError",
    "OutOfResourcesError",
    "PropertyUnsupportedError",
    "TickInProgressError",
    # Frame buffers
    "FrameBuffer",
    "FrameBufferManager",
    "PixelFormat",
    # Properties
    "APPLY_ORDER",
    "DEFAULT_PROPERTIES",
    "CameraProperties",
    "CameraProperty",
    "read_all_properties",
    "sync_all_properties",
    # Sinks
    "JpegSink",
    "NullSink",
    "OutputSink",
    "WindowSink",
]
