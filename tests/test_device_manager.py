"""Tests for DeviceManager and DeviceHandle."""

import threading
from unittest.mock import MagicMock

import pytest

from uvc_bridge.devices import (
    DEFAULT_DETECTION,
    DeviceBusyError,
    DeviceHandle,
    DeviceManager,
    DeviceUnavailableError,
    FrameBufferManager,
    InvalidHandleError,
    InvalidParametersError,
)
from uvc_bridge.devices.properties import CameraProperty
from uvc_bridge.drivers.cameras import DigitalTwinCameraDriver


class TestAcquire:
    """Tests for acquire_device()."""

    def test_returns_live_handle(self, manager: DeviceManager):
        handle = manager.acquire_device(0)
        assert isinstance(handle, DeviceHandle)
        assert handle.device_index == 0
        assert manager.is_live(handle)
        assert manager.live_handles == [handle]

    def test_default_index_is_zero(self, manager: DeviceManager):
        assert manager.acquire_device().device_index == 0

    def test_missing_camera(self, manager: DeviceManager):
        with pytest.raises(DeviceUnavailableError):
            manager.acquire_device(5)
        assert manager.live_handles == []

    def test_second_acquire_is_busy(self, manager: DeviceManager):
        manager.acquire_device(0)
        with pytest.raises(DeviceBusyError):
            manager.acquire_device(0)

    def test_busy_across_managers_sharing_a_driver(self):
        """Verifies exclusivity is enforced by the driver, not just the manager.

        Arrangement:
        1. One twin driver shared by two DeviceManagers.
        2. First manager holds camera 0.

        Action:
        Second manager acquires camera 0.

        Assertion Strategy:
        DeviceBusyError from the driver's own bookkeeping.
        """
        driver = DigitalTwinCameraDriver()
        first = DeviceManager(driver)
        second = DeviceManager(driver)
        handle = first.acquire_device(0)
        try:
            with pytest.raises(DeviceBusyError):
                second.acquire_device(0)
        finally:
            first.release_device(handle)
        second.release_device(second.acquire_device(0))

    def test_unexpected_driver_error_is_wrapped(self):
        driver = MagicMock()
        driver.open.side_effect = OSError("permission denied")
        manager = DeviceManager(driver)
        with pytest.raises(DeviceUnavailableError, match="permission denied"):
            manager.acquire_device(0)

    def test_reacquire_gives_new_serial(self, manager: DeviceManager):
        first = manager.acquire_device(0)
        manager.release_device(first)
        second = manager.acquire_device(0)
        assert first != second
        assert not manager.is_live(first)


class TestRelease:
    def test_release_twice(self, manager: DeviceManager):
        handle = manager.acquire_device(0)
        manager.release_device(handle)
        with pytest.raises(InvalidHandleError):
            manager.release_device(handle)

    def test_forged_handle(self, manager: DeviceManager):
        manager.acquire_device(0)
        with pytest.raises(InvalidHandleError):
            manager.release_device(DeviceHandle(device_index=0, serial=-1))

    def test_stale_handle_rejected_everywhere(self, manager: DeviceManager):
        handle = manager.acquire_device(0)
        manager.release_device(handle)
        buf = FrameBufferManager().allocate(640, 480)
        with pytest.raises(InvalidHandleError):
            manager.get_property(handle, CameraProperty.GAIN)
        with pytest.raises(InvalidHandleError):
            manager.set_property(handle, CameraProperty.GAIN, 1)
        with pytest.raises(InvalidHandleError):
            manager.capture_frame(handle, buf, DEFAULT_DETECTION)

    def test_release_all(self):
        driver = DigitalTwinCameraDriver(
            cameras={0: {"Name": "a"}, 1: {"Name": "b"}}
        )
        manager = DeviceManager(driver)
        manager.acquire_device(0)
        manager.acquire_device(1)
        manager.release_all()
        assert manager.live_handles == []


class TestProperties:
    def test_set_returns_read_back(self, manager: DeviceManager):
        handle = manager.acquire_device(0)
        assert manager.set_property(handle, CameraProperty.GAIN, 500) == 100
        assert manager.get_property(handle, CameraProperty.GAIN) == 100

    def test_accepts_plain_int_ids(self, manager: DeviceManager):
        handle = manager.acquire_device(0)
        assert manager.get_property(handle, 14) == 0  # GAIN


class TestCapture:
    """Tests for capture_frame() argument checks."""

    def test_capture_fills_buffer(self, manager: DeviceManager):
        handle = manager.acquire_device(0)
        manager.set_property(handle, CameraProperty.FRAME_WIDTH, 640)
        manager.set_property(handle, CameraProperty.FRAME_HEIGHT, 480)
        buf = FrameBufferManager().allocate(640, 480)

        result = manager.capture_frame(handle, buf, DEFAULT_DETECTION)

        assert (result.width, result.height) == (640, 480)
        assert result.sequence == 1
        assert (buf.data[:, :, 3] == 255).all()

    def test_invalid_params_leave_buffer_untouched(self, manager: DeviceManager):
        """Verifies bad parameters are rejected before the device is read.

        Arrangement:
        1. Live handle and a buffer filled with a sentinel value.
        2. Detection parameters with param2=0.

        Action:
        capture_frame with the bad parameters.

        Assertion Strategy:
        - InvalidParametersError raised.
        - Buffer still holds the sentinel.
        - A following valid capture is sequence 1, so the twin was never read.
        """
        handle = manager.acquire_device(0)
        buf = FrameBufferManager().allocate(1280, 960)
        buf.data[:] = 7

        with pytest.raises(InvalidParametersError):
            manager.capture_frame(handle, buf, DEFAULT_DETECTION.replace(param2=0))

        assert (buf.data == 7).all()
        assert manager.capture_frame(handle, buf, DEFAULT_DETECTION).sequence == 1

    def test_released_buffer_rejected(self, manager: DeviceManager):
        handle = manager.acquire_device(0)
        buffers = FrameBufferManager()
        buf = buffers.allocate(64, 48)
        buffers.release(buf)
        with pytest.raises(InvalidHandleError):
            manager.capture_frame(handle, buf, DEFAULT_DETECTION)

    def test_calls_on_one_handle_are_serialized(self):
        """Verifies the per-handle lock keeps session calls from overlapping."""
        active = 0
        overlap = threading.Event()
        guard = threading.Lock()

        class SlowSession:
            def get_property(self, prop):
                nonlocal active
                with guard:
                    active += 1
                    if active > 1:
                        overlap.set()
                threading.Event().wait(0.01)
                with guard:
                    active -= 1
                return 0.0

            def close(self):
                pass

        driver = MagicMock()
        driver.open.return_value = SlowSession()
        manager = DeviceManager(driver)
        handle = manager.acquire_device(0)

        threads = [
            threading.Thread(
                target=manager.get_property, args=(handle, CameraProperty.GAIN)
            )
            for _ in range(5)
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert not overlap.is_set()


def test_repr_mentions_live_count(manager: DeviceManager):
    manager.acquire_device(0)
    assert "live=1" in repr(manager)
