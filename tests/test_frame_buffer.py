"""Tests for FrameBuffer and FrameBufferManager."""

import numpy as np
import pytest

from uvc_bridge.devices import (
    FrameBufferManager,
    InvalidHandleError,
    InvalidParametersError,
    OutOfResourcesError,
    PixelFormat,
)


class TestAllocate:
    """Tests for FrameBufferManager.allocate()."""

    def test_shape_and_layout(self, buffers: FrameBufferManager):
        """Verifies the buffer is a zeroed HxWx4 uint8 C-contiguous array.

        Arrangement:
        1. Fresh manager.

        Action:
        Allocates 640x480 RGBA.

        Assertion Strategy:
        - shape (480, 640, 4), dtype uint8, C-contiguous, all zeros.
        - live_count is 1 and the address is non-zero.
        """
        buf = buffers.allocate(640, 480)
        assert buf.shape == (480, 640, 4)
        assert buf.data.shape == (480, 640, 4)
        assert buf.data.dtype == np.uint8
        assert buf.data.flags["C_CONTIGUOUS"]
        assert not buf.data.any()
        assert buf.pixel_format is PixelFormat.RGBA
        assert buf.pixel_count == 640 * 480
        assert buf.address != 0
        assert buffers.live_count == 1

    def test_accepts_format_string(self, buffers: FrameBufferManager):
        assert buffers.allocate(4, 4, "bgra").pixel_format is PixelFormat.BGRA

    def test_accepts_numpy_integers(self, buffers: FrameBufferManager):
        buf = buffers.allocate(np.int64(8), np.int32(6))
        assert (buf.width, buf.height) == (8, 6)

    @pytest.mark.parametrize(
        ("width", "height"),
        [(0, 480), (640, 0), (-1, 10), (10.5, 10), ("640", 480), (True, 480)],
    )
    def test_invalid_dimensions(self, buffers: FrameBufferManager, width, height):
        with pytest.raises(InvalidParametersError):
            buffers.allocate(width, height)
        assert buffers.live_count == 0

    def test_over_pixel_limit(self):
        manager = FrameBufferManager(max_pixels=100)
        with pytest.raises(OutOfResourcesError):
            manager.allocate(11, 10)
        assert manager.live_count == 0

    def test_out_of_resources_is_memory_error(self):
        with pytest.raises(MemoryError):
            FrameBufferManager(max_pixels=1).allocate(2, 2)


class TestRelease:
    def test_release(self, buffers: FrameBufferManager):
        buf = buffers.allocate(4, 4)
        buffers.release(buf)
        assert buf.released
        assert buffers.live_count == 0

    def test_data_after_release(self, buffers: FrameBufferManager):
        buf = buffers.allocate(4, 4)
        buffers.release(buf)
        with pytest.raises(InvalidHandleError):
            _ = buf.data

    def test_double_release(self, buffers: FrameBufferManager):
        buf = buffers.allocate(4, 4)
        buffers.release(buf)
        with pytest.raises(InvalidHandleError):
            buffers.release(buf)

    def test_release_foreign_buffer(self, buffers: FrameBufferManager):
        other = FrameBufferManager().allocate(4, 4)
        with pytest.raises(InvalidHandleError):
            buffers.release(other)
        assert not other.released

    def test_multiple_live_buffers(self, buffers: FrameBufferManager):
        a = buffers.allocate(4, 4)
        b = buffers.allocate(4, 4)
        assert buffers.live_count == 2
        buffers.release(a)
        assert buffers.live_count == 1
        assert not b.released


class TestCheckCompatible:
    def test_matching(self, buffers: FrameBufferManager):
        buffers.allocate(32, 24).check_compatible(32, 24)

    def test_dimension_mismatch(self, buffers: FrameBufferManager):
        buf = buffers.allocate(32, 24)
        with pytest.raises(InvalidParametersError, match="32x24"):
            buf.check_compatible(24, 32)

    def test_released(self, buffers: FrameBufferManager):
        buf = buffers.allocate(32, 24)
        buffers.release(buf)
        with pytest.raises(InvalidHandleError):
            buf.check_compatible(32, 24)

    def test_repr(self, buffers: FrameBufferManager):
        buf = buffers.allocate(32, 24)
        assert repr(buf) == "FrameBuffer(32x24, rgba, live)"
