"""Tests for the output sinks."""

import threading
from unittest.mock import patch

import cv2
import numpy as np
import pytest

from uvc_bridge.devices import (
    FrameBufferManager,
    JpegSink,
    NullSink,
    OutputSink,
    PixelFormat,
    WindowSink,
)
from uvc_bridge.devices import sinks as sinks_module
from uvc_bridge.drivers.cameras import FrameResult

from tests.helpers import assert_all_implement_protocol

RESULT = FrameResult(width=8, height=6, sequence=1)


def _red_buffer(pixel_format=PixelFormat.RGBA):
    buf = FrameBufferManager().allocate(8, 6, pixel_format)
    if pixel_format is PixelFormat.RGBA:
        buf.data[:] = (255, 0, 0, 255)
    else:
        buf.data[:] = (0, 0, 255, 255)
    return buf


def test_all_sinks_implement_protocol():
    assert_all_implement_protocol([NullSink(), JpegSink(), WindowSink()], OutputSink)


class TestNullSink:
    def test_counts(self):
        sink = NullSink()
        sink.consume(_red_buffer(), RESULT)
        sink.consume(_red_buffer(), RESULT)
        assert sink.frames == 2
        assert sink.last_result is RESULT


class TestJpegSink:
    """Tests for JpegSink encoding and hand-off."""

    @pytest.mark.parametrize("pixel_format", list(PixelFormat))
    def test_encodes_colors_correctly(self, pixel_format):
        """Verifies the channel order survives the JPEG round trip.

        Arrangement:
        1. Solid red buffer in either RGBA or BGRA order.

        Action:
        consume(), then decode the published JPEG.

        Assertion Strategy:
        Decoded pixel is red in BGR (within JPEG tolerance).
        """
        sink = JpegSink(quality=95)
        sink.consume(_red_buffer(pixel_format), RESULT)
        jpeg = sink.latest()
        assert jpeg is not None
        decoded = cv2.imdecode(np.frombuffer(jpeg, dtype=np.uint8), cv2.IMREAD_COLOR)
        b, g, r = (int(v) for v in decoded[3, 4])
        assert r > 200
        assert g < 50
        assert b < 50

    def test_latest_before_first_frame(self):
        sink = JpegSink()
        assert sink.latest() is None
        assert sink.sequence == 0
        assert sink.wait_for_frame(timeout=0.01) is None

    def test_invalid_quality(self):
        with pytest.raises(ValueError):
            JpegSink(quality=101)

    def test_wait_for_frame_wakes_waiter(self):
        sink = JpegSink()
        got = {}

        def waiter():
            got["frame"] = sink.wait_for_frame(after=0, timeout=5.0)

        t = threading.Thread(target=waiter)
        t.start()
        sink.consume(_red_buffer(), RESULT)
        t.join()
        assert got["frame"][0] == 1
        assert sink.last_result is RESULT

    def test_encode_failure_is_skipped(self):
        sink = JpegSink()
        with patch.object(sinks_module.cv2, "imencode", return_value=(False, None)):
            sink.consume(_red_buffer(), RESULT)
        assert sink.sequence == 0


class TestWindowSink:
    def test_shows_and_closes(self):
        with (
            patch.object(sinks_module.cv2, "imshow") as imshow,
            patch.object(sinks_module.cv2, "waitKey") as wait_key,
            patch.object(sinks_module.cv2, "destroyWindow") as destroy,
        ):
            sink = WindowSink("preview")
            sink.consume(_red_buffer(), RESULT)
            sink.close()
            sink.close()

        name, shown = imshow.call_args.args
        assert name == "preview"
        assert shown.shape == (6, 8, 3)
        wait_key.assert_called_once_with(1)
        destroy.assert_called_once_with("preview")

    def test_close_without_frames(self):
        with patch.object(sinks_module.cv2, "destroyWindow") as destroy:
            WindowSink().close()
        destroy.assert_not_called()
