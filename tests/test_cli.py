"""Tests for uvc_bridge.cli: config loading and subcommand dispatch.

Test Categories:
    - ``_strip_jsonc_comments``: JSONC comment removal and cleanup
    - ``load_config``: File values over defaults, bad files
    - ``main run``: Streaming against the digital twin, stats output
    - ``main properties``: Read-back with and without applying defaults
    - ``main serve``: Delegation to the web preview
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any
from unittest.mock import patch

import pytest

from uvc_bridge.cli import _strip_jsonc_comments, build_parser, load_config, main
from uvc_bridge.devices import DEFAULT_PROPERTIES
from uvc_bridge.drivers.cameras import DigitalTwinCameraDriver, DigitalTwinConfig
from uvc_bridge.drivers.config import DriverMode


def _stdout_json(capsys: pytest.CaptureFixture[str]) -> dict[str, Any]:
    return json.loads(capsys.readouterr().out)


class _TwinFactory:
    """Replaces DriverFactory so a test can inject twin faults."""

    twin = DigitalTwinConfig()

    def __init__(self, config: Any = None) -> None:
        self.config = config

    def create_camera_driver(self) -> DigitalTwinCameraDriver:
        return DigitalTwinCameraDriver(self.twin)


# =========================================================================
# _strip_jsonc_comments
# =========================================================================


class TestStripJsoncComments:
    """Tests for JSONC comment stripping."""

    def test_no_comments(self) -> None:
        """Plain JSON passes through unchanged."""
        text = '{"key": "value"}'
        assert json.loads(_strip_jsonc_comments(text)) == {"key": "value"}

    def test_trailing_comment(self) -> None:
        """Trailing // comment on a line is removed."""
        text = '{"key": "value"} // this is a comment'
        assert json.loads(_strip_jsonc_comments(text)) == {"key": "value"}

    def test_full_line_comment(self) -> None:
        text = '{\n  // comment\n  "key": "value"\n}'
        assert json.loads(_strip_jsonc_comments(text)) == {"key": "value"}

    def test_trailing_comma_before_brace(self) -> None:
        """Comma left behind by a removed entry is cleaned up."""
        text = '{\n  "a": 1,\n  // "b": 2\n}'
        assert json.loads(_strip_jsonc_comments(text)) == {"a": 1}

    def test_trailing_comma_before_bracket(self) -> None:
        text = '{"items": [1, 2, // three\n]}'
        assert json.loads(_strip_jsonc_comments(text)) == {"items": [1, 2]}


# =========================================================================
# load_config
# =========================================================================


class TestLoadConfig:
    def test_none_gives_defaults(self) -> None:
        driver, acquisition = load_config(None)
        assert driver.mode is DriverMode.DIGITAL_TWIN
        assert acquisition.properties == DEFAULT_PROPERTIES

    def test_sections_merge_over_defaults(self, tmp_path: Path) -> None:
        """File values win; unspecified properties keep their defaults."""
        path = tmp_path / "bridge.jsonc"
        path.write_text(
            "{\n"
            '  "driver": {"mode": "hardware", "device_index": 2},\n'
            '  "acquisition": {\n'
            '    "properties": {"exposure": -5},  // log2 seconds\n'
            '    "detection": {"param2": 40},\n'
            '    "max_fps": 10,\n'
            "  }\n"
            "}\n"
        )
        driver, acquisition = load_config(path)
        assert driver.mode is DriverMode.HARDWARE
        assert driver.device_index == 2
        assert acquisition.properties.exposure == -5.0
        assert acquisition.properties.gain == DEFAULT_PROPERTIES.gain
        assert acquisition.detection.param2 == 40
        assert acquisition.max_fps == 10.0

    def test_invalid_json(self, tmp_path: Path) -> None:
        path = tmp_path / "bad.json"
        path.write_text("{not json")
        with pytest.raises(ValueError):
            load_config(path)

    def test_top_level_must_be_object(self, tmp_path: Path) -> None:
        path = tmp_path / "list.json"
        path.write_text("[1, 2]")
        with pytest.raises(ValueError, match="top level"):
            load_config(path)


# =========================================================================
# main
# =========================================================================


class TestMainDispatch:
    def test_no_command_prints_help(self, capsys: pytest.CaptureFixture[str]) -> None:
        assert main([]) == 2
        assert "usage" in capsys.readouterr().out

    def test_parser_has_subcommands(self) -> None:
        args = build_parser().parse_args(["run", "--frames", "5"])
        assert args.command == "run"
        assert args.frames == 5

    def test_missing_config_file(self, tmp_path: Path) -> None:
        assert main(["run", "--config", str(tmp_path / "missing.json")]) == 2

    def test_bad_config_file(self, tmp_path: Path) -> None:
        path = tmp_path / "bad.json"
        path.write_text("{")
        assert main(["properties", "--config", str(path)]) == 2

    def test_invalid_detection_parameters(self, tmp_path: Path) -> None:
        path = tmp_path / "bad_detection.json"
        path.write_text('{"acquisition": {"detection": {"param1": 0}}}')
        assert main(["run", "--frames", "1", "--config", str(path)]) == 2


class TestRunCommand:
    """Tests for ``uvc-bridge run`` against the digital twin."""

    def test_prints_stats(self, capsys: pytest.CaptureFixture[str]) -> None:
        """Verifies run streams the requested frames and reports them.

        Arrangement:
        1. Default config (digital twin, synthetic discs).

        Action:
        main(["run", "--frames", "3", "--fps", "0"]).

        Assertion Strategy:
        - Exit code 0.
        - Stats JSON on stdout shows three successful ticks.
        """
        assert main(["run", "--frames", "3", "--fps", "0"]) == 0
        stats = _stdout_json(capsys)
        assert stats["ok_ticks"] == 3
        assert stats["failed_ticks"] == 0
        assert stats["device_index"] == 0
        assert "timestamp" in stats

    def test_from_image_file(
        self, disc_image: Path, capsys: pytest.CaptureFixture[str]
    ) -> None:
        argv = ["run", "--frames", "2", "--fps", "0", "--image-path", str(disc_image)]
        assert main(argv) == 0
        stats = _stdout_json(capsys)
        assert stats["ok_ticks"] == 2
        assert stats["circles_detected"] == 2

    def test_no_detection(self, capsys: pytest.CaptureFixture[str]) -> None:
        assert main(["run", "--frames", "2", "--fps", "0", "--no-detection"]) == 0
        assert _stdout_json(capsys)["circles_detected"] == 0

    def test_drops_are_counted(self, capsys: pytest.CaptureFixture[str]) -> None:
        _TwinFactory.twin = DigitalTwinConfig(drop_frames=frozenset({2}))
        with patch("uvc_bridge.cli.DriverFactory", _TwinFactory):
            assert main(["run", "--frames", "4", "--fps", "0"]) == 0
        stats = _stdout_json(capsys)
        assert stats["ok_ticks"] == 3
        assert stats["error_counts"] == {"dropped": 1}

    def test_max_consecutive_drops(self, capsys: pytest.CaptureFixture[str]) -> None:
        """Stops with exit code 1 once the drop limit is reached."""
        _TwinFactory.twin = DigitalTwinConfig(drop_frames=frozenset(range(1, 10)))
        argv = ["run", "--frames", "20", "--fps", "0", "--max-consecutive-drops", "3"]
        with patch("uvc_bridge.cli.DriverFactory", _TwinFactory):
            assert main(argv) == 1
        stats = _stdout_json(capsys)
        assert stats["total_ticks"] == 3
        assert stats["ok_ticks"] == 0

    def test_disconnect_exits_1(self, capsys: pytest.CaptureFixture[str]) -> None:
        _TwinFactory.twin = DigitalTwinConfig(disconnect_after=2)
        with patch("uvc_bridge.cli.DriverFactory", _TwinFactory):
            assert main(["run", "--frames", "5", "--fps", "0"]) == 1
        assert _stdout_json(capsys)["ok_ticks"] == 2

    def test_unknown_device(self, capsys: pytest.CaptureFixture[str]) -> None:
        assert main(["run", "--frames", "1", "--device", "7"]) == 1
        assert _stdout_json(capsys)["total_ticks"] == 0


class TestPropertiesCommand:
    def test_read_back(self, capsys: pytest.CaptureFixture[str]) -> None:
        assert main(["properties"]) == 0
        props = _stdout_json(capsys)
        assert set(props) == set(DEFAULT_PROPERTIES.to_dict())
        assert props["fps"] == 30.0

    def test_apply(self, capsys: pytest.CaptureFixture[str]) -> None:
        """--apply sends the default properties before reading them back."""
        assert main(["properties", "--apply"]) == 0
        props = _stdout_json(capsys)
        assert props["width"] == 640.0
        assert props["height"] == 480.0
        assert props["gain"] == DEFAULT_PROPERTIES.gain
        assert props["exposure"] == DEFAULT_PROPERTIES.exposure


class TestServeCommand:
    def test_delegates_to_web_serve(self) -> None:
        with patch("uvc_bridge.web.app.serve") as serve:
            assert main(["serve", "--port", "9001", "--device", "0"]) == 0
        driver_config, acquisition = serve.call_args.args
        assert driver_config.device_index == 0
        assert acquisition.device_index == 0
        assert serve.call_args.kwargs == {"host": "127.0.0.1", "port": 9001}
