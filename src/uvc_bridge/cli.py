"""CLI entry point for uvc-bridge.

Provides the ``uvc-bridge`` console script with subcommands:

- ``run``: Stream frames through circle detection, print stats as JSON
- ``properties``: Print the camera's property read-back as JSON
- ``serve``: Run the read-only web preview

Usage::

    # 300 frames from the simulated camera at up to 30 fps
    uvc-bridge run --frames 300

    # Real camera 1, live window, abort after 10 drops in a row
    uvc-bridge run --mode hardware --device 1 --show --max-consecutive-drops 10

    # Apply the startup properties, then show what the device accepted
    uvc-bridge properties --mode hardware --apply

    # Web preview on http://127.0.0.1:8080/stream
    uvc-bridge serve --port 8080

Configuration files are JSON (``//`` comments allowed) with optional
``driver`` and ``acquisition`` sections; command-line flags override them::

    {
      "driver": {"mode": "hardware", "capture_timeout_s": 1.0},
      "acquisition": {
        "properties": {"exposure": -6},  // log2 seconds
        "detection": {"param2": 40, "apply_pre_blur": true}
      }
    }
"""

from __future__ import annotations

import argparse
import json
import re
import sys
from collections.abc import Sequence
from pathlib import Path
from typing import Any

from uvc_bridge.devices import (
    AcquisitionConfig,
    AcquisitionLoop,
    BridgeError,
    DeviceManager,
    InvalidParametersError,
    NullSink,
    OutputSink,
    WindowSink,
    read_all_properties,
    sync_all_properties,
)
from uvc_bridge.drivers.config import DriverConfig, DriverFactory, DriverMode
from uvc_bridge.observability import CaptureStats, configure_logging, get_logger

PROG_NAME = "uvc-bridge"
DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 8080

logger = get_logger(__name__)


def _strip_jsonc_comments(text: str) -> str:
    """Strip ``//`` comments and the trailing commas they leave behind.

    Does not handle ``/* */`` block comments, or ``//`` inside strings.

    Example:
        >>> _strip_jsonc_comments('{"key": "val"} // comment')
        '{"key": "val"} '
    """
    text = re.sub(r"//.*$", "", text, flags=re.MULTILINE)
    text = re.sub(r",(\s*[}\]])", r"\1", text)
    return text


def load_config(path: Path | None) -> tuple[DriverConfig, AcquisitionConfig]:
    """Read a JSON config file into driver and acquisition settings.

    Args:
        path: Config file, or None for all defaults.

    Returns:
        (DriverConfig, AcquisitionConfig) with file values over defaults.

    Raises:
        OSError: If the file cannot be read.
        ValueError: If the file is not valid JSON or holds bad values.
    """
    if path is None:
        return DriverConfig(), AcquisitionConfig()
    data: dict[str, Any] = json.loads(_strip_jsonc_comments(path.read_text()))
    if not isinstance(data, dict):
        raise ValueError(f"{path}: top level must be an object")
    driver = DriverConfig.from_dict(data.get("driver", {}))
    acquisition = AcquisitionConfig.from_dict(data.get("acquisition", {}))
    return driver, acquisition


def _apply_overrides(
    args: argparse.Namespace,
    driver: DriverConfig,
    acquisition: AcquisitionConfig,
) -> None:
    """Let explicit command-line flags win over file values."""
    if args.mode is not None:
        driver.mode = DriverMode(args.mode)
    if args.device is not None:
        driver.device_index = args.device
    if args.image_path is not None:
        driver.image_path = args.image_path
    if args.timeout is not None:
        driver.capture_timeout_s = args.timeout
    acquisition.device_index = driver.device_index

    if getattr(args, "fps", None) is not None:
        acquisition.max_fps = args.fps
    if getattr(args, "no_detection", False):
        acquisition.detection = acquisition.detection.replace(enabled=False)
    if getattr(args, "pre_blur", False):
        acquisition.detection = acquisition.detection.replace(apply_pre_blur=True)


def _build(args: argparse.Namespace) -> tuple[DriverConfig, AcquisitionConfig]:
    configure_logging(level=args.log_level, json_format=args.json_logs, force=True)
    driver, acquisition = load_config(args.config)
    _apply_overrides(args, driver, acquisition)
    acquisition.detection.validate()
    return driver, acquisition


def _emit(data: dict[str, Any]) -> None:
    sys.stdout.write(json.dumps(data, indent=2) + "\n")
    sys.stdout.flush()


def run_stream(args: argparse.Namespace) -> int:
    """Stream frames and print the stats summary.

    Returns:
        0 on success, 1 when ``--max-consecutive-drops`` is exceeded or the
        device disconnects.
    """
    driver_config, acquisition = _build(args)
    manager = DeviceManager(DriverFactory(driver_config).create_camera_driver())
    stats = CaptureStats(device_index=acquisition.device_index)
    window = WindowSink() if args.show else None
    sink: OutputSink = window if window is not None else NullSink()

    exit_code = 0
    loop = AcquisitionLoop(manager, acquisition, sink=sink, stats=stats)
    try:
        with loop:
            for tick in loop.run(max_ticks=args.frames):
                limit = args.max_consecutive_drops
                if limit and loop.consecutive_failures >= limit:
                    logger.error(
                        "Too many consecutive failed frames, stopping",
                        consecutive_failures=loop.consecutive_failures,
                        last_status=tick.status.value,
                    )
                    exit_code = 1
                    break
    except BridgeError as e:
        logger.error("Acquisition failed", error=str(e), error_type=type(e).__name__)
        exit_code = 1
    finally:
        if window is not None:
            window.close()

    _emit(stats.to_dict())
    return exit_code


def run_properties(args: argparse.Namespace) -> int:
    """Print the property read-back, optionally after applying defaults."""
    driver_config, acquisition = _build(args)
    manager = DeviceManager(DriverFactory(driver_config).create_camera_driver())
    handle = manager.acquire_device(driver_config.device_index)
    try:
        if args.apply:
            observed = sync_all_properties(manager, handle, acquisition.properties)
        else:
            observed = read_all_properties(manager, handle)
    finally:
        manager.release_device(handle)
    _emit(observed.to_dict())
    return 0


def run_serve(args: argparse.Namespace) -> int:
    """Run the web preview until interrupted."""
    driver_config, acquisition = _build(args)

    from uvc_bridge.web.app import serve

    serve(driver_config, acquisition, host=args.host, port=args.port)
    return 0


def _add_common_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--mode",
        choices=[m.value for m in DriverMode],
        default=None,
        help="Camera driver (default: digital_twin, or the config file's)",
    )
    parser.add_argument("--device", type=int, default=None, help="Camera index")
    parser.add_argument(
        "--image-path",
        type=Path,
        default=None,
        help="Image file or directory for the digital twin to replay",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=None,
        help="Seconds before a hardware read is reported as timed out",
    )
    parser.add_argument("--config", type=Path, default=None, help="JSON config file")
    parser.add_argument(
        "--log-level",
        default="WARNING",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Log level (default: WARNING)",
    )
    parser.add_argument(
        "--json-logs", action="store_true", help="Emit logs as JSON lines"
    )


def build_parser() -> argparse.ArgumentParser:
    """Build the ``uvc-bridge`` argument parser."""
    parser = argparse.ArgumentParser(
        prog=PROG_NAME,
        description="Real-time UVC camera bridge with Hough circle detection",
    )
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    run_parser = subparsers.add_parser("run", help="Stream frames and print stats")
    _add_common_arguments(run_parser)
    run_parser.add_argument(
        "--frames", type=int, default=None, help="Stop after N ticks (default: forever)"
    )
    run_parser.add_argument("--fps", type=float, default=None, help="Rate cap")
    run_parser.add_argument(
        "--no-detection", action="store_true", help="Pass frames through unchanged"
    )
    run_parser.add_argument(
        "--pre-blur", action="store_true", help="Median-blur before detection"
    )
    run_parser.add_argument(
        "--show", action="store_true", help="Show frames in an OpenCV window"
    )
    run_parser.add_argument(
        "--max-consecutive-drops",
        type=int,
        default=0,
        help="Stop with exit code 1 after N failed ticks in a row (0: never)",
    )
    run_parser.set_defaults(handler=run_stream)

    props_parser = subparsers.add_parser(
        "properties", help="Print the camera's current properties"
    )
    _add_common_arguments(props_parser)
    props_parser.add_argument(
        "--apply",
        action="store_true",
        help="Apply the configured startup properties first",
    )
    props_parser.set_defaults(handler=run_properties)

    serve_parser = subparsers.add_parser("serve", help="Run the web preview")
    _add_common_arguments(serve_parser)
    serve_parser.add_argument("--host", default=DEFAULT_HOST)
    serve_parser.add_argument("--port", type=int, default=DEFAULT_PORT)
    serve_parser.set_defaults(handler=run_serve)

    return parser


def main(argv: Sequence[str] | None = None) -> int:
    """Main CLI entry point for uvc-bridge.

    Returns:
        Exit code 0 for success, non-zero for errors.

    Raises:
        SystemExit: On --help or argument parsing errors.
    """
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.command is None:
        parser.print_help()
        return 2

    try:
        return int(args.handler(args))
    except InvalidParametersError as e:
        logger.error("Invalid parameters", error=str(e))
        return 2
    except BridgeError as e:
        logger.error("Command failed", error=str(e), error_type=type(e).__name__)
        return 1
    except (OSError, ValueError) as e:
        logger.error("Invalid configuration", error=str(e))
        return 2
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
