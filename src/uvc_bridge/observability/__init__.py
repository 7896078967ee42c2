"""Observability for uvc-bridge: structured logging and tick statistics.

Example:
    from uvc_bridge.observability import get_logger, LogContext

    logger = get_logger(__name__)

    with LogContext(device_index=0):
        logger.info("Streaming started", width=640, height=480)

Statistics Example:
    from uvc_bridge.observability import CaptureStats

    stats = CaptureStats(device_index=0)
    loop = AcquisitionLoop(manager, config, stats=stats)
    ...
    print(stats.get_summary().to_dict())
"""

from uvc_bridge.observability.logging import (
    JSONFormatter,
    LogContext,
    StructuredFormatter,
    StructuredLogger,
    configure_logging,
    get_logger,
    reset_logging,
)
from uvc_bridge.observability.stats import (
    CaptureStats,
    StatsSummary,
)

__all__ = [
    # Logging
    "JSONFormatter",
    "LogContext",
    "StructuredFormatter",
    "StructuredLogger",
    "configure_logging",
    "get_logger",
    "reset_logging",
    # Statistics
    "CaptureStats",
    "StatsSummary",
]
