"""Tick statistics for the acquisition loop.

Keeps cumulative counters plus a rolling window of recent ticks so the
CLI and the web preview can report how a stream is doing:

- ok / dropped / timed-out tick counts
- processing duration statistics (min, max, avg, p95) over the window
- failure counts keyed by error type

Thread-safe: the acquisition thread records while the web thread reads.

Example:
    stats = CaptureStats(device_index=0)
    stats.record(duration_ms=4.1, success=True, circles=2)
    stats.record(duration_ms=0.0, success=False, error_type="dropped")

    summary = stats.get_summary()
    print(f"OK rate: {summary.success_rate:.1%}")
"""

from __future__ import annotations

import threading
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

__all__ = ["CaptureStats", "StatsSummary", "DEFAULT_STATS_WINDOW_SIZE"]

#: Ticks kept in the rolling window. About 30 s of history at 30 fps.
DEFAULT_STATS_WINDOW_SIZE: int = 1000


@dataclass
class StatsSummary:
    """Point-in-time view of a CaptureStats collector.

    Attributes:
        device_index: Camera index the stats belong to.
        total_ticks: Every recorded tick.
        ok_ticks: Ticks that delivered a frame to the sink.
        failed_ticks: Dropped plus timed-out ticks.
        success_rate: ok_ticks / total_ticks, 0.0 before the first tick.
        min_duration_ms: Fastest successful tick in the window.
        max_duration_ms: Slowest successful tick in the window.
        avg_duration_ms: Mean successful tick in the window.
        p95_duration_ms: 95th percentile successful tick in the window.
        circles_detected: Circles found across all successful ticks.
        error_counts: Failures keyed by error type.
        last_tick_time: UTC time of the most recent tick.
        uptime_seconds: Seconds since creation or last reset.
    """

    device_index: int
    total_ticks: int = 0
    ok_ticks: int = 0
    failed_ticks: int = 0
    success_rate: float = 0.0
    min_duration_ms: float = 0.0
    max_duration_ms: float = 0.0
    avg_duration_ms: float = 0.0
    p95_duration_ms: float = 0.0
    circles_detected: int = 0
    error_counts: dict[str, int] = field(default_factory=dict)
    last_tick_time: datetime | None = None
    uptime_seconds: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        """Return a JSON-serializable copy of the summary.

        ``last_tick_time`` becomes an ISO 8601 string (or None) and
        ``error_counts`` is copied so callers may mutate the result.

        Example:
            >>> json.dumps(stats.get_summary().to_dict())
        """
        return {
            "device_index": self.device_index,
            "total_ticks": self.total_ticks,
            "ok_ticks": self.ok_ticks,
            "failed_ticks": self.failed_ticks,
            "success_rate": self.success_rate,
            "min_duration_ms": self.min_duration_ms,
            "max_duration_ms": self.max_duration_ms,
            "avg_duration_ms": self.avg_duration_ms,
            "p95_duration_ms": self.p95_duration_ms,
            "circles_detected": self.circles_detected,
            "error_counts": self.error_counts.copy(),
            "last_tick_time": (
                self.last_tick_time.isoformat() if self.last_tick_time else None
            ),
            "uptime_seconds": self.uptime_seconds,
        }


@dataclass
class _TickRecord:
    timestamp: float
    duration_ms: float
    success: bool


class CaptureStats:
    """Rolling tick statistics for one device.

    Counters are cumulative since creation or reset(). Duration statistics
    only look at successful ticks still inside the window.
    """

    def __init__(
        self, device_index: int = 0, window_size: int = DEFAULT_STATS_WINDOW_SIZE
    ) -> None:
        """Create an empty collector.

        Args:
            device_index: Camera index reported in summaries.
            window_size: Number of ticks retained for duration statistics.
                Must be positive.

        Raises:
            ValueError: If window_size is not positive.
        """
        if window_size <= 0:
            raise ValueError(f"window_size must be positive, got {window_size}")
        self.device_index = device_index
        self.window_size = window_size
        self._lock = threading.Lock()
        self._records: deque[_TickRecord] = deque(maxlen=window_size)
        self._error_counts: dict[str, int] = {}
        self._total = 0
        self._ok = 0
        self._circles = 0
        self._start_time = time.monotonic()
        self._last_tick_time: datetime | None = None

    def record(
        self,
        duration_ms: float,
        success: bool,
        error_type: str | None = None,
        circles: int = 0,
    ) -> None:
        """Record one tick outcome.

        Args:
            duration_ms: Time spent in the tick, in milliseconds.
            success: True when the frame reached the sink.
            error_type: Failure category such as "dropped" or "timeout".
                Ignored for successful ticks.
            circles: Number of circles detected on a successful tick.
        """
        with self._lock:
            self._records.append(
                _TickRecord(
                    timestamp=time.monotonic(),
                    duration_ms=duration_ms,
                    success=success,
                )
            )
            self._total += 1
            if success:
                self._ok += 1
                self._circles += circles
            elif error_type:
                self._error_counts[error_type] = (
                    self._error_counts.get(error_type, 0) + 1
                )
            self._last_tick_time = datetime.now(UTC)

    def get_summary(self) -> StatsSummary:
        """Snapshot the counters and compute window statistics.

        The lock is held only while copying; sorting for the percentile
        happens outside it.
        """
        with self._lock:
            total = self._total
            ok = self._ok
            circles = self._circles
            error_counts = self._error_counts.copy()
            last_tick_time = self._last_tick_time
            start_time = self._start_time
            durations = [
                r.duration_ms for r in self._records if r.success and r.duration_ms > 0
            ]

        if durations:
            min_dur = min(durations)
            max_dur = max(durations)
            avg_dur = sum(durations) / len(durations)
            p95_dur = _percentile(sorted(durations), 95)
        else:
            min_dur = max_dur = avg_dur = p95_dur = 0.0

        return StatsSummary(
            device_index=self.device_index,
            total_ticks=total,
            ok_ticks=ok,
            failed_ticks=total - ok,
            success_rate=ok / total if total > 0 else 0.0,
            min_duration_ms=min_dur,
            max_duration_ms=max_dur,
            avg_duration_ms=avg_dur,
            p95_duration_ms=p95_dur,
            circles_detected=circles,
            error_counts=error_counts,
            last_tick_time=last_tick_time,
            uptime_seconds=time.monotonic() - start_time,
        )

    def reset(self) -> None:
        """Clear every counter and restart the uptime clock."""
        with self._lock:
            self._records.clear()
            self._error_counts.clear()
            self._total = 0
            self._ok = 0
            self._circles = 0
            self._start_time = time.monotonic()
            self._last_tick_time = None

    def to_dict(self) -> dict[str, Any]:
        """Summary as a dict with an export timestamp, for JSON output."""
        data = self.get_summary().to_dict()
        data["timestamp"] = datetime.now(UTC).isoformat()
        return data


def _percentile(sorted_data: list[float], p: float) -> float:
    """Linear-interpolated percentile of pre-sorted data.

    Args:
        sorted_data: Values in ascending order. Empty input gives 0.0.
        p: Percentile in [0, 100].

    Returns:
        The interpolated value.

    Raises:
        ValueError: If p is outside [0, 100].

    Example:
        >>> _percentile([1.0, 2.0, 3.0, 4.0, 5.0], 50)
        3.0
        >>> _percentile([100.0, 150.0, 200.0], 95)
        195.0
    """
    if not 0 <= p <= 100:
        raise ValueError(f"Percentile must be between 0 and 100, got {p}")
    if not sorted_data:
        return 0.0
    if len(sorted_data) == 1:
        return sorted_data[0]

    k = (len(sorted_data) - 1) * p / 100
    lower = int(k)
    upper = min(lower + 1, len(sorted_data) - 1)
    weight = k - lower
    return sorted_data[lower] * (1 - weight) + sorted_data[upper] * weight
