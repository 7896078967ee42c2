"""Structured logging for uvc-bridge.

Thin layer over the standard logging module that lets every call site attach
key-value data to a record:

    logger = get_logger(__name__)
    logger.info("Frame captured", device_index=0, duration_ms=4.2)

Key-value data is merged with any active LogContext and rendered either as
``message | key=value ...`` (StructuredFormatter) or as one JSON object per
line (JSONFormatter). All loggers hang off the ``uvc_bridge`` root logger,
which is configured lazily by the first get_logger() call.

Security Note:
    Pass device names, file paths and other external strings as keyword
    arguments rather than interpolating them into the message. Structured
    values are quoted by the formatter, so a CR/LF in a device name cannot
    forge an extra log line.

Example:
    configure_logging(level="DEBUG")
    with LogContext(device_index=0):
        logger.info("Streaming started", width=640, height=480)
"""

from __future__ import annotations

import contextvars
import json
import logging
import sys
import threading
from collections.abc import MutableMapping
from datetime import UTC, datetime
from typing import Any, cast

__all__ = [
    "JSONFormatter",
    "LogContext",
    "StructuredFormatter",
    "StructuredLogger",
    "configure_logging",
    "get_logger",
    "reset_logging",
]

ROOT_LOGGER_NAME = "uvc_bridge"

_log_context: contextvars.ContextVar[dict[str, Any]] = contextvars.ContextVar(
    "uvc_bridge_log_context", default={}
)


# =============================================================================
# Logger
# =============================================================================


class StructuredLogger(logging.Logger):
    """Logger whose level methods accept structured keyword arguments.

    Any keyword that is not a standard logging argument (exc_info, extra,
    stack_info, stacklevel) becomes a field of ``record.structured_data``.
    """

    def debug(self, msg: object, *args: Any, **kwargs: Any) -> None:
        """Log at DEBUG with structured fields."""
        if self.isEnabledFor(logging.DEBUG):
            self._log_structured(logging.DEBUG, msg, args, **kwargs)

    def info(self, msg: object, *args: Any, **kwargs: Any) -> None:
        """Log at INFO with structured fields."""
        if self.isEnabledFor(logging.INFO):
            self._log_structured(logging.INFO, msg, args, **kwargs)

    def warning(self, msg: object, *args: Any, **kwargs: Any) -> None:
        """Log at WARNING with structured fields."""
        if self.isEnabledFor(logging.WARNING):
            self._log_structured(logging.WARNING, msg, args, **kwargs)

    def error(self, msg: object, *args: Any, **kwargs: Any) -> None:
        """Log at ERROR with structured fields."""
        if self.isEnabledFor(logging.ERROR):
            self._log_structured(logging.ERROR, msg, args, **kwargs)

    def critical(self, msg: object, *args: Any, **kwargs: Any) -> None:
        """Log at CRITICAL with structured fields."""
        if self.isEnabledFor(logging.CRITICAL):
            self._log_structured(logging.CRITICAL, msg, args, **kwargs)

    def _log_structured(
        self,
        level: int,
        msg: object,
        args: tuple[Any, ...] | MutableMapping[str, Any],
        exc_info: Any = None,
        extra: dict[str, Any] | None = None,
        stack_info: bool = False,
        stacklevel: int = 1,
        **fields: Any,
    ) -> None:
        """Merge context and call-site fields, then emit the record.

        Call-site fields win over LogContext values with the same key. The
        merged dict is attached to the record as ``structured_data`` through
        ``extra`` so any stdlib handler still works.

        Args:
            level: Numeric log level.
            msg: Message, may contain %-placeholders filled from args.
            args: Positional %-format arguments.
            exc_info: Passed through to logging (True captures the active
                exception).
            extra: Extra record attributes; ``structured_data`` is overwritten.
            stack_info: Passed through to logging.
            stacklevel: Caller depth; two frames are added for this wrapper
                and the level method.
            **fields: Structured key-value data.
        """
        merged = {**_log_context.get(), **fields}
        extra = dict(extra) if extra else {}
        extra["structured_data"] = merged
        self._log(
            level,
            msg,
            args,
            exc_info=exc_info,
            extra=extra,
            stack_info=stack_info,
            stacklevel=stacklevel + 2,
        )


# =============================================================================
# Formatters
# =============================================================================


class StructuredFormatter(logging.Formatter):
    """Human-readable formatter: ``time - name - LEVEL - message | k=v k=v``."""

    def __init__(
        self,
        fmt: str | None = None,
        datefmt: str | None = None,
        include_structured: bool = True,
    ) -> None:
        """Create the formatter.

        Args:
            fmt: Base format string. Defaults to
                ``%(asctime)s - %(name)s - %(levelname)s - %(message)s``.
            datefmt: strftime format for %(asctime)s.
            include_structured: Append structured fields after `` | ``.
        """
        super().__init__(
            fmt or "%(asctime)s - %(name)s - %(levelname)s - %(message)s", datefmt
        )
        self.include_structured = include_structured

    def format(self, record: logging.LogRecord) -> str:
        """Format the base message, then append structured pairs if any."""
        base = super().format(record)
        structured = getattr(record, "structured_data", None)
        if not self.include_structured or not structured:
            return base
        pairs = " ".join(f"{k}={_format_value(v)}" for k, v in structured.items())
        return f"{base} | {pairs}"


class JSONFormatter(logging.Formatter):
    """One JSON object per line, structured fields merged at top level."""

    def format(self, record: logging.LogRecord) -> str:
        """Serialize the record as a single JSON line.

        Output keys are ``timestamp`` (ISO 8601, UTC), ``level``, ``logger``,
        ``message``, every structured field, and ``exception`` when exc_info
        is set. Values json cannot encode fall back to str().

        Example:
            >>> json.loads(JSONFormatter().format(record))["device_index"]
            0
        """
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        payload.update(getattr(record, "structured_data", {}) or {})
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


def _format_value(value: Any) -> str:
    """Render one structured value for the key=value text format.

    None becomes ``null``, containers become JSON, and any string that holds
    whitespace, quotes or line breaks is JSON-quoted so it stays on one line.
    """
    if value is None:
        return "null"
    if isinstance(value, str):
        if not value or any(c in value for c in ' "\r\n\t'):
            return json.dumps(value)
        return value
    if isinstance(value, dict | list | tuple):
        return json.dumps(value, default=str)
    return str(value)


# =============================================================================
# Context
# =============================================================================


class LogContext:
    """Context manager adding key-value fields to every record in its scope.

    Backed by contextvars, so nested contexts merge (inner wins) and threads
    or asyncio tasks never see each other's fields.

    Usage:
        with LogContext(device_index=0):
            with LogContext(tick=12):
                logger.debug("Tick")  # device_index=0 tick=12
    """

    def __init__(self, **fields: Any) -> None:
        self._fields = fields
        self._token: contextvars.Token[dict[str, Any]] | None = None

    def __enter__(self) -> LogContext:
        self._token = _log_context.set({**_log_context.get(), **self._fields})
        return self

    def __exit__(self, *exc: Any) -> None:
        if self._token is not None:
            _log_context.reset(self._token)
            self._token = None

    def __repr__(self) -> str:
        return f"LogContext({self._fields!r})"


# =============================================================================
# Configuration
# =============================================================================

_configured = False
_config_lock = threading.Lock()


def configure_logging(
    level: int | str = logging.INFO,
    json_format: bool = False,
    stream: Any = None,
    include_structured: bool = True,
    force: bool = False,
) -> None:
    """Configure the ``uvc_bridge`` logger hierarchy.

    Installs a single stream handler on the ``uvc_bridge`` root logger and
    stops propagation to the process root logger. Only the first call has an
    effect unless ``force`` is set, which tears down the previous handler
    first. Safe to call from several threads.

    Args:
        level: Minimum level, as an int or a name such as "DEBUG".
        json_format: Emit NDJSON instead of human-readable lines.
        stream: Target stream, sys.stderr by default.
        include_structured: Append key=value pairs in text mode.
        force: Reconfigure even if already configured.

    Example:
        >>> buffer = io.StringIO()
        >>> configure_logging(level="DEBUG", stream=buffer, force=True)
    """
    with _config_lock:
        if force:
            _reset_logging_impl()
        _configure_logging_impl(level, json_format, stream, include_structured)


def _configure_logging_impl(
    level: int | str = logging.INFO,
    json_format: bool = False,
    stream: Any = None,
    include_structured: bool = True,
) -> None:
    """Configure without taking the lock (caller holds it)."""
    global _configured

    if _configured:
        return

    logging.setLoggerClass(StructuredLogger)

    handler = logging.StreamHandler(stream if stream is not None else sys.stderr)
    formatter: logging.Formatter
    if json_format:
        formatter = JSONFormatter()
    else:
        formatter = StructuredFormatter(include_structured=include_structured)
    handler.setFormatter(formatter)

    root = logging.getLogger(ROOT_LOGGER_NAME)
    root.setLevel(level.upper() if isinstance(level, str) else level)
    root.addHandler(handler)
    root.propagate = False

    _configured = True


def _reset_logging_impl() -> None:
    """Drop handlers without taking the lock (caller holds it)."""
    global _configured

    root = logging.getLogger(ROOT_LOGGER_NAME)
    for handler in root.handlers[:]:
        root.removeHandler(handler)
        handler.close()
    _configured = False


def reset_logging() -> None:
    """Return logging to the unconfigured state. Intended for tests."""
    with _config_lock:
        _reset_logging_impl()


def get_logger(name: str) -> StructuredLogger:
    """Return a StructuredLogger, configuring defaults on first use.

    Loggers created before configure_logging() ran would be plain
    logging.Logger instances, so the logger class is installed here as well
    as in configure_logging().

    Args:
        name: Dotted logger name, normally ``__name__``.

    Returns:
        Logger that accepts structured keyword arguments.
    """
    if not _configured:
        with _config_lock:
            if not _configured:  # pragma: no branch
                _configure_logging_impl()

    return cast(StructuredLogger, logging.getLogger(name))
