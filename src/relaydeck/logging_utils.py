"""Logging helpers for :mod:`relaydeck`."""

from __future__ import annotations

import logging
import os
import threading
import weakref
from collections import deque
from pathlib import Path
from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:  # pragma: no cover - only for typing
    from .log_viewer import LogViewer

__all__ = [
    "LOG_DATE_FORMAT",
    "LOG_FORMAT",
    "configure_logging",
    "detach_stream_handler",
    "get_log_file_path",
    "get_logger",
    "register_log_viewer",
]

_LOGGER_NAME = "relaydeck"
_ENV_LEVEL = "RELAYDECK_LOG_LEVEL"
_ENV_FILE = "RELAYDECK_LOG_FILE"
_DEFAULT_LOG_PATH = Path.home() / ".cache" / "relaydeck.log"
LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def _create_formatter() -> logging.Formatter:
    return logging.Formatter(fmt=LOG_FORMAT, datefmt=LOG_DATE_FORMAT)


def _coerce_level(value: str) -> int:
    """Return a logging level derived from *value*."""

    normalized = value.strip().upper()
    if normalized.isdigit():
        level = int(normalized)
        if 0 <= level <= logging.CRITICAL:
            return level
    return getattr(logging, normalized, logging.INFO)


class _UILogHandler(logging.Handler):
    """Buffer formatted records and relay them to the dashboard log panel.

    Records emitted before a panel is registered are kept in a bounded
    buffer and replayed into the panel when it attaches.
    """

    def __init__(self, *, capacity: int = 300) -> None:
        super().__init__()
        self._buffer: deque[str] = deque(maxlen=capacity)
        self._viewer: Optional[weakref.ReferenceType["LogViewer"]] = None
        self._lock = threading.RLock()

    @property
    def buffered(self) -> tuple[str, ...]:
        with self._lock:
            return tuple(self._buffer)

    def set_viewer(self, viewer: Optional["LogViewer"]) -> None:
        with self._lock:
            self._viewer = weakref.ref(viewer) if viewer is not None else None
            messages = list(self._buffer)
        if viewer is not None:
            viewer.replace_messages(messages)

    def emit(self, record: logging.LogRecord) -> None:
        message = self.format(record)
        with self._lock:
            self._buffer.append(message)
            viewer_ref = self._viewer
        viewer = viewer_ref() if viewer_ref is not None else None
        if viewer is None:
            return
        try:
            viewer.deliver(message)
        except Exception:  # pragma: no cover - UI may be tearing down
            self.handleError(record)


class _LoggingState:
    """Handlers installed on the package logger by :func:`configure_logging`."""

    def __init__(self) -> None:
        self.configured = False
        self.level = logging.INFO
        self.stream_handler: Optional[logging.Handler] = None
        self.ui_handler: Optional[_UILogHandler] = None
        self.file_handler: Optional[logging.FileHandler] = None
        self.log_path: Optional[Path] = None


_state = _LoggingState()


def _configure_file_logging(
    logger: logging.Logger, level: int, destination: Optional[str]
) -> None:
    """Replace the file handler with one writing to ``destination``.

    An empty destination disables file logging.
    """

    if _state.file_handler is not None:
        logger.removeHandler(_state.file_handler)
        _state.file_handler.close()
        _state.file_handler = None
    _state.log_path = None
    if not destination:
        return

    log_path = Path(destination).expanduser()
    try:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handler = logging.FileHandler(log_path, encoding="utf8")
    except OSError:
        logger.warning("Failed to set up file logging at %s", log_path)
        return
    handler.setFormatter(_create_formatter())
    handler.setLevel(level)
    logger.addHandler(handler)
    _state.file_handler = handler
    _state.log_path = log_path
    logger.debug("File logging enabled at %s", log_path)


def configure_logging(
    *,
    level: Optional[str] = None,
    log_file: Optional[str] = None,
) -> logging.Logger:
    """Configure the package logger, installing handlers on first use.

    Later calls only adjust the level and, when a destination is given
    explicitly or through ``RELAYDECK_LOG_FILE``, the log file.
    """

    logger = logging.getLogger(_LOGGER_NAME)
    env_level = os.getenv(_ENV_LEVEL)
    env_file = os.getenv(_ENV_FILE)

    if level is not None:
        log_level = _coerce_level(level)
    elif env_level is not None:
        log_level = _coerce_level(env_level)
    elif _state.configured:
        log_level = _state.level
    else:
        log_level = logging.INFO

    destination = log_file if log_file is not None else env_file
    if not _state.configured:
        logger.propagate = False
        formatter = _create_formatter()
        stream_handler = logging.StreamHandler()
        stream_handler.setFormatter(formatter)
        logger.addHandler(stream_handler)
        _state.stream_handler = stream_handler

        ui_handler = _UILogHandler()
        ui_handler.setFormatter(formatter)
        logger.addHandler(ui_handler)
        _state.ui_handler = ui_handler

        if destination is None:
            destination = str(_DEFAULT_LOG_PATH)
        _configure_file_logging(logger, log_level, destination)
        _state.configured = True
    elif destination is not None:
        _configure_file_logging(logger, log_level, destination)

    logger.setLevel(log_level)
    for handler in list(logger.handlers):
        handler.setLevel(log_level)
    _state.level = log_level
    return logger


def detach_stream_handler() -> None:
    """Stop echoing log records to stderr while the terminal UI owns the screen."""

    logger = logging.getLogger(_LOGGER_NAME)
    handler = _state.stream_handler
    if handler is not None and handler in logger.handlers:
        logger.removeHandler(handler)
    _state.stream_handler = None


def get_logger(name: Optional[str] = None) -> logging.Logger:
    """Return a module-specific logger below the package logger."""

    base = configure_logging() if not _state.configured else logging.getLogger(_LOGGER_NAME)
    if not name or name == base.name:
        return base
    if name.startswith(base.name + "."):
        return logging.getLogger(name)
    return logging.getLogger(f"{base.name}.{name}")


def get_log_file_path() -> Optional[Path]:
    """Return the file currently receiving log output, if any."""

    return _state.log_path


def register_log_viewer(viewer: Optional["LogViewer"]) -> None:
    """Attach *viewer* to the in-app log handler (``None`` detaches)."""

    logger = configure_logging() if not _state.configured else logging.getLogger(_LOGGER_NAME)
    if _state.ui_handler is None:
        logger.warning("UI log handler is not available")
        return
    _state.ui_handler.set_viewer(viewer)
