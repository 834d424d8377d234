# log.py
# SPDX-License-Identifier: MIT
"""Logging setup for bulkpost.

Library use stays silent: the ``bulkpost`` logger only carries a
NullHandler until :func:`configure_logging` is called (the CLI does this).
:class:`ProgressLogger` emits the periodic throughput line shown during
long imports.
"""

from __future__ import annotations

import logging
import sys
import threading
import time
from collections.abc import Callable
from contextlib import contextmanager

__all__ = [
    "PACKAGE_LOGGER_NAME",
    "DEFAULT_FORMAT",
    "get_logger",
    "configure_logging",
    "temp_level",
    "human_bytes",
    "ProgressLogger",
]

PACKAGE_LOGGER_NAME = "bulkpost"
DEFAULT_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

logging.getLogger(PACKAGE_LOGGER_NAME).addHandler(logging.NullHandler())


def _coerce_level(level: int | str) -> int:
    if isinstance(level, str):
        return getattr(logging, level.upper(), logging.INFO)
    return int(level)


def get_logger(name: str | None = None) -> logging.Logger:
    """Logger for ``name`` (a module's ``__name__``), or the package logger."""
    return logging.getLogger(name or PACKAGE_LOGGER_NAME)


def configure_logging(
    *,
    level: int | str = logging.INFO,
    stream = None,
    fmt: str | None = None,
    datefmt: str | None = None,
    propagate: bool | None = None,
    logger_name: str = PACKAGE_LOGGER_NAME,
) -> logging.Logger:
    """Send bulkpost log records to ``stream`` at ``level``.

    Safe to call more than once: an existing stream handler is reused, and
    re-pointed at ``stream`` if its old stream has been closed.

    Args:
        level (int | str): Level or level name such as ``"DEBUG"``.
        stream (IO[str] | None): Destination; sys.stderr when omitted.
        fmt (str | None): Format string; :data:`DEFAULT_FORMAT` when omitted.
        datefmt (str | None): ``asctime`` format.
        propagate (bool | None): Pass records on to ancestor loggers. None
            keeps propagation on so root-level handlers still see them.
        logger_name (str): Logger to configure.

    Returns:
        logging.Logger: The configured logger.
    """
    logger = get_logger(logger_name or PACKAGE_LOGGER_NAME)
    logger.setLevel(_coerce_level(level))
    logger.propagate = True if propagate is None else bool(propagate)
    stream = stream if stream is not None else sys.stderr

    handlers = [h for h in logger.handlers if isinstance(h, logging.StreamHandler)]
    for handler in handlers:
        if getattr(getattr(handler, "stream", None), "closed", False):
            handler.stream = stream
    if not handlers:
        handler = logging.StreamHandler(stream)
        handler.setFormatter(logging.Formatter(fmt=fmt or DEFAULT_FORMAT, datefmt=datefmt))
        logger.addHandler(handler)
    return logger


@contextmanager
def temp_level(level: int | str, name: str | None = None):
    """Run the ``with`` body with a logger at ``level``, then restore it."""
    logger = get_logger(name or PACKAGE_LOGGER_NAME)
    old = logger.level
    logger.setLevel(_coerce_level(level))
    try:
        yield logger
    finally:
        logger.setLevel(old)


def human_bytes(num: float) -> str:
    """Format a byte count as ``12.3 MB``."""
    for unit in ("B", "KB", "MB", "GB"):
        if abs(num) < 1024:
            return f"{num:.0f} {unit}" if unit == "B" else f"{num:.1f} {unit}"
        num /= 1024
    return f"{num:.1f} TB"


class ProgressLogger:
    """Rate-limited progress line for a running import.

    Call :meth:`update` as often as convenient; a line is logged at most
    once every ``interval`` seconds, plus once more from :meth:`done`.

    Line format: ``events: 12,000 | req: 6 | eps: 2,400 | mem: 312.4 MB |
    proc: 4.1 MB``.
    """

    def __init__(
        self,
        label: str,
        *,
        interval: float = 5.0,
        logger: logging.Logger | None = None,
        memory_probe: Callable[[], int] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.label = label
        self.interval = interval
        self.logger = logger or get_logger(__name__)
        self.memory_probe = memory_probe
        self._clock = clock
        self._started = clock()
        self._last = self._started
        self._lock = threading.Lock()
        self.lines = 0

    def format(self, processed: int, requests: int = 0, bytes_sent: int = 0) -> str:
        elapsed = max(self._clock() - self._started, 1e-9)
        parts = [f"{self.label}s: {processed:,}"]
        if requests:
            parts.append(f"req: {requests:,}")
        parts.append(f"eps: {int(processed / elapsed):,}")
        if self.memory_probe is not None:
            parts.append(f"mem: {human_bytes(self.memory_probe())}")
        if bytes_sent:
            parts.append(f"proc: {human_bytes(bytes_sent)}")
        return " | ".join(parts)

    def update(self, processed: int, requests: int = 0, bytes_sent: int = 0) -> bool:
        """Log a line if ``interval`` has passed; return whether one was logged."""
        now = self._clock()
        with self._lock:
            if now - self._last < self.interval:
                return False
            self._last = now
            self.lines += 1
        self.logger.info(self.format(processed, requests, bytes_sent))
        return True

    def done(self, processed: int, requests: int = 0, bytes_sent: int = 0) -> None:
        with self._lock:
            self.lines += 1
        self.logger.info(self.format(processed, requests, bytes_sent))
