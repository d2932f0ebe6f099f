"""Logging configuration for the notification pipeline.

All loggers in this package sit under `.PIPELINE_LOGGER`, so a single call to
`.configure_logging` sets up output for the listener, the archiver and the
control loop.

Owners that display a log (for example a dashboard) may attach a
`.DequeLogHandler` with `.add_log_destination` to keep the most recent
records in memory.
"""

from __future__ import annotations
from collections import deque
import logging
from typing import MutableSequence, Optional, Union


PIPELINE_LOGGER = logging.getLogger("somiod_pipeline")
"""The parent of every logger in this package."""

LOG_FORMAT = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"


class DequeLogHandler(logging.Handler):
    """A log handler that stores entries in memory."""

    def __init__(
        self,
        dest: MutableSequence,
        level: int = logging.INFO,
    ) -> None:
        """Set up a log handler that appends records to a deque.

        :param dest: should specify a deque, to which we will append
            each log record as it comes in. Using a `collections.deque`
            with a finite ``maxlen`` stops this growing without bound.
        :param level: sets the level of the handler.
        """
        logging.Handler.__init__(self)
        self.setLevel(level)
        self.dest = dest

    def emit(self, record: logging.LogRecord) -> None:
        """Save a log record to the destination deque.

        :param record: the `logging.LogRecord` object to add.
        """
        self.dest.append(record)


def configure_logging(level: Union[int, str] = logging.INFO) -> None:
    """Set the level of the pipeline logger and attach a stream handler.

    This is safe to call more than once: only one stream handler will be
    added. Subsequent calls just update the level.

    :param level: the logging level, as a number or a name such as ``"DEBUG"``.

    :raises ValueError: if ``level`` is a name that `logging` doesn't know.
    """
    if isinstance(level, str):
        numeric = logging.getLevelName(level.upper())
        if not isinstance(numeric, int):
            raise ValueError(f"Unknown log level: {level}")
        level = numeric
    PIPELINE_LOGGER.setLevel(level)
    for handler in PIPELINE_LOGGER.handlers:
        if getattr(handler, "_somiod_stream_handler", False):
            return
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    handler._somiod_stream_handler = True  # type: ignore[attr-defined]
    PIPELINE_LOGGER.addHandler(handler)


def add_log_destination(
    dest: Optional[MutableSequence] = None,
    maxlen: int = 200,
    level: int = logging.INFO,
) -> tuple[MutableSequence, DequeLogHandler]:
    """Keep recent pipeline log records in memory.

    :param dest: where to append records. If omitted, a new
        `collections.deque` of length ``maxlen`` is created.
    :param maxlen: the length of the deque created if ``dest`` is omitted.
    :param level: the minimum level of record to keep.

    :return: the destination and the handler. Pass the handler to
        `.remove_log_destination` to stop recording.
    """
    if dest is None:
        dest = deque(maxlen=maxlen)
    handler = DequeLogHandler(dest, level=level)
    PIPELINE_LOGGER.addHandler(handler)
    return dest, handler


def remove_log_destination(handler: DequeLogHandler) -> None:
    """Stop saving records to a destination added by `.add_log_destination`."""
    PIPELINE_LOGGER.removeHandler(handler)
