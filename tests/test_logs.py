"""Unit tests for the `.logs` module."""

from collections import deque
import logging

import pytest

from somiod_pipeline import logs


def test_configure_logging_once(clean_logger):
    """Repeated calls update the level but add only one stream handler."""
    logs.configure_logging("DEBUG")
    logs.configure_logging(logging.WARNING)
    marked = [
        h for h in clean_logger.handlers if getattr(h, "_somiod_stream_handler", False)
    ]
    assert len(marked) == 1
    assert clean_logger.level == logging.WARNING


def test_unknown_level(clean_logger):
    """An unknown level name is a ValueError."""
    with pytest.raises(ValueError, match="Unknown log level"):
        logs.configure_logging("CHATTY")


def test_deque_destination(clean_logger):
    """Records from any module in the package are kept in the deque."""
    clean_logger.setLevel(logging.INFO)
    dest, handler = logs.add_log_destination(maxlen=2)
    logging.getLogger("somiod_pipeline.archiver").info("first")
    logging.getLogger("somiod_pipeline.control").warning("second")
    logging.getLogger("somiod_pipeline.transport").error("third")
    logging.getLogger("somiod_pipeline.transport").debug("ignored")
    assert [r.getMessage() for r in dest] == ["second", "third"]
    logs.remove_log_destination(handler)
    logging.getLogger("somiod_pipeline").error("after")
    assert len(dest) == 2


def test_deque_handler_level():
    """The handler's level is set, and records are appended as they are."""
    dest = deque()
    handler = logs.DequeLogHandler(dest, level=logging.ERROR)
    assert handler.level == logging.ERROR
    record = logging.LogRecord("x", logging.ERROR, "f.py", 1, "msg", None, None)
    handler.emit(record)
    assert list(dest) == [record]


def test_supplied_destination(clean_logger):
    """Records go to a destination we supply."""
    clean_logger.setLevel(logging.INFO)
    mine = []
    dest, handler = logs.add_log_destination(mine)
    assert dest is mine
    logging.getLogger("somiod_pipeline.pipeline").info("hello")
    logs.remove_log_destination(handler)
    assert [r.getMessage() for r in mine] == ["hello"]
