"""
Unit tests for the console log filter and level handling.
"""

import logging

import pytest

from logger import LogMessageFilter, logger, set_log_level


def _record(msg, args):
    return logging.LogRecord("pipeline_loadtest", logging.INFO, __file__, 1, msg, args, None)


def test_control_characters_removed_from_arguments():
    record = _record("reply: %s, status: %d", ("a\x1b[2Jb\x07", 3))

    assert LogMessageFilter().filter(record)

    assert record.getMessage() == "reply: a[2Jb, status: 3"


def test_control_characters_removed_from_mapping_arguments():
    record = _record("reply: %(message)s", ({"message": "ok\x00\x08"},))

    LogMessageFilter().filter(record)

    assert record.getMessage() == "reply: ok"


def test_message_without_arguments():
    record = _record("line\x07 one", None)

    LogMessageFilter().filter(record)

    assert record.getMessage() == "line one"


def test_set_log_level():
    previous = logger.level
    try:
        set_log_level("debug")
        assert logger.level == logging.DEBUG
        with pytest.raises(ValueError):
            set_log_level("chatty")
    finally:
        logger.setLevel(previous)
