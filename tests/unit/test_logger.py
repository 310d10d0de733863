"""Tests for logging setup."""

import logging

import pytest

from chessbot.config import Settings
from chessbot.logger import ColoredFormatter, ShortNameFilter, setup_logging


@pytest.fixture
def restore_root_logger():
    root = logging.getLogger()
    level = root.level
    yield
    for handler in list(root.handlers):
        if any(isinstance(f, ShortNameFilter) for f in handler.filters):
            root.removeHandler(handler)
            handler.close()
    root.setLevel(level)


def make_record(name="chessbot.services.tournaments", level=logging.WARNING):
    return logging.LogRecord(name, level, __file__, 1, "Tournament %s is full", (7,), None)


def test_short_name_filter():
    record = make_record()
    assert ShortNameFilter().filter(record) is True
    assert record.short_name == "tournaments"

    root_record = make_record(name="")
    ShortNameFilter().filter(root_record)
    assert root_record.short_name == "root"


def test_colored_formatter_keeps_record_intact():
    record = make_record()
    ShortNameFilter().filter(record)
    text = ColoredFormatter("%(levelname)s %(message)s").format(record)
    assert "\033[33mWARNING" in text
    assert text.endswith("Tournament 7 is full")
    assert record.levelname == "WARNING"


def test_setup_logging_writes_files(tmp_path, restore_root_logger):
    paths = setup_logging(str(tmp_path), Settings(log_level="WARNING"), force=True)
    assert [p.name for p in paths] == ["chessbot.log", "errors.log", "debug.log"]

    log = logging.getLogger("chessbot.services.tournaments")
    log.info("Tournament 1 started")
    log.error("Tournament 2 broke")
    for handler in logging.getLogger().handlers:
        handler.flush()

    main_log, error_log, debug_log = (p.read_text(encoding="utf-8") for p in paths)
    assert "Tournament 1 started" not in main_log
    assert "[tournaments] Tournament 2 broke" in main_log
    assert "Tournament 2 broke" in error_log
    assert "File:" in error_log
    assert "Tournament 1 started" in debug_log
    assert logging.getLogger("apscheduler").level == logging.WARNING
