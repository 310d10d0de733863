"""Logging setup for the ChessBot service.

Three rotating files are written next to each other in ``LOG_DIR``:
``chessbot.log`` at the configured level, ``errors.log`` with ERROR and up,
and ``debug.log`` with everything. The console mirrors the main file with
coloured level names.
"""

import logging
import logging.handlers
import pathlib
import sys
from typing import List, NamedTuple, Optional

from chessbot.config import Settings, settings

_logging_initialized = False

LEVEL_COLORS = {
    logging.DEBUG: "\033[36m",
    logging.INFO: "\033[32m",
    logging.WARNING: "\033[33m",
    logging.ERROR: "\033[31m",
    logging.CRITICAL: "\033[35m",
}
RESET = "\033[0m"

LINE_FORMAT = "[%(asctime)s] %(levelname)-8s [%(short_name)s] %(message)s"
ERROR_FORMAT = (
    "[%(asctime)s] %(levelname)-8s [%(name)s:%(lineno)d] %(message)s\n"
    "    File: %(pathname)s"
)

# Libraries that are too chatty at DEBUG
QUIET_LOGGERS = {
    "aiogram": logging.INFO,
    "apscheduler": logging.WARNING,
    "sqlalchemy.engine": logging.WARNING,
    "aiosqlite": logging.WARNING,
    "asyncio": logging.WARNING,
}


class LogFile(NamedTuple):
    filename: str
    level: Optional[int]  # None: the configured LOG_LEVEL
    max_bytes: int
    backup_count: int
    detailed: bool = False


LOG_FILES = (
    LogFile("chessbot.log", None, 10 * 1024 * 1024, 5),
    LogFile("errors.log", logging.ERROR, 5 * 1024 * 1024, 10, detailed=True),
    LogFile("debug.log", logging.DEBUG, 20 * 1024 * 1024, 3),
)


class ColoredFormatter(logging.Formatter):
    """Console formatter; the record itself is left untouched."""

    def format(self, record: logging.LogRecord) -> str:
        color = LEVEL_COLORS.get(record.levelno)
        if color is None:
            return super().format(record)
        original = record.levelname
        record.levelname = f"{color}{original}{RESET}"
        try:
            return super().format(record)
        finally:
            record.levelname = original


class ShortNameFilter(logging.Filter):
    """Adds ``short_name``: ``chessbot.services.tournaments`` becomes ``tournaments``."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.short_name = record.name.rsplit(".", 1)[-1] if record.name else "root"
        return True


def _file_handler(directory: pathlib.Path, spec: LogFile, default_level: int) -> logging.Handler:
    handler = logging.handlers.RotatingFileHandler(
        directory / spec.filename,
        maxBytes=spec.max_bytes,
        backupCount=spec.backup_count,
        encoding="utf-8",
    )
    handler.setLevel(default_level if spec.level is None else spec.level)
    if spec.detailed:
        handler.setFormatter(logging.Formatter(ERROR_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
    else:
        handler.setFormatter(logging.Formatter(LINE_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
    return handler


def setup_logging(
    log_dir: Optional[str] = None,
    app_settings: Settings = settings,
    force: bool = False,
) -> List[pathlib.Path]:
    """
    Configure the root logger once.

    Args:
        log_dir: Directory for the log files (defaults to LOG_DIR)
        app_settings: Settings providing the level and directory
        force: Reconfigure even if logging was already set up

    Returns:
        Paths of the log files
    """
    global _logging_initialized

    directory = pathlib.Path(log_dir or app_settings.log_dir)
    paths = [directory / spec.filename for spec in LOG_FILES]
    if _logging_initialized and not force:
        return paths
    _logging_initialized = True

    directory.mkdir(parents=True, exist_ok=True)
    level = app_settings.log_level_value
    short_names = ShortNameFilter()

    root_logger = logging.getLogger()
    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)
    root_logger.setLevel(logging.DEBUG)

    console = logging.StreamHandler(sys.stdout)
    console.setLevel(level)
    console.setFormatter(ColoredFormatter(LINE_FORMAT, datefmt="%H:%M:%S"))

    handlers = [_file_handler(directory, spec, level) for spec in LOG_FILES] + [console]
    for handler in handlers:
        handler.addFilter(short_names)
        root_logger.addHandler(handler)

    for name, quiet_level in QUIET_LOGGERS.items():
        logging.getLogger(name).setLevel(quiet_level)

    logging.info(f"Logging: level={app_settings.log_level} | dir={directory.absolute()}")
    return paths
