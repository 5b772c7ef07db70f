"""
Logging setup for SimpleStock.

Modules log through ``logging.getLogger(__name__)``; records propagate to the
``simplestock`` logger configured here, which writes warnings and errors to a
rotating file per day and only echoes CRITICAL records to the console.
"""
import logging
import logging.handlers
from datetime import datetime
from pathlib import Path

APP_LOGGER_NAME = "simplestock"

FILE_FORMAT = '%(asctime)s | %(levelname)-8s | %(name)s | %(message)s'
DATE_FORMAT = '%Y-%m-%d %H:%M:%S'
MAX_LOG_BYTES = 5 * 1024 * 1024
LOG_BACKUPS = 3


def _file_handler(log_path: Path, app_name: str, level: int) -> logging.Handler:
    log_file = log_path / f"{app_name}_{datetime.now():%Y%m%d}.log"
    handler = logging.handlers.RotatingFileHandler(
        log_file, maxBytes=MAX_LOG_BYTES, backupCount=LOG_BACKUPS, encoding='utf-8'
    )
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(FILE_FORMAT, datefmt=DATE_FORMAT))
    return handler


def _console_handler() -> logging.Handler:
    handler = logging.StreamHandler()
    handler.setLevel(logging.CRITICAL)
    handler.setFormatter(logging.Formatter('CRITICAL: %(message)s'))
    return handler


def setup_logging(
    log_dir: "str | Path | None" = None,
    app_name: str = APP_LOGGER_NAME,
    file_level: int = logging.WARNING,
) -> logging.Logger:
    """
    Attach file and console handlers to the application logger.

    Args:
        log_dir: Directory for log files, created if missing.  Defaults to
                 the ``logs`` directory from utils.paths.
        app_name: Logger name, also used as the log file prefix
        file_level: Minimum level written to the log file

    Returns:
        The configured logger.  Calling again returns it unchanged.
    """
    logger = logging.getLogger(app_name)
    if logger.handlers:
        return logger

    if log_dir is None:
        from .paths import get_logs_dir  # noqa: PLC0415
        log_path = get_logs_dir()
    else:
        log_path = Path(log_dir)
        log_path.mkdir(parents=True, exist_ok=True)

    logger.setLevel(logging.DEBUG)
    logger.addHandler(_file_handler(log_path, app_name, file_level))
    logger.addHandler(_console_handler())
    return logger


def get_logger(name: str = APP_LOGGER_NAME) -> logging.Logger:
    return logging.getLogger(name)
