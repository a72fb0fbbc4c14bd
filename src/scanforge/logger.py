import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional, Union

APP_NAME = "scanforge"
LOG_DIR = Path(os.getenv("SCANFORGE_LOG_DIR") or (Path.home() / f".{APP_NAME}" / "logs"))
LOG_FILE = LOG_DIR / "debug.log"
LOG_FORMAT = "%(asctime)s - %(name)s - [%(threadName)s] - %(levelname)s - %(message)s"
MAX_LOG_BYTES = 5 * 1024 * 1024
LOG_BACKUPS = 3

# Handlers live on the "scanforge" logger; module loggers propagate up to it
_file_handler: Optional[logging.Handler] = None
_console_handler: Optional[logging.Handler] = None


def _resolve_level(level_name: Union[str, int, None]) -> int:
    if isinstance(level_name, int):
        return level_name
    if not level_name:
        return logging.INFO
    level = getattr(logging, str(level_name).upper(), None)
    return level if isinstance(level, int) else logging.INFO


def _base_logger() -> logging.Logger:
    base = logging.getLogger(APP_NAME)
    base.propagate = False
    return base


def _attach_file_handler(base: logging.Logger) -> Optional[logging.Handler]:
    global _file_handler
    if _file_handler is not None:
        return _file_handler
    try:
        LOG_DIR.mkdir(parents=True, exist_ok=True)
        handler = RotatingFileHandler(LOG_FILE, maxBytes=MAX_LOG_BYTES, backupCount=LOG_BACKUPS, encoding="utf-8")
    except OSError as e:
        print(f"File logging disabled ({LOG_FILE}): {e}", file=sys.stderr)
        return None
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    base.addHandler(handler)
    _file_handler = handler
    return handler


def setup_logger(name: str = APP_NAME, log_level: Union[str, int, None] = None) -> logging.Logger:
    """
    Returns a logger under the shared scanforge hierarchy, writing to
    ~/.scanforge/logs/debug.log (SCANFORGE_LOG_DIR overrides the directory).
    Level: log_level, then SCANFORGE_LOG_LEVEL, then INFO.
    """
    level = _resolve_level(log_level or os.getenv("SCANFORGE_LOG_LEVEL", "INFO"))
    base = _base_logger()
    base.setLevel(level)
    handler = _attach_file_handler(base)
    if handler is not None:
        handler.setLevel(level)

    logger = logging.getLogger(name)
    logger.setLevel(level)
    if logger is not base:
        logger.propagate = True
    return logger


def enable_console_logging(log_level: Union[str, int, None] = None, stream=None) -> logging.Handler:
    """Mirrors scanforge logs to stderr; used by long-running worker processes."""
    global _console_handler
    level = _resolve_level(log_level or os.getenv("SCANFORGE_LOG_LEVEL", "INFO"))
    base = _base_logger()
    if _console_handler is None:
        _console_handler = logging.StreamHandler(stream or sys.stderr)
        _console_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        base.addHandler(_console_handler)
    _console_handler.setLevel(level)
    return _console_handler


def disable_console_logging() -> None:
    global _console_handler
    if _console_handler is not None:
        _base_logger().removeHandler(_console_handler)
        _console_handler = None
