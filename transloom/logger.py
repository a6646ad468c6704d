import logging
import os
from pathlib import Path

LOG_DIR = Path(__file__).parent.parent / "logs"
LOG_FILE = LOG_DIR / "app.log"

LOG_MODES = ("off", "info", "debug")
LOG_MODE_ENV = "TRANSLOOM_LOG_MODE"
LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

# Cache for log mode to avoid repeated environment reads
_log_mode_cache = None


def _get_log_mode():
    """Get log mode from the environment (TRANSLOOM_LOG_MODE), default 'off'."""
    global _log_mode_cache
    if _log_mode_cache is not None:
        return _log_mode_cache

    log_mode = os.environ.get(LOG_MODE_ENV, "off").strip().lower()
    if log_mode not in LOG_MODES:
        log_mode = "info"
    _log_mode_cache = log_mode
    return log_mode


def _level_for(log_mode: str) -> int:
    if log_mode == 'debug':
        return logging.DEBUG
    if log_mode == 'off':
        # Higher than CRITICAL disables everything
        return logging.CRITICAL + 1
    return logging.INFO


def _file_handler(log_format: logging.Formatter) -> logging.FileHandler:
    LOG_DIR.mkdir(exist_ok=True)
    f_handler = logging.FileHandler(LOG_FILE, encoding="utf-8")
    f_handler.setLevel(logging.DEBUG)
    f_handler.setFormatter(log_format)
    return f_handler


def _apply_mode(logger: logging.Logger, log_mode: str) -> None:
    """Bring an already configured logger in line with the log mode."""
    level = _level_for(log_mode)
    logger.setLevel(level)

    has_file_handler = any(isinstance(h, logging.FileHandler) for h in logger.handlers)
    if log_mode != 'off' and not has_file_handler:
        logger.addHandler(_file_handler(logging.Formatter(LOG_FORMAT)))
    elif log_mode == 'off' and has_file_handler:
        for handler in [h for h in logger.handlers if isinstance(h, logging.FileHandler)]:
            handler.close()
            logger.removeHandler(handler)

    for handler in logger.handlers:
        if isinstance(handler, logging.StreamHandler) and not isinstance(handler, logging.FileHandler):
            handler.setLevel(level)


def set_log_mode(log_mode: str) -> None:
    """Switch the log mode and update every logger created by get_logger."""
    global _log_mode_cache
    if log_mode not in LOG_MODES:
        raise ValueError(f"Unknown log mode: {log_mode!r} (expected one of {', '.join(LOG_MODES)})")
    _log_mode_cache = log_mode

    for logger_name in list(logging.Logger.manager.loggerDict.keys()):
        if not logger_name.startswith("transloom"):
            continue
        logger = logging.getLogger(logger_name)
        if logger.handlers:
            _apply_mode(logger, log_mode)


def get_logger(name: str) -> logging.Logger:
    logger = logging.getLogger(name)
    log_mode = _get_log_mode()

    # Prevent duplicate handlers if logger already configured
    if logger.handlers:
        _apply_mode(logger, log_mode)
        return logger

    level = _level_for(log_mode)
    logger.setLevel(level)

    c_handler = logging.StreamHandler()
    c_handler.setLevel(level)
    c_handler.setFormatter(logging.Formatter(LOG_FORMAT))
    logger.addHandler(c_handler)

    if log_mode != 'off':
        logger.addHandler(_file_handler(logging.Formatter(LOG_FORMAT)))

    return logger
