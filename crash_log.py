# crash_log.py - Logging setup and global exception hook

import logging
import sys
import traceback
from pathlib import Path

LOGGER_NAME = "calibration_lifecycle"
LOG_FILE_NAME = "calibration_lifecycle.log"

logger = logging.getLogger(LOGGER_NAME)


def configure_logging(log_dir: Path, level: int = logging.INFO) -> Path:
    """
    Attach a file handler to the application logger (once). Module loggers
    created with logging.getLogger(__name__) propagate to the root logger,
    so the handler is attached there as well as to the named logger's level.
    Returns the log file path.
    """
    log_dir = Path(log_dir)
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / LOG_FILE_NAME

    root = logging.getLogger()
    # Avoid duplicate handlers if this gets called more than once
    for h in root.handlers:
        if isinstance(h, logging.FileHandler) and Path(h.baseFilename) == log_file.resolve():
            return log_file

    fh = logging.FileHandler(log_file, encoding="utf-8")
    fh.setFormatter(
        logging.Formatter(
            "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
    )
    root.addHandler(fh)
    root.setLevel(level)
    logger.setLevel(level)
    return log_file


def log_exception(exc_type, exc_value, exc_tb):
    """
    Global exception hook: log uncaught exceptions to file and stderr.
    """
    tb_str = "".join(traceback.format_exception(exc_type, exc_value, exc_tb))

    try:
        logger.error("Uncaught exception:\n%s", tb_str)
    except Exception:
        # Logging should never crash the crash logger
        pass

    try:
        sys.__stderr__.write(tb_str)
        sys.__stderr__.flush()
    except Exception:
        pass


def log_current_exception(context: str = ""):
    """
    Helper to log inside a try/except block if you manually catch something fatal.
    """
    exc_type, exc_value, exc_tb = sys.exc_info()
    if exc_type is None:
        return
    prefix = f"[{context}] " if context else ""
    tb_str = "".join(traceback.format_exception(exc_type, exc_value, exc_tb))
    try:
        logger.error("%sCaught exception:\n%s", prefix, tb_str)
    except Exception:
        pass


def install_global_excepthook():
    """
    Install the global excepthook so any uncaught exception is logged.
    """
    sys.excepthook = log_exception
