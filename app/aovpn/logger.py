import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

from aovpn import config

_LOGGER = None
_CONSOLE_HANDLER = None


def _log_path() -> Path:
    if config.LOG_DIR:
        log_dir = Path(config.LOG_DIR)
    else:
        log_dir = Path(sys.argv[0]).resolve().parent / "logs"
    log_dir.mkdir(parents=True, exist_ok=True)
    return log_dir / config.LOG_FILE_NAME


def get_logger() -> logging.Logger:
    global _LOGGER
    if _LOGGER is not None:
        return _LOGGER

    logger = logging.getLogger("aovpn-tools")
    logger.setLevel(logging.DEBUG)
    logger.propagate = False

    if not logger.handlers:
        # Do not create local log files for frozen/packaged builds.
        if getattr(sys, "frozen", False):
            logger.addHandler(logging.NullHandler())
        else:
            try:
                handler = RotatingFileHandler(
                    _log_path(),
                    maxBytes=1_000_000,
                    backupCount=3,
                    encoding="utf-8",
                )
            except OSError:
                logger.addHandler(logging.NullHandler())
            else:
                handler.setLevel(logging.INFO)
                formatter = logging.Formatter("%(asctime)s %(levelname)s %(message)s")
                handler.setFormatter(formatter)
                logger.addHandler(handler)

    _LOGGER = logger
    return logger


def enable_console_logging(verbose: bool = False) -> None:
    """Echo log records to stderr. Warnings always, debug output with ``verbose``."""
    global _CONSOLE_HANDLER
    logger = get_logger()
    if _CONSOLE_HANDLER is None:
        _CONSOLE_HANDLER = logging.StreamHandler(sys.stderr)
        _CONSOLE_HANDLER.setFormatter(logging.Formatter("%(levelname)s: %(message)s"))
        logger.addHandler(_CONSOLE_HANDLER)
    else:
        _CONSOLE_HANDLER.setStream(sys.stderr)
    _CONSOLE_HANDLER.setLevel(logging.DEBUG if verbose else logging.WARNING)
