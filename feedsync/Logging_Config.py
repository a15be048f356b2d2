# Logging_Config.py
# Description: Configuration for logging
#
# Imports
import logging
import logging.handlers
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional
#
# 3rd-Party Imports
from loguru import logger as loguru_logger
#
# Local Imports
from feedsync.config import get_setting
#
########################################################################################################################
#
# Functions:

LOG_FORMAT = "%(asctime)s [%(levelname)-8s] %(name)s:%(lineno)d - %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

_LOGURU_TO_STDLIB_LEVELS = {
    "TRACE": logging.DEBUG, "DEBUG": logging.DEBUG, "INFO": logging.INFO,
    "SUCCESS": logging.INFO, "WARNING": logging.WARNING, "ERROR": logging.ERROR,
    "CRITICAL": logging.CRITICAL,
}


def sink_to_standard_logging(message) -> None:
    """Loguru sink that re-emits each record through the stdlib logger of the same name."""
    record = message.record
    std_level = _LOGURU_TO_STDLIB_LEVELS.get(record["level"].name, logging.INFO)
    std_logger = logging.getLogger(record["name"])
    if record["exception"]:
        std_logger.log(std_level, record["message"], exc_info=record["exception"])
    else:
        std_logger.log(std_level, record["message"])


def configure_logging(settings: Optional[Dict[str, Any]] = None) -> List[logging.Handler]:
    """
    Routes loguru into stdlib logging and gives the root logger a stderr handler plus,
    when `[Logging] log_file` is set, a rotating file handler. Safe to call again; old
    root handlers are replaced.

    Returns:
        The handlers installed on the root logger.
    """
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)

    loguru_logger.remove()
    loguru_logger.add(sink_to_standard_logging, level="TRACE", format="{message}")

    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)
        handler.close()

    level_str = str(get_setting("Logging", "level", "INFO", settings=settings)).upper()
    level = getattr(logging, level_str, logging.INFO)
    root_logger.setLevel(level)
    formatter = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT)

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(level)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    log_file = get_setting("Logging", "log_file", "", settings=settings)
    if log_file:
        log_file_path = Path(log_file).expanduser()
        try:
            log_file_path.parent.mkdir(parents=True, exist_ok=True)
            file_handler = logging.handlers.RotatingFileHandler(
                log_file_path,
                maxBytes=int(get_setting("Logging", "log_max_bytes", 10485760, settings=settings)),
                backupCount=int(get_setting("Logging", "log_backup_count", 5, settings=settings)),
                encoding="utf-8",
            )
        except OSError as e:
            logging.warning(f"Could not set up file logging at {log_file_path}: {e}")
        else:
            file_handler.setLevel(level)
            file_handler.setFormatter(formatter)
            root_logger.addHandler(file_handler)
            logging.info(f"Logging to file '{log_file_path}' (Level: {logging.getLevelName(level)}).")

    logging.debug(f"Logging configured; root level {logging.getLevelName(root_logger.level)}.")
    return list(root_logger.handlers)

#
# End of Logging_Config.py
########################################################################################################################
