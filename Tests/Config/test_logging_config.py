# test_logging_config.py
#
#
# Imports
import logging
import logging.handlers
import sys
#
# Third-Party Imports
import pytest
from loguru import logger
#
# Local Imports
from feedsync.Logging_Config import configure_logging
#
#######################################################################################################################
#
# Functions:


@pytest.fixture(autouse=True)
def restore_logging():
    root_logger = logging.getLogger()
    saved_handlers = root_logger.handlers[:]
    saved_level = root_logger.level
    yield
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)
        handler.close()
    for handler in saved_handlers:
        root_logger.addHandler(handler)
    root_logger.setLevel(saved_level)
    logger.remove()
    logger.add(sys.stderr)


def test_console_only_by_default():
    handlers = configure_logging({"Logging": {"level": "warning", "log_file": ""}})

    assert len(handlers) == 1
    assert isinstance(handlers[0], logging.StreamHandler)
    assert logging.getLogger().level == logging.WARNING
    assert logging.getLogger("httpx").level == logging.WARNING


def test_rotating_file_handler_and_loguru_bridge(tmp_path):
    log_file = tmp_path / "logs" / "feedsync.log"
    handlers = configure_logging({"Logging": {"level": "DEBUG", "log_file": str(log_file),
                                              "log_max_bytes": 1024, "log_backup_count": 2}})

    file_handlers = [h for h in handlers if isinstance(h, logging.handlers.RotatingFileHandler)]
    assert len(file_handlers) == 1
    assert file_handlers[0].maxBytes == 1024
    assert file_handlers[0].backupCount == 2

    logger.info("bridged through loguru")
    logging.getLogger("feedsync.DB").warning("straight from stdlib")
    for handler in handlers:
        handler.flush()

    contents = log_file.read_text(encoding="utf-8")
    assert "bridged through loguru" in contents
    assert "straight from stdlib" in contents


def test_reconfiguring_replaces_handlers():
    configure_logging({"Logging": {"level": "INFO"}})
    handlers = configure_logging({"Logging": {"level": "INFO"}})
    assert logging.getLogger().handlers == handlers
    assert len(handlers) == 1


def test_unknown_level_falls_back_to_info():
    configure_logging({"Logging": {"level": "CHATTY"}})
    assert logging.getLogger().level == logging.INFO

#
# End of test_logging_config.py
#######################################################################################################################
