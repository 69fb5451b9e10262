import logging

from async_whatsapp_service.logger import get_logger


def test_get_logger_reuses_existing_logger():
    logger = get_logger("TestLogger")
    handler_count = len(logger.handlers)

    same_logger = get_logger("TestLogger")
    assert logger is same_logger
    assert len(same_logger.handlers) == handler_count


def test_default_logger_name():
    assert get_logger().name == "AsyncWhatsAppService"


def test_get_logger_applies_level():
    assert get_logger("LevelLogger", "debug").level == logging.DEBUG
    assert get_logger("LevelLogger", logging.WARNING).level == logging.WARNING
    # Without a level the current one is kept
    assert get_logger("LevelLogger").level == logging.WARNING
