import logging

import pytest

from chapter_scraper import LOGGER_NAME


@pytest.fixture(autouse=True)
def quiet_handlers():
    """Drop any handlers a CLI test attached so file handles do not leak between tests."""
    yield
    logger = logging.getLogger(LOGGER_NAME)
    for handler in list(logger.handlers):
        handler.close()
        logger.removeHandler(handler)
