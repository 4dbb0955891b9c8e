import logging

import pytest

from toolorder.log_utils import PACKAGE_LOGGER


@pytest.fixture(autouse=True)
def _propagate_package_logs():
    """Let caplog see the package logger even after configure_logging ran."""
    logger = logging.getLogger(PACKAGE_LOGGER)
    previous = logger.propagate
    logger.propagate = True
    yield
    logger.propagate = previous
