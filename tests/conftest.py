from __future__ import annotations

import logging

import pytest

from ralph_gate.logging_config import PACKAGE_LOGGER
from ralph_gate.output import set_output_config


@pytest.fixture(autouse=True)
def _reset_cli_globals():
    yield
    logger = logging.getLogger(PACKAGE_LOGGER)
    for handler in logger.handlers[:]:
        logger.removeHandler(handler)
        handler.close()
    logger.setLevel(logging.NOTSET)
    set_output_config(None)
