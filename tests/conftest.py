import logging

import pytest

from fakes import ScriptedCompletionClient, make_settings


@pytest.fixture(autouse=True)
def reset_package_logger():
    """
    Autouse fixture that restores the package logger after each test, since
    setup_logger detaches it from the root logger (and from caplog).
    """
    yield
    logger = logging.getLogger('record_translator')
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    logger.propagate = True
    logger.setLevel(logging.NOTSET)


@pytest.fixture
def scripted_client():
    """A completion client that translates by upper-casing every text."""
    return ScriptedCompletionClient()


@pytest.fixture
def settings(scripted_client):
    return make_settings(scripted_client)
