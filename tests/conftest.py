"""Shared pytest fixtures."""

import pytest

from signalflow.config import get_settings


@pytest.fixture(autouse=True)
def _clear_settings_cache():
    """Keep get_settings() from leaking values between tests."""
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()
