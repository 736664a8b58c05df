"""Unit tests for the logging configuration module."""

import logging
from unittest.mock import MagicMock, patch

import pytest
import structlog

from signalflow.logging import get_logger, setup_logging


@pytest.fixture(autouse=True)
def _reset_root_logger():
    """Reset root logger state before and after each test."""
    original_handlers = logging.root.handlers[:]
    original_level = logging.root.level
    logging.root.handlers.clear()
    logging.root.setLevel(logging.WARNING)
    yield
    logging.root.handlers.clear()
    logging.root.handlers.extend(original_handlers)
    logging.root.setLevel(original_level)


def _mock_settings(level: str = "INFO", development: bool = False) -> MagicMock:
    settings = MagicMock()
    settings.log_level = level
    settings.is_development = development
    return settings


class TestSetupLogging:
    """Tests for setup_logging function."""

    def test_setup_logging_calls_basic_config_with_debug(self):
        """Test that setup_logging calls basicConfig with correct level for DEBUG."""
        with patch("signalflow.logging.get_settings", return_value=_mock_settings("DEBUG", True)):
            with patch("signalflow.logging.logging.basicConfig") as mock_basic:
                setup_logging()

        mock_basic.assert_called_once_with(format="%(message)s", level=logging.DEBUG, handlers=[])

    def test_setup_logging_invalid_level_defaults_to_info(self):
        """Test setup_logging falls back to INFO for invalid log level."""
        with patch("signalflow.logging.get_settings", return_value=_mock_settings("NONEXISTENT")):
            with patch("signalflow.logging.logging.basicConfig") as mock_basic:
                setup_logging()

        mock_basic.assert_called_once_with(format="%(message)s", level=logging.INFO, handlers=[])

    def test_setup_logging_console_handler_has_structlog_formatter(self):
        """Test that the console handler gets a ProcessorFormatter."""
        with patch("signalflow.logging.get_settings", return_value=_mock_settings()):
            setup_logging()

        console_handlers = [h for h in logging.root.handlers if type(h) is logging.StreamHandler]
        assert len(console_handlers) == 1
        assert isinstance(console_handlers[0].formatter, structlog.stdlib.ProcessorFormatter)

    def test_setup_logging_reduces_http_client_noise(self):
        """Test that setup_logging sets httpx loggers to WARNING."""
        with patch("signalflow.logging.get_settings", return_value=_mock_settings("DEBUG")):
            setup_logging()

        assert logging.getLogger("httpx").level == logging.WARNING
        assert logging.getLogger("httpcore").level == logging.WARNING

    def test_setup_logging_sets_root_level(self):
        """Test that the root logger level follows settings."""
        with patch("signalflow.logging.get_settings", return_value=_mock_settings("ERROR")):
            setup_logging()

        assert logging.root.level == logging.ERROR

    def test_setup_logging_configures_structlog(self):
        """Test that setup_logging calls structlog.configure."""
        with patch("signalflow.logging.get_settings", return_value=_mock_settings()):
            with patch("signalflow.logging.structlog.configure") as mock_configure:
                setup_logging()

        mock_configure.assert_called_once()
        kwargs = mock_configure.call_args.kwargs
        assert kwargs["cache_logger_on_first_use"] is True
        assert kwargs["context_class"] is dict


class TestGetLogger:
    """Tests for get_logger function."""

    def test_get_logger_returns_usable_logger(self):
        """Test that get_logger returns a logger with the usual level methods."""
        log = get_logger("signalflow.test")
        assert hasattr(log, "info")
        assert hasattr(log, "warning")
        assert hasattr(log, "debug")
