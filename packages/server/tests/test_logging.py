"""
Tests for structlog configuration.
"""

import pytest
import structlog

from app.core.config import get_settings
from app.core.logging import configure_logging


@pytest.fixture(autouse=True)
def restore_logging():
    yield
    settings = get_settings()
    configure_logging(settings.log_level, settings.log_format)


class TestConfigureLogging:
    @pytest.mark.parametrize("level", ["debug", "info", "WARNING", "error"])
    def test_accepts_level_names(self, level):
        configure_logging(level, "json")
        assert structlog.get_config()["wrapper_class"] is not None

    def test_filters_below_level(self, capsys):
        configure_logging("warning", "json")
        log = structlog.get_logger()
        log.info("logging.dropped")
        log.warning("logging.kept")
        out = capsys.readouterr().out
        assert "logging.kept" in out
        assert "logging.dropped" not in out

    def test_text_format(self, capsys):
        configure_logging("info", "text")
        structlog.get_logger().info("logging.console")
        assert "logging.console" in capsys.readouterr().out

    def test_unknown_level(self):
        with pytest.raises(KeyError):
            configure_logging("loud", "json")
