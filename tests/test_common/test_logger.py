"""
Tests for logging setup.
"""

import pytest
import structlog

from vastunwrap.common.config import LoggingSettings, Settings
from vastunwrap.common.logger import get_logger, setup_logging, strip_url_queries
from vastunwrap.proxy_server.main import create_app


class TestStripUrlQueries:
    """Tests for the URL field processor."""

    def test_query_and_fragment_dropped(self) -> None:
        event = {
            "event": "Following wrapper",
            "target": "https://wrap1.example.com/tag?token=secret&price=1.25#frag",
        }

        result = strip_url_queries(None, "debug", event)

        assert result["target"] == "https://wrap1.example.com/tag"

    def test_other_fields_untouched(self) -> None:
        event = {"event": "x", "error": "bad?query", "url": "https://ads.example.com/vast"}

        result = strip_url_queries(None, "info", event)

        assert result["error"] == "bad?query"
        assert result["url"] == "https://ads.example.com/vast"


class TestSetupLogging:
    """Tests for structlog configuration."""

    def test_queries_stripped_outside_debug(self) -> None:
        setup_logging(Settings(env="test", logging=LoggingSettings(format="json")))

        assert strip_url_queries in structlog.get_config()["processors"]

    def test_logger_created_earlier_follows_setup(self) -> None:
        log = get_logger("early")
        setup_logging(Settings(env="test", debug=True))
        assert strip_url_queries not in log.bind()._processors

        setup_logging(Settings(env="test"))
        assert strip_url_queries in log.bind()._processors

    def test_debug_keeps_queries(self) -> None:
        setup_logging(Settings(env="test", debug=True, logging=LoggingSettings(format="console")))

        assert strip_url_queries not in structlog.get_config()["processors"]

    @pytest.mark.asyncio
    async def test_create_app_applies_its_settings(self, settings, make_services) -> None:
        settings.debug = True
        create_app(services=make_services(settings))
        assert strip_url_queries not in structlog.get_config()["processors"]

        settings.debug = False
        create_app(services=make_services(settings))
        assert strip_url_queries in structlog.get_config()["processors"]
