"""
Tests for structlog processors.
"""

import logging

from linkscan.core.config import Settings
from linkscan.core.logging import add_severity, configure_logging, redact_secrets


class TestProcessors:

    def test_secrets_are_masked(self):
        event = redact_secrets(None, "info", {"event": "Scan starting", "api_key": "k-123", "url": "https://site.test/"})
        assert event["api_key"] == "***"
        assert event["url"] == "https://site.test/"

    def test_severity(self):
        assert add_severity(None, "warn", {})["severity"] == "WARNING"
        assert add_severity(None, "error", {})["severity"] == "ERROR"

    def test_noisy_loggers_quieted(self):
        configure_logging(Settings(LOG_FORMAT="console"))
        assert logging.getLogger("httpx").level == logging.WARNING
