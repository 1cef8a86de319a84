"""Tests for structured logging configuration."""

import logging

import structlog

from cli.logging_config import _redact_sensitive, setup_logging


class TestLoggingConfig:
    """Test structlog setup modes."""

    def test_console_mode(self):
        """Console mode configures without error."""
        setup_logging(json_mode=False, level="DEBUG")
        structlog.get_logger().info("test message", key="value")
        assert logging.getLogger().level == logging.DEBUG

    def test_level_filtering(self):
        setup_logging(json_mode=False, level="WARNING")
        assert logging.getLogger().level == logging.WARNING

    def test_default_level_is_info(self):
        setup_logging()
        assert logging.getLogger().level == logging.INFO

    def test_processor_chain(self):
        setup_logging(json_mode=True, level="DEBUG")
        config = structlog.get_config()
        assert _redact_sensitive in config["processors"]

    def test_log_file_handler(self, tmp_path):
        log_file = tmp_path / "logs" / "engine.log"
        setup_logging(json_mode=True, level="WARNING", log_file=log_file)
        root = logging.getLogger()
        assert len(root.handlers) == 2
        assert log_file.parent.exists()
        assert root.level == logging.DEBUG
        root.handlers.clear()


class TestRedaction:
    def test_openai_key_redacted(self):
        event = {"event": "call", "detail": "key sk-proj-abcdef1234567890abcdefghijklmnop"}
        out = _redact_sensitive(None, None, event)
        assert "1234567890abcdefghij" not in out["detail"]
        assert "REDACTED" in out["detail"]

    def test_email_redacted(self):
        out = _redact_sensitive(None, None, {"event": "x", "text": "ping ops@example.com"})
        assert out["text"] == "ping REDACTED@email"

    def test_non_strings_untouched(self):
        out = _redact_sensitive(None, None, {"event": "x", "count": 3})
        assert out["count"] == 3
