"""
Test suite for process settings and structured logging
"""

import json
import logging

from arrears_core import config as config_module
from arrears_core.api.system import ArrearsSystem
from arrears_core.config import ArrearsSettings, get_config, reload_config
from arrears_core.logging_config import JSONFormatter, get_logger, log_action, setup_logging
from arrears_core.notifications import LogNotificationSender, WebhookNotificationSender
from arrears_core.storage import InMemoryStorage


class TestSettings:
    """Test environment-driven settings"""

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("ARREARS_STORAGE_BACKEND", "memory")
        monkeypatch.setenv("ARREARS_API_PORT", "9001")
        monkeypatch.setenv("ARREARS_BATCH_MAX_WORKERS", "4")

        settings = ArrearsSettings()

        assert settings.storage_backend == "memory"
        assert settings.api_port == 9001
        assert settings.batch_max_workers == 4

    def test_reload_replaces_global_instance(self, monkeypatch):
        original = config_module.config
        monkeypatch.setenv("ARREARS_LOG_LEVEL", "DEBUG")
        try:
            reloaded = reload_config()
            assert get_config() is reloaded
            assert reloaded.log_level == "DEBUG"
        finally:
            config_module.config = original

    def test_sender_follows_webhook_setting(self):
        log_only = ArrearsSystem(InMemoryStorage(), ArrearsSettings(storage_backend="memory"))
        webhook = ArrearsSystem(InMemoryStorage(), ArrearsSettings(
            storage_backend="memory", notification_webhook_url="http://gateway.local/send"
        ))

        assert isinstance(log_only.notifications.sender, LogNotificationSender)
        assert isinstance(webhook.notifications.sender, WebhookNotificationSender)

    def test_audit_can_be_disabled(self):
        system = ArrearsSystem(InMemoryStorage(), ArrearsSettings(storage_backend="memory", enable_audit_logging=False))
        assert system.audit_trail is None
        assert system.config_provider.get().version == 1


class TestLogging:
    """Test the JSON logging helpers"""

    def test_loggers_live_under_arrears(self):
        assert get_logger("mora").name == "arrears.mora"
        assert get_logger("arrears.tiers").name == "arrears.tiers"

    def test_json_formatter_drops_empty_fields(self):
        record = logging.LogRecord("arrears.test", logging.INFO, __file__, 1, "fee batch done", (), None)
        record.action = "calculate_fees"

        entry = json.loads(JSONFormatter().format(record))

        assert entry["message"] == "fee batch done"
        assert entry["action"] == "calculate_fees"
        assert "user_id" not in entry

    def test_log_action_writes_structured_record(self, tmp_path):
        log_file = tmp_path / "arrears.log"
        logger = setup_logging("DEBUG", "json", str(log_file), logger_name="arrears.test_structured")

        log_action(logger, "info", "alert escalated", user_id="SYSTEM", action="ESCALATE_PRIORITY",
                   resource="alert:A-1", extra={"severity": "HIGH"})
        for handler in logger.handlers:
            handler.flush()

        entry = json.loads(log_file.read_text().strip().splitlines()[-1])
        assert entry["resource"] == "alert:A-1"
        assert entry["extra"] == {"severity": "HIGH"}

    def test_log_action_respects_level(self, tmp_path):
        log_file = tmp_path / "quiet.log"
        logger = setup_logging("WARNING", "text", str(log_file), logger_name="arrears.test_quiet")

        log_action(logger, "info", "not written")
        for handler in logger.handlers:
            handler.flush()

        assert log_file.read_text() == ""
