"""
Tests for environment-based configuration and logging setup
"""

import json
import logging

import microfinance.config as config_module
from microfinance.config import MicrofinanceConfig, get_config, reload_config
from microfinance.logging_config import JSONFormatter, get_logger, log_action


class TestConfiguration:
    """pydantic-settings configuration"""

    def test_defaults(self):
        config = MicrofinanceConfig(_env_file=None)
        assert config.penalty_rate == "0.05"
        assert config.duplicate_window_hours == 24
        assert config.payment_attempt_window_seconds == 60
        assert config.normal_max_days == 30
        assert config.reporting_currency == "RWF"
        assert not config.is_production

    def test_environment_override(self, monkeypatch):
        monkeypatch.setenv("MICROFINANCE_PENALTY_RATE", "0.10")
        monkeypatch.setenv("MICROFINANCE_WATCH_MAX_DAYS", "60")
        monkeypatch.setenv("MICROFINANCE_ENVIRONMENT", "Production")

        config = MicrofinanceConfig(_env_file=None)
        assert config.penalty_rate == "0.10"
        assert config.watch_max_days == 60
        assert config.is_production

    def test_reload_config(self, monkeypatch):
        monkeypatch.setattr(config_module, "config", get_config())
        monkeypatch.setenv("MICROFINANCE_API_PORT", "9000")

        reloaded = reload_config()
        assert reloaded.api_port == 9000
        assert get_config() is reloaded


class TestStructuredLogging:
    """JSON log records"""

    def test_log_action_fields(self):
        logger = logging.getLogger("microfinance.test_config")
        logger.setLevel(logging.INFO)
        records = []

        class Capture(logging.Handler):
            def emit(self, record):
                records.append(record)

        handler = Capture()
        logger.addHandler(handler)
        try:
            log_action(logger, "warning", "Payment rejected", action="process_payment",
                       organization_id="org-1", extra={"error_code": "duplicate_payment"})
        finally:
            logger.removeHandler(handler)

        entry = json.loads(JSONFormatter().format(records[0]))
        assert entry["level"] == "WARNING"
        assert entry["message"] == "Payment rejected"
        assert entry["action"] == "process_payment"
        assert entry["organization_id"] == "org-1"
        assert entry["extra"] == {"error_code": "duplicate_payment"}
        assert "loan_id" not in entry

    def test_get_logger_namespace(self):
        assert get_logger("jobs").name == "microfinance.jobs"
        assert get_logger("microfinance.payments").name == "microfinance.payments"
        assert get_logger().name == "microfinance"
