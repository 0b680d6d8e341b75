"""Tests for the structlog setup and PII redaction."""
import structlog

from utils.logging import PIIRedactor, setup_logging


class TestPIIRedactor:

    def test_sensitive_keys_redacted(self):
        event = PIIRedactor()(None, "info", {
            "event": "crm_lookup", "api_key": "secret", "Phone": "+14155550100", "subject_id": "crm_42",
        })
        assert event["api_key"] == "[REDACTED]"
        assert event["Phone"] == "[REDACTED]"
        assert event["subject_id"] == "crm_42"

    def test_emails_masked_in_strings(self):
        event = PIIRedactor()(None, "info", {"event": "x", "error": "bounced for jane@example.com"})
        assert event["error"] == "bounced for [EMAIL]"

    def test_nested_dicts(self):
        event = PIIRedactor()(None, "info", {"event": "x", "profile": {"email": "a@b.co", "tier": "gold"}})
        assert event["profile"] == {"email": "[REDACTED]", "tier": "gold"}

    def test_non_strings_untouched(self):
        event = PIIRedactor()(None, "info", {"event": "x", "count": 3, "keys": ["phone"]})
        assert event["count"] == 3
        assert event["keys"] == ["phone"]


class TestSetupLogging:

    def teardown_method(self):
        structlog.reset_defaults()

    def test_redactor_installed_before_renderer(self):
        setup_logging("DEBUG", "json", redact_pii=True)
        processors = structlog.get_config()["processors"]
        assert isinstance(processors[-2], PIIRedactor)
        assert isinstance(processors[-1], structlog.processors.JSONRenderer)

    def test_console_without_redaction(self):
        setup_logging("INFO", "console", redact_pii=False)
        processors = structlog.get_config()["processors"]
        assert not any(isinstance(p, PIIRedactor) for p in processors)
        assert isinstance(processors[-1], structlog.dev.ConsoleRenderer)
