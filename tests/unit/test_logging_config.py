"""Unit tests for the structlog logging configuration."""

import structlog

from evidens.logging_config import REDACTED, redact_sensitive_fields, setup_logging


class TestSetupLogging:
    def test_setup_logging_runs_without_error_debug(self):
        setup_logging(debug=True)
        logger = structlog.get_logger("test")
        # Should not raise
        logger.info("test_event", key="value")

    def test_setup_logging_runs_without_error_production(self):
        setup_logging(debug=False)
        logger = structlog.get_logger("test")
        # Should not raise
        logger.info("pagarme_webhook_processed", event_id="evt_1", card={"number": "4111"})


class TestRedactSensitiveFields:
    def test_top_level_keys_are_masked(self):
        event = redact_sensitive_fields(None, "info", {"event": "x", "authorization": "Basic abc"})

        assert event == {"event": "x", "authorization": REDACTED}

    def test_nested_keys_are_masked(self):
        event = redact_sensitive_fields(
            None,
            "info",
            {
                "event": "pagarme_subscription_requested",
                "payload": {
                    "customer": {"name": "Ana", "document": "12345678909", "Phone": "11987654321"},
                    "items": [{"card": {"number": "4111"}}],
                },
            },
        )

        customer = event["payload"]["customer"]
        assert customer == {"name": "Ana", "document": REDACTED, "Phone": REDACTED}
        assert event["payload"]["items"] == [{"card": REDACTED}]

    def test_plain_values_untouched(self):
        event = {"event": "billing_access_extended", "user_id": "u1", "days_added": 30}

        assert redact_sensitive_fields(None, "info", dict(event)) == event


class TestStructlogContextBinding:
    def test_context_binding_works(self):
        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(request_id="test-123", path="/api/v1/billing/webhook")

        bound = structlog.contextvars.get_contextvars()
        assert bound["request_id"] == "test-123"
        assert bound["path"] == "/api/v1/billing/webhook"

        structlog.contextvars.clear_contextvars()
        assert structlog.contextvars.get_contextvars() == {}
