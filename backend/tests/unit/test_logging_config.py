"""Unit tests for the structlog logging configuration."""

import logging

import structlog
from structlog.testing import capture_logs

from studio.logging_config import (
    NOISY_LOGGERS,
    REDACTED,
    add_service_info,
    redact_sensitive,
    setup_logging,
)


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
        logger.info("test_event", key="value")

    def test_http_client_loggers_quieted_in_production(self):
        setup_logging(debug=False)
        for name in NOISY_LOGGERS:
            assert logging.getLogger(name).level == logging.WARNING

    def test_production_pipeline_redacts_and_tags(self):
        setup_logging(debug=False)
        processors = structlog.get_config()["processors"]

        assert redact_sensitive in processors
        assert add_service_info in processors
        assert isinstance(processors[-1], structlog.processors.JSONRenderer)


class TestProcessors:
    def test_sensitive_values_are_redacted(self):
        event = redact_sensitive(
            None,
            "info",
            {"event": "stripe_webhook_received", "stripe_signature": "t=1,v1=abc", "user_id": "u1"},
        )

        assert event["stripe_signature"] == REDACTED
        assert event["user_id"] == "u1"

    def test_empty_sensitive_values_are_left_alone(self):
        event = redact_sensitive(None, "info", {"event": "x", "authorization": None})
        assert event["authorization"] is None

    def test_service_info_does_not_override(self):
        event = add_service_info(None, "info", {"event": "x", "service": "worker"})

        assert event["service"] == "worker"
        assert event["version"]


class TestStructlogContextBinding:
    def test_context_binding_works(self):
        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(request_id="test-123", stripe_event_id="evt_1")

        bound = structlog.contextvars.get_contextvars()
        assert bound["request_id"] == "test-123"
        assert bound["stripe_event_id"] == "evt_1"

        structlog.contextvars.clear_contextvars()
        assert structlog.contextvars.get_contextvars() == {}


class TestRequestContextMiddleware:
    def test_response_carries_request_id(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        assert response.headers["X-Request-ID"]

    def test_incoming_request_id_is_reused(self, client):
        response = client.get("/health", headers={"X-Request-ID": "req-abc"})

        assert response.headers["X-Request-ID"] == "req-abc"

    def test_completed_requests_are_logged_with_status(self, client):
        with capture_logs() as logs:
            client.get("/api/v1/credits/balance")

        completed = [entry for entry in logs if entry["event"] == "request_completed"]
        assert len(completed) == 1
        assert completed[0]["status_code"] in (401, 403, 503)
        assert completed[0]["duration_ms"] >= 0

    def test_health_checks_are_not_logged(self, client):
        with capture_logs() as logs:
            client.get("/health")

        assert not [entry for entry in logs if entry["event"] == "request_completed"]
