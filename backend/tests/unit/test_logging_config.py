"""Unit tests for the structlog logging configuration."""

import logging
import uuid

import structlog

from tokengate.logging_config import setup_logging


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

    def test_http_transport_loggers_are_quieted(self):
        setup_logging(debug=True)

        assert logging.getLogger("httpx").level == logging.WARNING

    def test_production_events_carry_service(self, capsys):
        setup_logging(debug=False)

        structlog.get_logger("test").info("service_check")

        out = capsys.readouterr().out
        assert '"service": "tokengate"' in out
        assert '"event": "service_check"' in out


class TestStructlogContextBinding:
    def test_context_binding_works(self):
        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(request_id="test-123", identity_key="user:abc")

        bound = structlog.contextvars.get_contextvars()
        assert bound["request_id"] == "test-123"
        assert bound["identity_key"] == "user:abc"

        structlog.contextvars.clear_contextvars()
        assert structlog.contextvars.get_contextvars() == {}

    def test_request_id_echoed_in_response(self, client):
        response = client.get("/health", headers={"X-Request-ID": "req-42"})

        assert response.headers["X-Request-ID"] == "req-42"

    def test_request_id_generated_when_absent(self, client):
        response = client.get("/health")

        assert response.headers["X-Request-ID"]

    def test_overlong_request_id_is_replaced(self, client):
        response = client.get("/health", headers={"X-Request-ID": "a" * 129})

        request_id = response.headers["X-Request-ID"]
        assert request_id != "a" * 129
        assert uuid.UUID(request_id)

    def test_request_id_with_unsafe_characters_is_replaced(self, client):
        response = client.get("/health", headers={"X-Request-ID": "req 42\\nforged=1"})

        assert response.headers["X-Request-ID"] != "req 42\\nforged=1"
        assert uuid.UUID(response.headers["X-Request-ID"])

    def test_request_id_at_length_cap_is_kept(self, client):
        request_id = "r" * 128

        response = client.get("/health", headers={"X-Request-ID": request_id})

        assert response.headers["X-Request-ID"] == request_id
