"""Tests for the structlog redaction processor."""

import logging

import pytest

from app.core.logging import configure_structlog, redact_sensitive

pytestmark = pytest.mark.unit


def test_credentials_are_masked():
    event = redact_sensitive(None, "info", {"event": "provider_call", "access_token": "APP_USR-123", "token": "x"})

    assert event["access_token"] == "***"
    assert event["token"] == "***"


def test_payer_email_is_shortened():
    event = redact_sensitive(None, "info", {"event": "notification_sent", "payer_email": "jane.doe@example.com"})

    assert event["payer_email"] == "j***@example.com"


def test_empty_secret_is_left_alone():
    event = redact_sensitive(None, "info", {"event": "startup", "secret": ""})

    assert event["secret"] == ""


def test_event_name_is_untouched():
    event = redact_sensitive(None, "info", {"event": "user@host message"})

    assert event["event"] == "user@host message"


def test_noisy_libraries_only_log_warnings():
    configure_structlog(log_level="INFO", json_logs=True)

    assert logging.getLogger().level == logging.INFO
    for name in ("uvicorn.access", "httpx", "sqlalchemy.engine"):
        assert logging.getLogger(name).level == logging.WARNING
