"""Tests for sensitive data filtering in logs."""

from __future__ import annotations

import json
import logging
from io import StringIO

import pytest

from throttle.core.logging import (
    REDACTED,
    JsonFormatter,
    RequestIdFilter,
    SensitiveDataFilter,
    clear_request_id,
    hash_identity,
    set_request_id,
)


@pytest.fixture
def capture():
    """Yield a logger wired to an in-memory JSON handler, plus its stream."""
    logger = logging.getLogger("test_redaction")
    logger.setLevel(logging.INFO)
    logger.handlers.clear()
    logger.propagate = False

    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.addFilter(RequestIdFilter())
    handler.addFilter(SensitiveDataFilter())
    handler.setFormatter(JsonFormatter())
    logger.addHandler(handler)

    yield logger, stream

    logger.handlers.clear()
    clear_request_id()


def _last_line(stream: StringIO) -> dict:
    return json.loads(stream.getvalue().strip().splitlines()[-1])


def test_sensitive_filter_redacts_api_keys(capture):
    logger, stream = capture

    logger.info(
        "test_event",
        extra={
            "api_key": "sk-secret-123",
            "x-api-key": "another-secret",
            "safe_field": "visible",
        },
    )

    output = stream.getvalue()
    assert "sk-secret-123" not in output
    assert "another-secret" not in output
    assert REDACTED in output
    assert "visible" in output


def test_sensitive_filter_redacts_credentials_and_identifiers(capture):
    logger, stream = capture

    logger.warning(
        "auth_throttle.locked_out",
        extra={
            "identifier": "alice@example.com",
            "password": "hunter2",
            "limiter_key": "login:alice@example.com",
            "retry_after": 3600,
        },
    )

    payload = _last_line(stream)
    assert "alice@example.com" not in stream.getvalue()
    assert "hunter2" not in stream.getvalue()
    assert payload["identifier"] == REDACTED
    assert payload["retry_after"] == 3600


def test_nested_values_are_redacted(capture):
    logger, stream = capture

    logger.info("request", extra={"headers": {"Authorization": "Bearer abc", "Accept": "json"}})

    payload = _last_line(stream)
    assert payload["headers"] == {"Authorization": REDACTED, "Accept": "json"}


def test_request_id_attached_from_context(capture):
    logger, stream = capture
    set_request_id("req-42")

    logger.info("with_context")

    assert _last_line(stream)["request_id"] == "req-42"


def test_json_formatter_includes_standard_fields(capture):
    logger, stream = capture

    logger.info("rate_limit.allowed", extra={"tier": "foundation", "remaining": 59})

    payload = _last_line(stream)
    assert payload["level"] == "info"
    assert payload["logger"] == "test_redaction"
    assert payload["message"] == "rate_limit.allowed"
    assert payload["tier"] == "foundation"
    assert "timestamp" in payload
    assert "args" not in payload


def test_hash_identity_is_stable_and_opaque():
    hashed = hash_identity("ip:192.168.1.1")

    assert hashed == hash_identity("ip:192.168.1.1")
    assert hashed != hash_identity("ip:192.168.1.2")
    assert "192.168" not in hashed
    assert len(hashed) == 16
