"""Tests for log redaction and correlation ids."""

from rundeklar.logging import (
    _add_correlation_id,
    _redact_credentials,
    correlation_id_var,
    get_correlation_id,
    set_correlation_id,
)


def test_credentials_are_masked():
    event = _redact_credentials(
        None,
        "info",
        {
            "event": "auth_login_failed",
            "refresh_token": "R1-very-secret",
            "password": "pw",
            "email": "coach@example.dk",
            "error_code": "unauthorized",
            "status_code": 401,
        },
    )

    assert event["event"] == "auth_login_failed"
    assert event["refresh_token"] == "R1***et"
    assert event["password"] == "***"
    assert event["email"] == "co***dk"
    assert event["error_code"] == "unauthorized"
    assert event["status_code"] == 401


def test_correlation_id_is_attached():
    token = correlation_id_var.set(None)
    try:
        assert _add_correlation_id(None, "info", {"event": "x"}) == {"event": "x"}

        cid = set_correlation_id("op-1")
        assert get_correlation_id() == cid == "op-1"
        assert _add_correlation_id(None, "info", {"event": "x"})["correlation_id"] == "op-1"
    finally:
        correlation_id_var.reset(token)


def test_generated_correlation_ids_are_unique():
    token = correlation_id_var.set(None)
    try:
        assert set_correlation_id() != set_correlation_id()
    finally:
        correlation_id_var.reset(token)
