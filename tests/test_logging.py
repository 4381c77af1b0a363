from unittest.mock import MagicMock

from sessionguard.logging import (
    _add_correlation_id,
    _redact_secrets,
    correlation_id_var,
    get_correlation_id,
    log_security_event,
    set_correlation_id,
)


def test_bearer_material_is_redacted():
    event = _redact_secrets(
        None,
        "info",
        {
            "event": "token_refreshed",
            "refresh_token": "abcdefghijklmnop",
            "password": "pw",
            "credentials": {"email": "a@example.com"},
            "session_id": "session-1",
        },
    )

    assert event["refresh_token"] == "ab***op"
    assert event["password"] == "pw"
    assert event["credentials"] == "***"
    assert event["session_id"] == "session-1"


def test_correlation_id_added_when_set():
    token = correlation_id_var.set(None)
    try:
        assert "correlation_id" not in _add_correlation_id(None, "info", {})

        cid = set_correlation_id()

        assert get_correlation_id() == cid
        assert _add_correlation_id(None, "info", {})["correlation_id"] == cid
        assert set_correlation_id("req-42") == "req-42"
    finally:
        correlation_id_var.reset(token)


def test_security_event_is_a_tagged_warning():
    logger = MagicMock()

    log_security_event("revoked_token_presented", logger=logger, token_id="jti-1")

    logger.warning.assert_called_once_with(
        "revoked_token_presented", security_event=True, token_id="jti-1"
    )
