from coursegate.logging import (
    _add_correlation_id,
    _redact_pii,
    sanitize_error_message,
    set_correlation_id,
)


def test_credentials_and_emails_are_masked():
    event = {
        "event": "login_failed",
        "password": "CorrectHorse9!",
        "refresh_token": "abcdefghijkl",
        "email_hash": "f" * 64,
        "message": "no account for ravi.kumar@ncu.edu",
        "organization_id": "org-1",
    }
    redacted = _redact_pii(None, "info", dict(event))
    assert redacted["password"] == "Co***9!"
    assert redacted["refresh_token"] == "ab***kl"
    assert redacted["email_hash"] == "f" * 64
    assert redacted["message"] == "no account for ra***@ncu.edu"
    assert redacted["organization_id"] == "org-1"
    assert redacted["event"] == "login_failed"


def test_short_secret_fully_masked():
    assert _redact_pii(None, "info", {"secret": "abc"})["secret"] == "***"


def test_correlation_id_bound_to_events():
    cid = set_correlation_id("req-42")
    assert cid == "req-42"
    assert _add_correlation_id(None, "info", {})["correlation_id"] == "req-42"


def test_sanitize_error_message():
    message = "failed: SELECT * FROM payment WHERE id = 1 token=abc123 at /var/lib/app.py"
    cleaned = sanitize_error_message(message)
    assert "SELECT" not in cleaned and "abc123" not in cleaned and "/var/lib" not in cleaned
    assert sanitize_error_message("") == "invalid input"
    assert len(sanitize_error_message("x" * 900)) == 500
