from festguard.logging import (
    REDACTED,
    _redact_pii,
    get_correlation_id,
    sanitize_error_message,
    sanitize_response_data,
    set_correlation_id,
)


def test_correlation_id_is_generated_or_reused():
    generated = set_correlation_id()
    assert generated and get_correlation_id() == generated
    assert set_correlation_id("req-42") == "req-42"
    assert get_correlation_id() == "req-42"


def test_error_message_hides_internals():
    assert "tickets" not in sanitize_error_message("SELECT * FROM tickets")
    assert "/var/log" not in sanitize_error_message("cannot open /var/log/app.log")
    assert "hunter2" not in sanitize_error_message("bad login password=hunter2")
    assert "cache:6379" not in sanitize_error_message("dial redis://cache:6379 failed")


def test_error_message_defaults():
    assert sanitize_error_message("") == "An error occurred"
    assert len(sanitize_error_message("x" * 900)) == 500


def test_response_data_redaction_is_recursive():
    data = {
        "user": "ada",
        "Password": "pw",
        "nested": [{"api-key": "k", "card_number": "4111"}, {"seat": "A1"}],
    }
    assert sanitize_response_data(data) == {
        "user": "ada",
        "Password": REDACTED,
        "nested": [{"api-key": REDACTED, "card_number": REDACTED}, {"seat": "A1"}],
    }


def test_log_processor_masks_credentials():
    event = _redact_pii(None, "info", {"event": "login", "refresh_token": "abcdefghij", "ip": "1.2.3.4"})
    assert event["refresh_token"] == "ab***ij"
    assert event["ip"] == "1.2.3.4"
