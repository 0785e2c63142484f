"""Tests for structured log redaction."""

from quoteauth.logging import _redact_pii, truncate_fingerprint


def test_credentials_and_emails_are_masked():
    event = _redact_pii(
        None,
        "info",
        {
            "email": "buyer@example.com",
            "refresh_token": "abcdef123456",
            "fingerprint": "fp-long-value",
        },
    )

    assert event["email"] == "bu***om"
    assert event["refresh_token"] == "ab***56"
    assert event["fingerprint"] == "fp***ue"


def test_row_ids_and_prefixes_pass_through():
    prefix = truncate_fingerprint("f" * 64)
    event = _redact_pii(
        None,
        "error",
        {
            "token_id": "3f1c2a9e-0000-4000-8000-000000000001",
            "previous_token_id": "3f1c2a9e-0000-4000-8000-000000000002",
            "fingerprint_prefix": prefix,
        },
    )

    assert event["token_id"] == "3f1c2a9e-0000-4000-8000-000000000001"
    assert event["previous_token_id"] == "3f1c2a9e-0000-4000-8000-000000000002"
    assert event["fingerprint_prefix"] == prefix
