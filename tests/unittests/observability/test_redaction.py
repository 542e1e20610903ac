import pytest

from rosterauth.observability.redaction import (
    redact_code,
    redact_email,
    sanitize_payload,
)


@pytest.mark.parametrize(
    "value, expected",
    [
        ("jane@school.edu", "j***e@school.edu"),
        ("jo@school.edu", "j*@school.edu"),
        ("j@school.edu", "*@school.edu"),
        ("not-an-email", "not-an-email"),
        (None, None),
    ],
)
def test_redact_email(value, expected):
    assert redact_email(value) == expected


def test_redact_code_keeps_only_a_prefix():
    assert redact_code("0.AXkAbcdefgh") == "0.AXkA…"
    assert redact_code("short") == "[REDACTED]"
    assert redact_code(None) is None


def test_sanitize_payload_masks_token_material():
    payload = {
        "grant_type": "authorization_code",
        "code": "0.AXkAbcdefgh",
        "code_verifier": "v" * 43,
        "client_secret": "s3cret",
        "email": "jane@school.edu",
        "scope": None,
    }

    sanitized = sanitize_payload(payload)

    assert sanitized == {
        "grant_type": "authorization_code",
        "code": "0.AXkA…",
        "code_verifier": "[REDACTED]",
        "client_secret": "[REDACTED]",
        "email": "j***e@school.edu",
    }
    assert payload["client_secret"] == "s3cret"
