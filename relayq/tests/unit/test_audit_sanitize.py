from __future__ import annotations

from relayq.services.audit import REDACTED, sanitize_metadata


def test_recipients_are_masked_and_bodies_redacted() -> None:
    cleaned = sanitize_metadata(
        {
            "channel": "sms",
            "destination": "+15551234567",
            "body": "STOP",
            "attempts": [{"email": "jane@example.com", "Authorization": "Basic abc"}],
        }
    )
    assert cleaned == {
        "channel": "sms",
        "destination": "+1555***4567",
        "body": REDACTED,
        "attempts": [{"email": "j***@example.com", "Authorization": REDACTED}],
    }


def test_non_string_recipient_values_are_left_alone() -> None:
    assert sanitize_metadata({"to": None, "count": 3}) == {"to": None, "count": 3}
