from __future__ import annotations

import hashlib
import hmac

from relayq.services.webhook_signature import compute_signature, parse_signature, verify_signature
from relayq.services.webhooks import normalize_provider_status


def test_compute_signature_matches_hmac() -> None:
    secret = "supersecret"
    payload = b"MessageSid=SM1&MessageStatus=delivered"
    expected = hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()

    assert compute_signature(payload, secret) == f"sha256={expected}"
    assert parse_signature(compute_signature(payload, secret)).digest_hex == expected


def test_verify_signature_reasons() -> None:
    body = b'{"status":"delivered"}'
    good = compute_signature(body, "s3cret")

    assert verify_signature(body, None, None).reason == "unsigned_allowed"
    assert verify_signature(body, None, "s3cret").reason == "missing_signature"
    assert verify_signature(body, "md5=abc", "s3cret").reason == "invalid_signature_format"
    assert verify_signature(body, "sha256=" + "z" * 64, "s3cret").reason == "invalid_signature_format"
    assert verify_signature(body + b" ", good, "s3cret").reason == "signature_mismatch"

    result = verify_signature(body, good.upper().replace("SHA256", "sha256"), "s3cret")
    assert result.ok is True
    assert result.reason == "ok"


def test_normalize_provider_status() -> None:
    assert normalize_provider_status("email.delivered") == "delivered"
    assert normalize_provider_status(" Undelivered ") == "undelivered"
    assert normalize_provider_status(None) == ""
