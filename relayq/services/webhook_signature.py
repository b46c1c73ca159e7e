"""HMAC verification for provider callbacks posted to /v1/webhooks.

A deployment that sets ``webhook_signing_secret`` expects every status or
inbound-reply callback to carry ``x-relayq-signature: sha256=<hex>``, the
HMAC-SHA256 of the raw request body. The relay in front of the provider
(or a test client) produces it with :func:`compute_signature`.
"""

from __future__ import annotations

from dataclasses import dataclass
import hashlib
import hmac
import re


SIGNATURE_HEADER = "x-relayq-signature"

_SIGNATURE_RE = re.compile(r"^\s*sha256\s*=\s*([0-9a-f]{64})\s*$", re.IGNORECASE)


@dataclass(frozen=True)
class ParsedSignature:
    algorithm: str
    digest_hex: str


@dataclass(frozen=True)
class VerificationResult:
    ok: bool
    # Logged and counted on rejection; never includes the secret or digest.
    reason: str


def _digest(raw_body: bytes, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()


def parse_signature(header_value: str) -> ParsedSignature:
    match = _SIGNATURE_RE.match(header_value)
    if match is None:
        raise ValueError("invalid_signature_format")
    return ParsedSignature(algorithm="sha256", digest_hex=match.group(1).lower())


def compute_signature(raw_body: bytes, secret: str) -> str:
    return f"sha256={_digest(raw_body, secret)}"


def verify_signature(raw_body: bytes, header_value: str | None, secret: str | None) -> VerificationResult:
    if not secret:
        return VerificationResult(True, "unsigned_allowed")
    if not header_value:
        return VerificationResult(False, "missing_signature")
    try:
        parsed = parse_signature(header_value)
    except ValueError as exc:
        return VerificationResult(False, str(exc))
    if not hmac.compare_digest(_digest(raw_body, secret), parsed.digest_hex):
        return VerificationResult(False, "signature_mismatch")
    return VerificationResult(True, "ok")
