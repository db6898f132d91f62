"""
Webhook signature verification.

The provider sends `openphone-signature: hmac;1;<unix-ms-timestamp>;<base64>`
where the signature is HMAC-SHA256 over "<timestamp>.<raw body>" keyed with
the base64-decoded shared secret.
"""

import base64
import binascii
import hashlib
import hmac
import logging
import time
from enum import Enum
from typing import Optional

from convo_mirror.errors import AuthenticationFailure, Misconfiguration

logger = logging.getLogger(__name__)

SUPPORTED_SCHEME = "hmac"
SUPPORTED_VERSION = "1"


class VerificationResult(str, Enum):
    VALID = "valid"
    MALFORMED_HEADER = "malformed_header"
    UNSUPPORTED_SCHEME = "unsupported_scheme"
    MISSING_SECRET = "missing_secret"
    SIGNATURE_MISMATCH = "signature_mismatch"


def decode_secret(secret: Optional[str]) -> Optional[bytes]:
    """Decode the base64 transport encoding of the secret, None if unusable."""
    if not secret:
        return None
    try:
        key = base64.b64decode(secret, validate=True)
    except (binascii.Error, ValueError):
        logger.error("WEBHOOK_SECRET is not valid base64")
        return None
    return key or None


def signing_input(timestamp: str, body: bytes) -> bytes:
    # The body must be the bytes received on the wire, never a re-serialization
    return timestamp.encode("ascii") + b"." + body


def compute_signature(secret: str, timestamp: str, body: bytes) -> str:
    """
    Compute the base64 HMAC-SHA256 signature the provider would send.

    Args:
        secret: Base64-encoded shared secret
        timestamp: Unix milliseconds as a decimal string
        body: Raw request body bytes

    Returns:
        Base64-encoded signature
    """
    key = decode_secret(secret)
    if key is None:
        raise ValueError("secret must be non-empty base64")
    digest = hmac.new(key, signing_input(timestamp, body), hashlib.sha256).digest()
    return base64.b64encode(digest).decode("ascii")


def _decode_signature(signature: str) -> Optional[bytes]:
    try:
        raw = signature.encode("ascii")
        decoded = base64.b64decode(raw, validate=True)
    except (UnicodeEncodeError, binascii.Error, ValueError):
        return None
    # Reject non-canonical encodings so every distinct header maps to distinct bytes
    if not decoded or base64.b64encode(decoded) != raw:
        return None
    return decoded


def verify_signature(
    header: Optional[str],
    body: bytes,
    secret: Optional[str],
    tolerance_seconds: Optional[int] = None,
    now: Optional[float] = None,
) -> VerificationResult:
    """
    Verify a provider signature header against the raw request body.

    Args:
        header: Value of the signature header (may be None)
        body: Raw request body bytes
        secret: Base64-encoded shared secret from configuration
        tolerance_seconds: Optional replay window around the header timestamp
        now: Current unix time in seconds (defaults to time.time())

    Returns:
        VerificationResult describing the outcome
    """
    if not header:
        return VerificationResult.MALFORMED_HEADER

    parts = header.split(";")
    if len(parts) != 4:
        logger.debug(f"Signature header has {len(parts)} fields, expected 4")
        return VerificationResult.MALFORMED_HEADER

    scheme, version, timestamp, signature = parts
    if scheme != SUPPORTED_SCHEME or version != SUPPORTED_VERSION:
        logger.debug(f"Unsupported signature scheme: {scheme};{version}")
        return VerificationResult.UNSUPPORTED_SCHEME

    if not timestamp.isascii() or not timestamp.isdigit():
        return VerificationResult.MALFORMED_HEADER

    provided = _decode_signature(signature)
    if provided is None:
        return VerificationResult.MALFORMED_HEADER

    key = decode_secret(secret)
    if key is None:
        return VerificationResult.MISSING_SECRET

    expected = hmac.new(key, signing_input(timestamp, body), hashlib.sha256).digest()

    # Use constant-time comparison to prevent timing attacks
    if not hmac.compare_digest(expected, provided):
        return VerificationResult.SIGNATURE_MISMATCH

    if tolerance_seconds is not None:
        current = time.time() if now is None else now
        if abs(current - int(timestamp) / 1000) > tolerance_seconds:
            logger.warning(f"Signature timestamp outside tolerance: {timestamp}")
            return VerificationResult.SIGNATURE_MISMATCH

    return VerificationResult.VALID


def require_valid_signature(
    header: Optional[str],
    body: bytes,
    secret: Optional[str],
    tolerance_seconds: Optional[int] = None,
) -> None:
    """
    Raise unless the request is authentic.

    Raises:
        Misconfiguration: the secret is not provisioned
        AuthenticationFailure: any other non-VALID result; the message
            carries the category for logging only
    """
    result = verify_signature(header, body, secret, tolerance_seconds=tolerance_seconds)
    if result == VerificationResult.MISSING_SECRET:
        raise Misconfiguration("webhook secret is not provisioned")
    if result != VerificationResult.VALID:
        raise AuthenticationFailure(result.value)
