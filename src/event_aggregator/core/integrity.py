"""
HMAC-SHA256 signing and verification.

Used for two things:
- Authenticating inbound webhook deliveries (``x-hub-signature-256:
  sha256=<hex>`` over the raw request body)
- Carrying the OAuth CSRF state through the provider round trip as
  ``<url-encoded payload>|<hex hmac of decoded payload>``

All comparisons go through timing_safe_compare.
"""
import hashlib
import hmac
import logging
import re
from dataclasses import dataclass
from typing import Optional, Union
from urllib.parse import quote, unquote

logger = logging.getLogger(__name__)

SIGNATURE_PREFIX = "sha256="
HEX = "hex"
PREFIXED_HEX = "sha256=hex"
STATE_SEPARATOR = "|"

_BEARER_RE = re.compile(r"^Bearer\s+(.+)$", re.IGNORECASE)


@dataclass
class HmacVerification:
    """
    Outcome of a signature check.

    Attributes:
        valid: True only when the provided signature matches
        error: Reason for rejection, if any
        computed_signature: Hex digest computed locally, when one was computed
    """
    valid: bool
    error: Optional[str] = None
    computed_signature: Optional[str] = None


@dataclass
class StateTokenResult:
    """Outcome of parsing a state token. payload is set only when valid."""

    valid: bool
    payload: Optional[str] = None


def _to_bytes(value: Union[str, bytes]) -> bytes:
    return value if isinstance(value, bytes) else value.encode("utf-8")


def timing_safe_compare(a: Union[str, bytes], b: Union[str, bytes]) -> bool:
    """
    Compare two values in time independent of where they differ.

    Lengths are public, so a length mismatch returns False straight away.
    Equal-length inputs are XORed byte by byte over the full length and the
    differences accumulated; there is no early exit inside the loop.
    """
    left = _to_bytes(a)
    right = _to_bytes(b)
    if len(left) != len(right):
        return False

    result = 0
    for x, y in zip(left, right):
        result |= x ^ y
    return result == 0


def compute_hmac(payload: Union[str, bytes], secret: str) -> str:
    """Lowercase hex HMAC-SHA256 of payload (UTF-8) keyed with secret."""
    return hmac.new(_to_bytes(secret), _to_bytes(payload), hashlib.sha256).hexdigest()


def compute_hmac_signature(
    payload: Union[str, bytes],
    secret: str,
    encoding: str = PREFIXED_HEX,
) -> str:
    """Sign payload in the requested encoding (``hex`` or ``sha256=hex``)."""
    if encoding not in (HEX, PREFIXED_HEX):
        raise ValueError(f"Unsupported signature encoding: {encoding}")
    digest = compute_hmac(payload, secret)
    return f"{SIGNATURE_PREFIX}{digest}" if encoding == PREFIXED_HEX else digest


def verify(
    payload: Union[str, bytes],
    provided_signature: Optional[str],
    secret: Optional[str],
    encoding: str = PREFIXED_HEX,
) -> HmacVerification:
    """
    Verify a signature over payload.

    Args:
        payload: Signed content; for webhooks, the raw request body
        provided_signature: Signature as received
        secret: Shared application secret
        encoding: ``hex`` or ``sha256=hex``

    Returns:
        HmacVerification; never raises on bad input
    """
    if encoding not in (HEX, PREFIXED_HEX):
        raise ValueError(f"Unsupported signature encoding: {encoding}")

    if not payload:
        return HmacVerification(valid=False, error="Missing payload")

    if not provided_signature:
        return HmacVerification(valid=False, error="Missing signature")

    if not secret:
        return HmacVerification(valid=False, error="Missing secret")

    expected = provided_signature
    if encoding == PREFIXED_HEX:
        if not provided_signature.startswith(SIGNATURE_PREFIX):
            return HmacVerification(
                valid=False,
                error="Invalid signature format: missing 'sha256=' prefix",
            )
        expected = provided_signature[len(SIGNATURE_PREFIX):]

    computed = compute_hmac(payload, secret)
    valid = timing_safe_compare(computed, expected)

    return HmacVerification(
        valid=valid,
        error=None if valid else "Signature does not match",
        computed_signature=computed,
    )


def verify_webhook_signature(
    raw_body: Union[str, bytes],
    signature_header: Optional[str],
    app_secret: Optional[str],
) -> bool:
    """Check an ``x-hub-signature-256`` header against the raw body."""
    result = verify(raw_body, signature_header, app_secret, PREFIXED_HEX)
    if not result.valid:
        logger.debug(f"Webhook signature rejected: {result.error}")
    return result.valid


def format_state_token(payload: str, secret: str) -> str:
    """
    Build ``<url-encoded payload>|<hex hmac>``.

    The HMAC covers the decoded payload, not its encoded form.
    """
    return f"{quote(payload, safe='')}{STATE_SEPARATOR}{compute_hmac(payload, secret)}"


def parse_and_verify_state_token(
    token: Optional[str],
    secret: Optional[str],
) -> StateTokenResult:
    """
    Split a state token on its first ``|``, decode and verify it.

    Fails closed on a missing half, a bad encoding or a signature mismatch.
    """
    if not token or not secret:
        return StateTokenResult(valid=False)

    encoded, separator, signature = token.partition(STATE_SEPARATOR)
    if not separator or not encoded or not signature:
        return StateTokenResult(valid=False)

    try:
        payload = unquote(encoded, errors="strict")
    except UnicodeDecodeError:
        return StateTokenResult(valid=False)

    if not verify(payload, signature, secret, HEX).valid:
        return StateTokenResult(valid=False)

    return StateTokenResult(valid=True, payload=payload)


def extract_bearer_token(auth_header: Optional[str]) -> Optional[str]:
    """Pull the token out of an ``Authorization: Bearer <token>`` header."""
    if not auth_header:
        return None
    match = _BEARER_RE.match(auth_header)
    return match.group(1) if match else None


def verify_bearer_token(token: Optional[str], expected_token: Optional[str]) -> bool:
    """Constant-time check of a bearer token against the expected value."""
    if not token or not expected_token:
        return False
    return timing_safe_compare(token, expected_token)
