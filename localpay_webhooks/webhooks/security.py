"""Webhook security utilities.

Provides HMAC signature generation and verification for webhook payloads
to ensure authenticity and prevent tampering.

Signature tokens have the form ``t=<unix-seconds>,v1=<hex-hmac-sha256>``
where the HMAC is computed over ``"<unix-seconds>.<payload>"``.
"""

import hashlib
import hmac
import secrets
import time
from collections.abc import Mapping

import structlog

logger = structlog.get_logger(__name__)

# Header names
SIGNATURE_HEADER = "X-Webhook-Signature"
EVENT_ID_HEADER = "X-Webhook-Id"
EVENT_TYPE_HEADER = "X-Webhook-Event"

SECRET_PREFIX = "whsec_"

# Signature validity window (5 minutes)
SIGNATURE_TOLERANCE_SECONDS = 300


def _to_bytes(payload: bytes | str) -> bytes:
    if isinstance(payload, str):
        return payload.encode("utf-8")
    return payload


def _compute_digest(payload: bytes, secret: str, timestamp: int) -> str:
    signed_payload = f"{timestamp}.".encode() + payload
    return hmac.new(
        secret.encode("utf-8"),
        signed_payload,
        hashlib.sha256,
    ).hexdigest()


def generate_webhook_secret() -> str:
    """Generate a new webhook signing secret.

    Returns:
        ``whsec_`` followed by 32 cryptographically random bytes, hex encoded.
    """
    return f"{SECRET_PREFIX}{secrets.token_hex(32)}"


def generate_signature(
    payload: bytes | str,
    secret: str,
    *,
    timestamp: int | None = None,
) -> str:
    """Generate a signature token for a webhook payload.

    Args:
        payload: Exact payload bytes (str is UTF-8 encoded).
        secret: Webhook secret key.
        timestamp: Optional Unix timestamp (defaults to current time).

    Returns:
        Token string ``t=<timestamp>,v1=<hex digest>``.

    Raises:
        ValueError: If the secret is empty.
    """
    if not secret:
        raise ValueError("Webhook secret must not be empty")

    if timestamp is None:
        timestamp = int(time.time())

    payload_bytes = _to_bytes(payload)
    digest = _compute_digest(payload_bytes, secret, timestamp)

    logger.debug(
        "webhook_signature_generated",
        timestamp=timestamp,
        payload_length=len(payload_bytes),
    )

    return f"t={timestamp},v1={digest}"


def parse_signature(signature: str) -> tuple[int, list[str]] | None:
    """Parse a signature token into its timestamp and v1 digests.

    Args:
        signature: Token as sent in the signature header.

    Returns:
        Tuple of (timestamp, digests), or None if the token is malformed.
    """
    timestamp: int | None = None
    digests: list[str] = []

    for part in signature.split(","):
        key, sep, value = part.strip().partition("=")
        if not sep:
            continue
        if key == "t":
            try:
                timestamp = int(value)
            except ValueError:
                return None
        elif key == "v1" and value:
            digests.append(value)

    if timestamp is None or not digests:
        return None
    return timestamp, digests


def verify_signature(
    payload: bytes | str,
    signature: str,
    secret: str,
    *,
    tolerance_seconds: int = SIGNATURE_TOLERANCE_SECONDS,
    now: int | None = None,
) -> bool:
    """Verify a signature token against a payload.

    Checks both that the timestamp is inside the tolerance window and that
    one of the ``v1`` digests matches. Malformed input never raises.

    Args:
        payload: Received payload bytes (str is UTF-8 encoded).
        signature: Token from the signature header.
        secret: Webhook secret key.
        tolerance_seconds: Maximum allowed clock skew.
        now: Current Unix time (defaults to the system clock).

    Returns:
        True if signature is valid, False otherwise.
    """
    if not secret or not isinstance(signature, str):
        return False

    parsed = parse_signature(signature)
    if parsed is None:
        logger.warning("webhook_signature_malformed")
        return False

    timestamp, digests = parsed
    current_time = int(time.time()) if now is None else now
    age = abs(current_time - timestamp)

    if age > tolerance_seconds:
        logger.warning(
            "webhook_signature_expired",
            timestamp=timestamp,
            age_seconds=age,
            tolerance=tolerance_seconds,
        )
        return False

    try:
        payload_bytes = _to_bytes(payload)
    except UnicodeEncodeError:
        return False

    expected = _compute_digest(payload_bytes, secret, timestamp)

    # Constant-time comparison; evaluate every candidate
    is_valid = False
    for digest in digests:
        if hmac.compare_digest(digest.encode("ascii", "replace"), expected.encode("ascii")):
            is_valid = True

    if not is_valid:
        logger.warning("webhook_signature_invalid", timestamp=timestamp)
    else:
        logger.debug("webhook_signature_verified", timestamp=timestamp)

    return is_valid


def create_signature_headers(
    payload: bytes,
    secret: str,
    *,
    event_id: str,
    event_type: str,
    timestamp: int | None = None,
) -> dict[str, str]:
    """Create the signing headers for a webhook delivery.

    Args:
        payload: Exact payload bytes being sent.
        secret: Webhook secret key.
        event_id: Event identifier.
        event_type: Event type tag.
        timestamp: Optional Unix timestamp (defaults to current time).

    Returns:
        Dictionary of headers to include in request.
    """
    return {
        SIGNATURE_HEADER: generate_signature(payload, secret, timestamp=timestamp),
        EVENT_ID_HEADER: event_id,
        EVENT_TYPE_HEADER: event_type,
    }


def verify_from_headers(
    payload: bytes | str,
    headers: Mapping[str, str],
    secret: str,
    *,
    tolerance_seconds: int = SIGNATURE_TOLERANCE_SECONDS,
) -> bool:
    """Verify a webhook signature from request headers.

    Header lookup is case-insensitive. A missing header means the request
    is untrusted.

    Args:
        payload: Received webhook payload.
        headers: Request headers.
        secret: Webhook secret key.
        tolerance_seconds: Maximum allowed clock skew.

    Returns:
        True if signature is valid.
    """
    signature = None
    wanted = SIGNATURE_HEADER.lower()
    for name, value in headers.items():
        if name.lower() == wanted:
            signature = value
            break

    if not signature:
        logger.warning("webhook_signature_missing")
        return False

    return verify_signature(payload, signature, secret, tolerance_seconds=tolerance_seconds)
