"""Webhook security utilities.

Provides secret generation and HMAC-SHA256 signing of webhook bodies so
receivers can verify authenticity and detect tampering.

The signature is ``hex(HMAC-SHA256(secret, raw_body))`` computed over the
exact bytes posted, with the secret's UTF-8 encoding as the key.
"""

import base64
import hashlib
import hmac
import secrets
import time

import structlog

logger = structlog.get_logger(__name__)

SIGNATURE_HEADER = "X-Webhook-Signature"
EVENT_HEADER = "X-Webhook-Event"
DELIVERY_ID_HEADER = "X-Webhook-Delivery-Id"
TIMESTAMP_HEADER = "X-Webhook-Timestamp"

USER_AGENT = "OrderHooks-Webhook/1.0"

# Headers a subscription's custom headers may never replace (lowercased)
RESERVED_HEADERS = frozenset(
    {
        SIGNATURE_HEADER.lower(),
        EVENT_HEADER.lower(),
        DELIVERY_ID_HEADER.lower(),
        TIMESTAMP_HEADER.lower(),
        "content-type",
        "content-length",
        "host",
        "user-agent",
    }
)

SECRET_BYTES = 32


def generate_secret(num_bytes: int = SECRET_BYTES) -> str:
    """Generate a new signing secret.

    Args:
        num_bytes: Random bytes to draw; at least 32.

    Returns:
        Base64-encoded secret.
    """
    return base64.b64encode(secrets.token_bytes(max(num_bytes, SECRET_BYTES))).decode("ascii")


def _to_bytes(body: str | bytes) -> bytes:
    return body.encode("utf-8") if isinstance(body, str) else body


def generate_signature(body: str | bytes, secret: str) -> str:
    """Generate the HMAC-SHA256 signature of a request body.

    Args:
        body: Raw request body.
        secret: Subscription secret.

    Returns:
        Hex-encoded signature.
    """
    return hmac.new(
        secret.encode("utf-8"),
        _to_bytes(body),
        hashlib.sha256,
    ).hexdigest()


def verify_signature(body: str | bytes, signature: str, secret: str) -> bool:
    """Verify a signature the way a receiver would.

    Args:
        body: Raw request body as received.
        signature: Value of the signature header.
        secret: Subscription secret.

    Returns:
        True if the signature matches.
    """
    expected = generate_signature(body, secret)

    # Constant-time comparison
    is_valid = hmac.compare_digest(signature, expected)

    if not is_valid:
        logger.warning("webhook_signature_invalid", body_length=len(_to_bytes(body)))

    return is_valid


def create_signature_headers(
    body: str | bytes,
    secret: str,
    *,
    event: str,
    delivery_id: str,
    timestamp: int | None = None,
) -> dict[str, str]:
    """Create the reserved headers for a delivery attempt.

    Args:
        body: Raw request body.
        secret: Subscription secret.
        event: Event wire name.
        delivery_id: Delivery identifier.
        timestamp: Optional Unix timestamp (defaults to current time).

    Returns:
        Dictionary of headers to include in request.
    """
    if timestamp is None:
        timestamp = int(time.time())

    return {
        "Content-Type": "application/json",
        "User-Agent": USER_AGENT,
        SIGNATURE_HEADER: generate_signature(body, secret),
        EVENT_HEADER: event,
        DELIVERY_ID_HEADER: delivery_id,
        TIMESTAMP_HEADER: str(timestamp),
    }


def merge_headers(
    custom_headers: dict[str, str],
    reserved_headers: dict[str, str],
) -> dict[str, str]:
    """Merge subscription headers under the reserved ones.

    Custom headers whose names collide with a reserved header, in any
    letter case, are dropped.

    Args:
        custom_headers: Subscription-configured headers.
        reserved_headers: Signature, identity and content headers.

    Returns:
        Final request headers.
    """
    merged: dict[str, str] = {}
    for name, value in custom_headers.items():
        if name.lower() in RESERVED_HEADERS:
            logger.warning("custom_header_ignored", header=name)
            continue
        merged[name] = value

    merged.update(reserved_headers)
    return merged


def verify_from_headers(
    body: str | bytes,
    headers: dict[str, str],
    secret: str,
) -> bool:
    """Verify webhook signature from request headers.

    Args:
        body: Received raw body.
        headers: Request headers.
        secret: Subscription secret.

    Returns:
        True if signature is valid.

    Raises:
        ValueError: If the signature header is missing.
    """
    lowered = {name.lower(): value for name, value in headers.items()}
    signature = lowered.get(SIGNATURE_HEADER.lower())

    if not signature:
        raise ValueError(f"Missing {SIGNATURE_HEADER} header")

    return verify_signature(body, signature, secret)
