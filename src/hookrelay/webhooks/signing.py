"""HMAC-SHA256 signatures for webhook payloads.

The signed material is ``"{timestamp}.{payload}"``. Binding the timestamp
into the signature lets receivers reject captured requests replayed outside
their tolerance window. Signature and timestamp travel as separate headers.

Receivers verify by recomputing the HMAC over the raw request body:

    ```python
    from hookrelay.webhooks import verify_request

    ok = verify_request(
        secret=my_secret,
        payload=request.body,
        timestamp=request.headers["X-Hookrelay-Timestamp"],
        signature=request.headers["X-Hookrelay-Signature"],
        tolerance_seconds=300,
    )
    ```
"""

from __future__ import annotations

import hashlib
import hmac
import secrets
import time

SIGNATURE_HEADER = "X-Hookrelay-Signature"
TIMESTAMP_HEADER = "X-Hookrelay-Timestamp"
DELIVERY_ID_HEADER = "X-Hookrelay-Delivery-Id"
EVENT_HEADER = "X-Hookrelay-Event"
ATTEMPT_HEADER = "X-Hookrelay-Attempt"

SECRET_PREFIX = "whsec_"


def generate_secret() -> str:
    """Generate a high-entropy endpoint secret (256 bits)."""
    return f"{SECRET_PREFIX}{secrets.token_urlsafe(32)}"


def _as_bytes(value: str | bytes) -> bytes:
    return value if isinstance(value, bytes) else value.encode("utf-8")


def sign(secret: str, timestamp: int | str, payload: str | bytes) -> str:
    """Compute the signature for a payload.

    Args:
        secret: Shared endpoint secret.
        timestamp: Unix seconds at signing time.
        payload: Raw request body.

    Returns:
        Hex-encoded HMAC-SHA256 of ``"{timestamp}.{payload}"``.
    """
    message = f"{timestamp}.".encode() + _as_bytes(payload)
    return hmac.new(
        key=secret.encode("utf-8"),
        msg=message,
        digestmod=hashlib.sha256,
    ).hexdigest()


def verify(secret: str, timestamp: int | str, payload: str | bytes, signature: str) -> bool:
    """Verify a signature in constant time.

    Returns:
        True if signature is valid, False otherwise.
    """
    expected = sign(secret, timestamp, payload)
    return hmac.compare_digest(expected, signature.strip().lower())


def verify_request(
    secret: str,
    payload: str | bytes,
    timestamp: int | str,
    signature: str,
    tolerance_seconds: float = 300,
    now: float | None = None,
) -> bool:
    """Receiver-side check: valid signature and timestamp within tolerance.

    Args:
        secret: Shared endpoint secret.
        payload: Raw request body as received.
        timestamp: Value of the timestamp header.
        signature: Value of the signature header.
        tolerance_seconds: Maximum accepted clock distance, chosen by the receiver.
        now: Current Unix time (defaults to time.time()).

    Returns:
        True if the request is authentic and fresh.
    """
    try:
        sent_at = int(timestamp)
    except (TypeError, ValueError):
        return False

    current = time.time() if now is None else now
    if abs(current - sent_at) > tolerance_seconds:
        return False
    return verify(secret, sent_at, payload, signature)


def signature_headers(
    secret: str,
    payload: str | bytes,
    timestamp: int | None = None,
) -> dict[str, str]:
    """Build the signature and timestamp headers for a payload.

    Args:
        secret: Secret to sign with.
        payload: Raw request body.
        timestamp: Unix seconds (defaults to now).

    Returns:
        Header dict with signature and timestamp.
    """
    ts = int(time.time()) if timestamp is None else timestamp
    return {
        SIGNATURE_HEADER: sign(secret, ts, payload),
        TIMESTAMP_HEADER: str(ts),
    }
