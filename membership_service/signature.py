import base64
import hashlib
import hmac
import time

from membership_service import config
from membership_service.errors import AuthenticationError

# Timestamps above this are in milliseconds.
_MILLISECOND_THRESHOLD = 10**11


def compute_signature(body: bytes, timestamp: str, secret: str) -> str:
    """Base64 HMAC-SHA256 over ``timestamp + body``, as the gateway signs it."""
    digest = hmac.new(secret.encode(), timestamp.encode() + body, hashlib.sha256).digest()
    return base64.b64encode(digest).decode()


def _check_freshness(timestamp: str, tolerance: int, now: float | None) -> None:
    try:
        sent_at = int(timestamp)
    except ValueError:
        raise AuthenticationError("Invalid timestamp")
    if sent_at > _MILLISECOND_THRESHOLD:
        sent_at //= 1000

    now = time.time() if now is None else now
    if abs(now - sent_at) > tolerance:
        raise AuthenticationError("Stale timestamp")


def verify_webhook_signature(
    body: bytes,
    signature: str | None,
    timestamp: str | None,
    secret: str | None = None,
    tolerance: int | None = None,
    now: float | None = None,
):
    """Raise AuthenticationError unless ``signature`` matches the raw body.

    Runs on the undecoded request bytes, before any JSON parsing. The signed
    timestamp (seconds or milliseconds) must also lie within ``tolerance``
    seconds of ``now``; a tolerance of 0 disables that check.
    """
    if not signature or not timestamp:
        raise AuthenticationError("Missing signature or timestamp")

    secret = secret if secret is not None else config.webhook_secret()
    if not secret:
        # Without a secret nothing can be authenticated.
        raise AuthenticationError("Webhook secret is not configured")

    expected = compute_signature(body, timestamp, secret)
    if not hmac.compare_digest(expected.encode(), signature.encode()):
        raise AuthenticationError("Invalid signature")

    tolerance = tolerance if tolerance is not None else config.webhook_tolerance()
    if tolerance > 0:
        _check_freshness(timestamp, tolerance, now)
