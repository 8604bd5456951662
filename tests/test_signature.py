import base64
import hashlib
import hmac

import pytest

from membership_service.errors import AuthenticationError
from membership_service.signature import compute_signature, verify_webhook_signature

BODY = b'{"type":"PAYMENT_SUCCESS_WEBHOOK"}'
TIMESTAMP = "1700000000"
NOW = 1700000030
SECRET = "whsec_unit"


def test_compute_signature_matches_gateway_format():
    expected = base64.b64encode(
        hmac.new(SECRET.encode(), (TIMESTAMP + BODY.decode()).encode(), hashlib.sha256).digest()
    ).decode()

    assert compute_signature(BODY, TIMESTAMP, SECRET) == expected


def test_valid_signature_passes():
    signature = compute_signature(BODY, TIMESTAMP, SECRET)

    verify_webhook_signature(BODY, signature, TIMESTAMP, secret=SECRET, now=NOW)


@pytest.mark.parametrize("signature,timestamp", [(None, TIMESTAMP), ("abc", None), ("", "")])
def test_missing_headers_rejected(signature, timestamp):
    with pytest.raises(AuthenticationError, match="Missing signature or timestamp"):
        verify_webhook_signature(BODY, signature, timestamp, secret=SECRET)


def test_tampered_body_rejected():
    signature = compute_signature(BODY, TIMESTAMP, SECRET)

    with pytest.raises(AuthenticationError, match="Invalid signature"):
        verify_webhook_signature(BODY + b" ", signature, TIMESTAMP, secret=SECRET)


def test_replayed_signature_with_new_timestamp_rejected():
    signature = compute_signature(BODY, TIMESTAMP, SECRET)

    with pytest.raises(AuthenticationError):
        verify_webhook_signature(BODY, signature, "1700000099", secret=SECRET)


def test_unconfigured_secret_fails_closed(monkeypatch):
    monkeypatch.delenv("CASHFREE_WEBHOOK_SECRET", raising=False)

    with pytest.raises(AuthenticationError, match="not configured"):
        verify_webhook_signature(BODY, "sig", TIMESTAMP)


def test_secret_read_from_environment(monkeypatch):
    monkeypatch.setenv("CASHFREE_WEBHOOK_SECRET", SECRET)

    verify_webhook_signature(BODY, compute_signature(BODY, TIMESTAMP, SECRET), TIMESTAMP, now=NOW)


def test_stale_timestamp_rejected():
    signature = compute_signature(BODY, TIMESTAMP, SECRET)

    with pytest.raises(AuthenticationError, match="Stale timestamp"):
        verify_webhook_signature(BODY, signature, TIMESTAMP, secret=SECRET, now=NOW + 3600)


def test_future_timestamp_rejected():
    signature = compute_signature(BODY, TIMESTAMP, SECRET)

    with pytest.raises(AuthenticationError, match="Stale timestamp"):
        verify_webhook_signature(BODY, signature, TIMESTAMP, secret=SECRET, now=NOW - 3600)


def test_millisecond_timestamp_accepted():
    timestamp = TIMESTAMP + "123"
    signature = compute_signature(BODY, timestamp, SECRET)

    verify_webhook_signature(BODY, signature, timestamp, secret=SECRET, now=NOW)


def test_non_numeric_timestamp_rejected():
    signature = compute_signature(BODY, "yesterday", SECRET)

    with pytest.raises(AuthenticationError, match="Invalid timestamp"):
        verify_webhook_signature(BODY, signature, "yesterday", secret=SECRET, now=NOW)


def test_tolerance_read_from_environment(monkeypatch):
    signature = compute_signature(BODY, TIMESTAMP, SECRET)
    monkeypatch.setenv("WEBHOOK_TOLERANCE_SECONDS", "7200")

    verify_webhook_signature(BODY, signature, TIMESTAMP, secret=SECRET, now=NOW + 3600)

    monkeypatch.setenv("WEBHOOK_TOLERANCE_SECONDS", "0")
    verify_webhook_signature(BODY, signature, TIMESTAMP, secret=SECRET, now=NOW + 10**6)
