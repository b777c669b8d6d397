import time
import pytest
from fastapi import HTTPException
from ecosystem_analytics.security.hmac import sign_body, verify_hmac


def test_roundtrip_signature_verifies():
    body = b'{"event_id": "e-1"}'
    verify_hmac(sign_body(body, "k"), body, "k")


@pytest.mark.parametrize("header, status", [
    ("garbage", 400),
    ("notanint,abc", 400),
])
def test_malformed_header(header, status):
    with pytest.raises(HTTPException) as ei:
        verify_hmac(header, b"{}", "k")
    assert ei.value.status_code == status


def test_tampered_body_rejected():
    sig = sign_body(b"{}", "k")
    with pytest.raises(HTTPException) as ei:
        verify_hmac(sig, b'{"x": 1}', "k")
    assert ei.value.status_code == 401


def test_stale_timestamp_rejected():
    sig = sign_body(b"{}", "k", ts=int(time.time()) - 3600)
    with pytest.raises(HTTPException) as ei:
        verify_hmac(sig, b"{}", "k", tolerance_seconds=300)
    assert ei.value.detail == "signature timestamp expired"
