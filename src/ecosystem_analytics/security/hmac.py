from __future__ import annotations
import hmac
import hashlib
import time
from fastapi import HTTPException


def _digest(secret: str, ts: int, body: bytes) -> str:
    return hmac.new(secret.encode(), msg=f"{ts}.".encode() + body, digestmod=hashlib.sha256).hexdigest()


def sign_body(body: bytes, secret: str, ts: int | None = None) -> str:
    """Build an X-Signature header value: "<unix ts>,<hex sha256 hmac of '<ts>.' + body>"."""
    ts = int(time.time()) if ts is None else ts
    return f"{ts},{_digest(secret, ts, body)}"


def verify_hmac(signature: str, body: bytes, secret: str, tolerance_seconds: int = 300):
    try:
        ts_str, sig = signature.split(",", 1)
        ts = int(ts_str)
    except Exception:
        raise HTTPException(status_code=400, detail="invalid signature header")
    if abs(time.time() - ts) > tolerance_seconds:
        raise HTTPException(status_code=401, detail="signature timestamp expired")
    if not hmac.compare_digest(_digest(secret, ts, body), sig):
        raise HTTPException(status_code=401, detail="invalid signature")
