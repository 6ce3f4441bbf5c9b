import hmac
import hashlib
import time
from typing import Dict, Optional


TS_HEADER = "X-Webhook-Ts"
EVENT_HEADER = "X-Webhook-Event"
SIGN_HEADER = "X-Webhook-Sign"


def compute_signature(secret: str, ts: str, event: str, body: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), (ts + event).encode("utf-8") + body, hashlib.sha256).hexdigest()


def sign_webhook(secret: str, event: str, body: bytes, ts: Optional[str] = None) -> Dict[str, str]:
    """Headers a provider (or a test) attaches to a signed webhook delivery."""
    ts_val = ts or str(int(time.time()))
    return {
        TS_HEADER: ts_val,
        EVENT_HEADER: event,
        SIGN_HEADER: compute_signature(secret, ts_val, event, body),
        "Content-Type": "application/json",
    }


def verify_webhook(
    secret: str,
    ts: Optional[str],
    event: Optional[str],
    body: bytes,
    sign: Optional[str],
    tolerance_secs: int = 300,
    now: Optional[float] = None,
) -> bool:
    if not secret or not ts or not event or not sign:
        return False
    try:
        ts_int = int(ts)
    except ValueError:
        return False
    if tolerance_secs and tolerance_secs > 0:
        current = int(now if now is not None else time.time())
        if abs(current - ts_int) > tolerance_secs:
            return False
    expect = compute_signature(secret, ts, event, body)
    return hmac.compare_digest(expect, sign)


__all__ = [
    "TS_HEADER",
    "EVENT_HEADER",
    "SIGN_HEADER",
    "compute_signature",
    "sign_webhook",
    "verify_webhook",
]
