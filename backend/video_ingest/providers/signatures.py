from __future__ import annotations

import hashlib
import hmac
import time
from collections.abc import Callable

from video_ingest.core.errors import ErrorKind, WebhookRejected


def compute_signature(secret: str, timestamp: int, raw_body: bytes) -> str:
    signed = f"{int(timestamp)}.".encode("utf-8") + raw_body
    return hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()


def signature_header(secret: str, raw_body: bytes, *, timestamp: int | None = None) -> str:
    """Build a `t=<unix>,v1=<hex>` header value (used by our encoder callbacks and tests)."""
    ts = int(time.time()) if timestamp is None else int(timestamp)
    return f"t={ts},v1={compute_signature(secret, ts, raw_body)}"


def _parse_header(header: str) -> tuple[int, list[str]]:
    timestamp: int | None = None
    signatures: list[str] = []
    for part in (header or "").split(","):
        key, sep, value = part.strip().partition("=")
        if not sep:
            continue
        if key == "t":
            try:
                timestamp = int(value)
            except ValueError:
                raise WebhookRejected(ErrorKind.MALFORMED, "signature timestamp is not an integer") from None
        elif key == "v1":
            signatures.append(value.strip())
    if timestamp is None or not signatures:
        raise WebhookRejected(ErrorKind.MALFORMED, "signature header missing t= or v1=")
    return timestamp, signatures


def verify_signature(
    header: str | None,
    raw_body: bytes,
    *,
    secret: str,
    tolerance_seconds: int,
    clock: Callable[[], float] = time.time,
) -> int:
    """
    Verify a `t=...,v1=...` HMAC-SHA256 signature over `"{t}.{body}"`.

    Returns the signed timestamp. Raises WebhookRejected with auth-failed on a
    missing header or digest mismatch, malformed on an unparseable header and
    replay when the timestamp is outside the tolerance window.
    """
    if not header:
        raise WebhookRejected(ErrorKind.AUTH_FAILED, "missing signature header")
    timestamp, candidates = _parse_header(header)

    expected = compute_signature(secret, timestamp, raw_body)
    if not any(hmac.compare_digest(expected, c) for c in candidates):
        raise WebhookRejected(ErrorKind.AUTH_FAILED, "signature mismatch")

    # Checked after the digest; unsigned requests learn nothing about the window.
    if abs(int(clock()) - timestamp) > int(tolerance_seconds):
        raise WebhookRejected(ErrorKind.REPLAY, "signature timestamp outside tolerance")
    return timestamp
