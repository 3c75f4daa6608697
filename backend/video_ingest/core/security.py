from __future__ import annotations

import base64
from datetime import datetime, timedelta, timezone
from typing import Any

import jwt
from jwt import InvalidTokenError


def decode_access_token(token: str, secret: str) -> dict[str, Any]:
    """Decode an access token minted by the identity service (HS256, `sub` + `exp` required)."""
    try:
        return jwt.decode(
            token,
            secret,
            algorithms=["HS256"],
            options={"require": ["exp", "sub"]},
        )
    except InvalidTokenError as e:
        raise ValueError("Invalid token") from e


def create_access_token(*, subject: str, ttl_seconds: int, secret: str) -> str:
    now = datetime.now(timezone.utc)
    payload: dict[str, Any] = {
        "sub": subject,
        "exp": now + timedelta(seconds=ttl_seconds),
        "iat": now,
    }
    return jwt.encode(payload, secret, algorithm="HS256")


def sign_playback_token(
    *,
    playback_id: str,
    audience: str,
    key_id: str,
    private_key_b64: str,
    ttl_seconds: int,
) -> str:
    """
    Mint an RS256 playback token for a signed-policy stream.

    audience: "v" (video), "t" (thumbnail), "s" (storyboard).
    The provider hands out the private key as base64-encoded PEM.
    """
    try:
        pem = base64.b64decode(private_key_b64)
    except (ValueError, TypeError) as e:
        raise ValueError("Signing key is not valid base64") from e

    exp = datetime.now(timezone.utc) + timedelta(seconds=int(ttl_seconds))
    payload: dict[str, Any] = {"sub": playback_id, "aud": audience, "exp": exp, "kid": key_id}
    return jwt.encode(payload, pem, algorithm="RS256", headers={"kid": key_id})
