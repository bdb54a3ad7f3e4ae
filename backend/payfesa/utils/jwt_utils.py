from __future__ import annotations

import time
from typing import Any, Dict, Optional

import jwt
from flask import current_app

ISSUER = "payfesa"
ALGORITHM = "HS256"


def _secret() -> str:
    return current_app.config.get("SECRET_KEY") or "dev-secret"


def create_access_token(user_id: int, ttl_seconds: Optional[int] = None) -> str:
    now = int(time.time())
    ttl = int(ttl_seconds or current_app.config.get("ACCESS_TOKEN_TTL_SECONDS") or 7 * 24 * 3600)
    return jwt.encode(
        {"sub": str(user_id), "iss": ISSUER, "iat": now, "exp": now + ttl, "type": "access"},
        _secret(),
        algorithm=ALGORITHM,
    )


def decode_token(token: str) -> Optional[Dict[str, Any]]:
    """Claims of a valid access token, else None (expired, forged, wrong issuer or type)."""
    try:
        claims = jwt.decode(token, _secret(), algorithms=[ALGORITHM], issuer=ISSUER)
    except jwt.PyJWTError:
        return None
    if claims.get("type") != "access":
        return None
    return claims


def get_bearer_token(auth_header: str) -> Optional[str]:
    scheme, _, token = (auth_header or "").strip().partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def user_id_from_header(auth_header: str) -> Optional[int]:
    token = get_bearer_token(auth_header)
    claims = decode_token(token) if token else None
    if not claims:
        return None
    try:
        return int(claims.get("sub"))
    except (TypeError, ValueError):
        return None
