from __future__ import annotations

from datetime import UTC, datetime, timedelta

from jose import JWTError, jwt

from app.config import get_settings


def create_access_token(user_id: str, organization_ids: list[str]) -> tuple[str, int]:
    settings = get_settings()
    now = datetime.now(UTC)
    ttl = timedelta(minutes=settings.access_token_minutes)
    payload = {
        "sub": str(user_id),
        "type": "access",
        "orgs": list(organization_ids),
        "iat": int(now.timestamp()),
        "exp": int((now + ttl).timestamp()),
    }
    return jwt.encode(payload, settings.app_jwt_secret, algorithm=settings.app_jwt_alg), int(ttl.total_seconds())


def decode_access_token(token: str) -> dict:
    settings = get_settings()
    claims = jwt.decode(token, settings.app_jwt_secret, algorithms=[settings.app_jwt_alg])
    if claims.get("type") != "access":
        raise JWTError("access token required")
    return claims


def is_token_error(exc: Exception) -> bool:
    return isinstance(exc, JWTError)
