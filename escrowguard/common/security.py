from datetime import datetime, timedelta, timezone
from typing import Any

import jwt

from escrowguard.config import settings


def create_access_token(data: dict[str, Any], expires_minutes: int | None = None) -> str:
    now = datetime.now(timezone.utc)
    ttl = expires_minutes or settings.ACCESS_TOKEN_EXPIRE_MINUTES
    payload = {
        **data,
        "iat": now,
        "exp": now + timedelta(minutes=ttl),
        "type": "access",
    }
    return jwt.encode(payload, settings.SECRET_KEY, algorithm=settings.JWT_ALGORITHM)


def decode_token(token: str) -> dict[str, Any]:
    """Decode and verify a token. Raises ValueError when invalid or expired."""
    try:
        return jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.JWT_ALGORITHM])
    except jwt.PyJWTError as e:
        raise ValueError(str(e)) from e
