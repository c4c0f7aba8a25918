"""Bearer tokens identifying the signed-in pastebin user (`sub` = user id)."""
from datetime import datetime, timedelta, timezone
from typing import Optional

from jose import JWTError, jwt

from .config import Settings, get_settings


def create_access_token(
    user_id: str,
    expires_minutes: Optional[int] = None,
    settings: Optional[Settings] = None,
) -> str:
    settings = settings or get_settings()
    issued_at = datetime.now(timezone.utc)
    claims = {
        "sub": user_id,
        "iat": issued_at,
        "exp": issued_at + timedelta(minutes=expires_minutes or settings.jwt_expires_minutes),
    }
    return jwt.encode(claims, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def decode_access_token(token: str, settings: Optional[Settings] = None) -> Optional[str]:
    """User id carried by a valid token; None for bad signatures, expiry or a missing subject."""
    settings = settings or get_settings()
    try:
        claims = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError:
        return None
    user_id = claims.get("sub")
    if not isinstance(user_id, str) or not user_id:
        return None
    return user_id
