from datetime import timedelta
from typing import Optional
from uuid import UUID

from jose import JWTError, jwt

from machinegate.core.config import get_settings
from machinegate.db.base import utcnow


def create_access_token(user_id: UUID, expires_delta: Optional[timedelta] = None) -> str:
    """Create a signed JWT access token for a user."""
    settings = get_settings()
    expire = utcnow() + (expires_delta or timedelta(minutes=settings.access_token_expire_minutes))
    to_encode = {
        "sub": str(user_id),
        "exp": expire,
        "type": "access",
    }
    return jwt.encode(to_encode, settings.secret_key, algorithm=settings.algorithm)


def decode_access_token(token: str) -> Optional[UUID]:
    """Decode and validate a JWT access token. Returns the user id if valid."""
    settings = get_settings()
    try:
        payload = jwt.decode(token, settings.secret_key, algorithms=[settings.algorithm])
    except JWTError:
        return None

    user_id = payload.get("sub")
    if user_id is None or payload.get("type") != "access":
        return None
    try:
        return UUID(user_id)
    except ValueError:
        return None
