from typing import Generator

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import OAuth2PasswordBearer
from sqlalchemy.orm import Session

from machinegate.core.config import get_settings
from machinegate.core.policy import PolicyEngine, RuleCache
from machinegate.core.security import decode_access_token
from machinegate.db.models import Role, User
from machinegate.db.session import SessionLocal

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/auth/login", auto_error=False)


def get_db() -> Generator:
    """Database session dependency."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_current_user(
    db: Session = Depends(get_db),
    token: str = Depends(oauth2_scheme),
) -> User:
    """Get current authenticated user from a JWT bearer token."""
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )

    if token:
        user_id = decode_access_token(token)
        if user_id:
            user = db.query(User).filter(User.id == user_id).first()
            if user and user.is_active:
                return user

    raise credentials_exception


def get_admin_user(
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> User:
    """Require the configured administrator role; rule management is not itself policy-gated."""
    role = db.query(Role).filter(Role.id == current_user.role_id).first() if current_user.role_id else None
    if not role or role.name != get_settings().admin_role_name:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Administrator role required",
        )
    return current_user


def get_rule_cache(request: Request) -> RuleCache:
    """The process-wide rule cache created at startup."""
    cache = getattr(request.app.state, "rule_cache", None)
    if cache is None:
        cache = RuleCache(ttl_seconds=get_settings().rule_cache_ttl_seconds)
        request.app.state.rule_cache = cache
    return cache


def get_policy_engine(
    db: Session = Depends(get_db),
    cache: RuleCache = Depends(get_rule_cache),
) -> PolicyEngine:
    return PolicyEngine(db, cache=cache)
