# widgetsmith/core/auth.py
"""
Bearer token verification. Tokens are issued by the external auth service;
the `sub` claim names the owner of every tool the caller touches.
"""
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt

from widgetsmith.core.config import settings

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="auth/login")


def create_access_token(owner_id: str, expires_delta: Optional[timedelta] = None) -> str:
    """Mints a token for `owner_id`. Used by tests and local development."""
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES))
    return jwt.encode({"sub": owner_id, "exp": expire}, settings.SECRET_KEY, algorithm=settings.ALGORITHM)


def decode_owner_id(token: Optional[str]) -> Optional[str]:
    """Returns the owner id of a valid token, None otherwise. Expiry is checked by jwt.decode."""
    if not token:
        return None
    try:
        payload = jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
    except JWTError:
        return None
    owner_id = payload.get("sub")
    return str(owner_id) if owner_id else None


async def get_current_owner(token: str = Depends(oauth2_scheme)) -> str:
    """Validate JWT and return the owner id."""
    owner_id = decode_owner_id(token)
    if owner_id is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return owner_id
