"""Bearer-token auth for the billing API.

Accounts are managed elsewhere; tokens only have to carry the user id (``sub``)
and role.  Admin routes additionally require ``role == "admin"``.
"""

import os
import secrets
import warnings
from datetime import datetime, timedelta, timezone

from dotenv import load_dotenv
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from database.models import User

load_dotenv()

JWT_ALGORITHM = "HS256"
JWT_EXPIRE_HOURS = int(os.getenv("JWT_EXPIRE_HOURS", "24"))


def _load_secret() -> str:
    secret = os.getenv("JWT_SECRET_KEY", "")
    if secret:
        return secret
    if os.getenv("ENVIRONMENT", "").lower() == "production":
        raise RuntimeError("JWT_SECRET_KEY must be set in production!")
    warnings.warn("JWT_SECRET_KEY was not set - tokens die with this process")
    return secrets.token_urlsafe(32)


JWT_SECRET_KEY = _load_secret()

_bearer_scheme = HTTPBearer(auto_error=False)


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


def create_access_token(user_id: str, email: str, role: str) -> str:
    expires = datetime.now(timezone.utc) + timedelta(hours=JWT_EXPIRE_HOURS)
    claims = {"sub": str(user_id), "email": email, "role": role, "exp": expires}
    return jwt.encode(claims, JWT_SECRET_KEY, algorithm=JWT_ALGORITHM)


def _subject(token: str) -> str:
    try:
        claims = jwt.decode(token, JWT_SECRET_KEY, algorithms=[JWT_ALGORITHM])
    except JWTError:
        raise _unauthorized("Invalid or expired token")
    subject = claims.get("sub")
    if not subject:
        raise _unauthorized("Invalid token payload")
    return subject


async def get_current_user(
    credentials: HTTPAuthorizationCredentials | None = Depends(_bearer_scheme),
    db: AsyncSession = Depends(get_db),
) -> User:
    """Resolve the caller from the Bearer token; inactive users are refused."""
    if credentials is None or not credentials.credentials:
        raise _unauthorized("Not authenticated")

    user = await db.get(User, _subject(credentials.credentials))
    if user is None or not user.is_active:
        raise _unauthorized("User not found or inactive")
    return user


async def require_admin(user: User = Depends(get_current_user)) -> User:
    if user.role != "admin":
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin access required",
        )
    return user
