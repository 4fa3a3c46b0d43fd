"""
Password hashing, JWT issuance/verification and the current-user dependencies.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional

import redis.asyncio as redis
from fastapi import Depends, Request
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt
from passlib.context import CryptContext
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import Settings
from app.core.database import get_db
from app.core.exceptions import AuthError, PermissionDeniedError
from app.core.redis_client import get_redis
from app.models.user import User

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/v1/auth/login", auto_error=False)


def get_settings_dep(request: Request) -> Settings:
    return request.app.state.settings


def get_password_hash(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(plain_password: str, hashed_password: str) -> bool:
    return pwd_context.verify(plain_password, hashed_password)


def _encode(data: dict, expires_delta: timedelta, token_type: str, settings: Settings) -> str:
    now = datetime.now(timezone.utc)
    payload = {**data, "type": token_type, "iat": now, "exp": now + expires_delta}
    return jwt.encode(payload, settings.SECRET_KEY, algorithm=settings.ALGORITHM)


def create_access_token(data: dict, settings: Settings, expires_delta: Optional[timedelta] = None) -> str:
    expires_delta = expires_delta or timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)
    return _encode(data, expires_delta, "access", settings)


def create_refresh_token(data: dict, settings: Settings) -> str:
    return _encode(data, timedelta(days=settings.REFRESH_TOKEN_EXPIRE_DAYS), "refresh", settings)


def verify_token(token: str, token_type: str, settings: Settings) -> dict:
    """Decode a token and check its type; raises AuthError when invalid or expired."""
    try:
        payload = jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
    except JWTError:
        raise AuthError("Invalid or expired token")
    if payload.get("type") != token_type or not payload.get("sub"):
        raise AuthError("Invalid or expired token")
    return payload


async def user_from_token(token: str, db: AsyncSession, redis_client: redis.Redis, settings: Settings) -> User:
    payload = verify_token(token, "access", settings)
    try:
        user_id = int(payload["sub"])
    except (TypeError, ValueError):
        raise AuthError("Invalid or expired token")

    # Logout removes the stored token
    stored = await redis_client.get(f"access_token:{user_id}")
    if stored != token:
        raise AuthError("Token has been revoked")

    result = await db.execute(select(User).where(User.id == user_id))
    user = result.scalar_one_or_none()
    if not user:
        raise AuthError("Invalid or expired token")
    return user


async def get_current_user(
    token: Optional[str] = Depends(oauth2_scheme),
    db: AsyncSession = Depends(get_db),
    redis_client: redis.Redis = Depends(get_redis),
    settings: Settings = Depends(get_settings_dep),
) -> User:
    if not token:
        raise AuthError()
    return await user_from_token(token, db, redis_client, settings)


async def get_current_active_user(current_user: User = Depends(get_current_user)) -> User:
    if not current_user.is_active:
        raise AuthError("Inactive user")
    return current_user


ADMIN_ROLES = ("admin", "root-admin")


async def get_current_admin(current_user: User = Depends(get_current_active_user)) -> User:
    if current_user.role not in ADMIN_ROLES:
        raise PermissionDeniedError("Admin access required")
    return current_user


async def get_current_root_admin(current_user: User = Depends(get_current_active_user)) -> User:
    """Only the root admin may promote other accounts"""
    if current_user.role != "root-admin":
        raise PermissionDeniedError("Root admin access required")
    return current_user
