import redis.asyncio as redis
from fastapi import APIRouter, Body, Depends, Request
from fastapi.security import OAuth2PasswordRequestForm
from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import Settings
from app.core.database import get_db
from app.core.exceptions import AuthError, ConflictError
from app.core.redis_client import get_redis
from app.core.security import (
    create_access_token,
    create_refresh_token,
    get_current_active_user,
    get_current_root_admin,
    get_current_user,
    get_password_hash,
    get_settings_dep,
    verify_password,
    verify_token,
)
from app.models.user import User
from app.schemas.auth import Token
from app.schemas.user import UserCreate, UserResponse
from app.services.audit import record_audit

router = APIRouter()


async def _store_tokens(redis_client: redis.Redis, user: User, settings: Settings, access_token: str, refresh_token: str = None):
    await redis_client.setex(
        f"access_token:{user.id}",
        settings.ACCESS_TOKEN_EXPIRE_MINUTES * 60,
        access_token,
    )
    if refresh_token:
        await redis_client.setex(
            f"refresh_token:{user.id}",
            settings.REFRESH_TOKEN_EXPIRE_DAYS * 24 * 60 * 60,
            refresh_token,
        )


async def _create_user(db: AsyncSession, user: UserCreate, role: str = "user") -> User:
    email = user.email.lower()
    result = await db.execute(select(User).where(or_(User.username == user.username, User.email == email)))
    existing = result.scalars().first()
    if existing:
        field = "username" if existing.username == user.username else "email"
        raise ConflictError(f"{field.capitalize()} already registered", details=[{"field": field, "message": "Already in use"}])

    db_user = User(
        username=user.username,
        email=email,
        hashed_password=get_password_hash(user.password),
        role=role,
    )
    db.add(db_user)
    await db.commit()
    await db.refresh(db_user)
    return db_user


@router.post("/register", status_code=201)
async def register(user: UserCreate, request: Request, db: AsyncSession = Depends(get_db)):
    """Register a new user"""
    db_user = await _create_user(db, user)
    await record_audit(db, request, db_user.id, "REGISTER", "user", db_user.id)
    return {"success": True, "data": UserResponse.model_validate(db_user).model_dump(mode="json")}


@router.post("/admin", status_code=201)
async def create_admin(
    user: UserCreate,
    request: Request,
    current_user: User = Depends(get_current_root_admin),
    db: AsyncSession = Depends(get_db),
):
    """Create an admin account (root admin only)"""
    db_user = await _create_user(db, user, role="admin")
    await record_audit(db, request, current_user.id, "CREATE_ADMIN", "user", db_user.id)
    return {
        "success": True,
        "message": "Admin user created successfully",
        "data": UserResponse.model_validate(db_user).model_dump(mode="json"),
    }


@router.post("/login", response_model=Token)
async def login(
    form_data: OAuth2PasswordRequestForm = Depends(),
    db: AsyncSession = Depends(get_db),
    redis_client: redis.Redis = Depends(get_redis),
    settings: Settings = Depends(get_settings_dep),
):
    """Login with username (or email) and password; returns JWT tokens"""
    identifier = form_data.username.strip()
    result = await db.execute(
        select(User).where(or_(User.username == identifier, User.email == identifier.lower()))
    )
    user = result.scalar_one_or_none()

    if not user or not verify_password(form_data.password, user.hashed_password):
        raise AuthError("Incorrect username or password")
    if not user.is_active:
        raise AuthError("Inactive user")

    claims = {"sub": str(user.id), "role": user.role}
    access_token = create_access_token(claims, settings)
    refresh_token = create_refresh_token(claims, settings)
    await _store_tokens(redis_client, user, settings, access_token, refresh_token)

    return {
        "access_token": access_token,
        "refresh_token": refresh_token,
        "token_type": "bearer",
    }


@router.post("/refresh", response_model=Token)
async def refresh_token(
    refresh_token: str = Body(..., embed=True),
    db: AsyncSession = Depends(get_db),
    redis_client: redis.Redis = Depends(get_redis),
    settings: Settings = Depends(get_settings_dep),
):
    """Exchange a refresh token for a new access token"""
    payload = verify_token(refresh_token, "refresh", settings)
    result = await db.execute(select(User).where(User.id == int(payload["sub"])))
    user = result.scalar_one_or_none()
    if not user or not user.is_active:
        raise AuthError("Invalid token")

    stored_refresh_token = await redis_client.get(f"refresh_token:{user.id}")
    if not stored_refresh_token or stored_refresh_token != refresh_token:
        raise AuthError("Invalid refresh token")

    access_token = create_access_token({"sub": str(user.id), "role": user.role}, settings)
    await _store_tokens(redis_client, user, settings, access_token)

    return {
        "access_token": access_token,
        "refresh_token": refresh_token,
        "token_type": "bearer",
    }


@router.post("/logout")
async def logout(
    current_user: User = Depends(get_current_user),
    redis_client: redis.Redis = Depends(get_redis),
):
    """Logout user by removing tokens from Redis"""
    await redis_client.delete(f"access_token:{current_user.id}", f"refresh_token:{current_user.id}")
    return {"success": True, "message": "Successfully logged out"}


@router.get("/me")
async def me(current_user: User = Depends(get_current_active_user)):
    return {"success": True, "data": UserResponse.model_validate(current_user).model_dump(mode="json")}
