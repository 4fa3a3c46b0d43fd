from fastapi import APIRouter, Depends, Query
from sqlalchemy import and_, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database import get_db
from app.core.security import get_current_active_user
from app.models.user import User
from app.schemas.user import UserResponse

router = APIRouter()


@router.get("/me")
async def get_current_user_info(current_user: User = Depends(get_current_active_user)):
    """Get current user information"""
    return {"success": True, "data": UserResponse.model_validate(current_user).model_dump(mode="json")}


@router.get("/search")
async def search_users(
    query: str = Query(..., description="Search text in username or email"),
    current_user: User = Depends(get_current_active_user),
    db: AsyncSession = Depends(get_db),
):
    """Find people to share notes with"""
    if len(query.strip()) < 2:
        return {"success": True, "data": []}

    search_term = f"%{query.strip().lower()}%"
    result = await db.execute(
        select(User).where(
            and_(
                User.is_active.is_(True),
                User.id != current_user.id,
                or_(func.lower(User.username).like(search_term), func.lower(User.email).like(search_term)),
            )
        ).order_by(User.username).limit(10)
    )
    users = result.scalars().all()
    return {"success": True, "data": [UserResponse.model_validate(user).model_dump(mode="json") for user in users]}
