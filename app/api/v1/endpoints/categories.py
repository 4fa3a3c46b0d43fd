from fastapi import APIRouter, Depends, Request
from sqlalchemy import and_, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database import get_db
from app.core.exceptions import NotFoundError
from app.core.security import get_current_active_user
from app.models.category import Category
from app.models.note import Note
from app.models.user import User
from app.schemas.category import CategoryCreate, CategoryResponse, CategoryUpdate
from app.services import trash
from app.services.audit import record_audit
from app.services.cache import ResponseCache, get_cache
from app.services.storage import LocalFileStorage, get_storage

router = APIRouter()


async def _categories_with_counts(db: AsyncSession, owner_id: int, trashed: bool) -> list:
    state = Category.deleted_at.is_not(None) if trashed else Category.deleted_at.is_(None)
    result = await db.execute(
        select(Category, func.count(Note.id))
        .outerjoin(Note, and_(Note.category_id == Category.id, Note.deleted_at.is_(None)))
        .where(and_(Category.owner_id == owner_id, state))
        .group_by(Category.id)
        .order_by(Category.name)
    )
    return [
        CategoryResponse(
            id=category.id,
            name=category.name,
            color=category.color,
            note_count=count,
            created_at=category.created_at,
            deleted_at=category.deleted_at,
        ).model_dump(mode="json")
        for category, count in result.all()
    ]


async def _get_active_category(db: AsyncSession, category_id: int, owner_id: int) -> Category:
    result = await db.execute(
        select(Category).where(
            and_(Category.id == category_id, Category.owner_id == owner_id, Category.deleted_at.is_(None))
        )
    )
    category = result.scalar_one_or_none()
    if not category:
        raise NotFoundError("Category not found")
    return category


@router.get("/")
async def get_categories(
    request: Request,
    current_user: User = Depends(get_current_active_user),
    db: AsyncSession = Depends(get_db),
    cache: ResponseCache = Depends(get_cache),
):
    """Active categories with the number of active notes in each"""
    path = cache.request_path(request)
    cached = await cache.get(current_user.id, path)
    if cached is not None:
        return cached

    body = {"success": True, "data": await _categories_with_counts(db, current_user.id, trashed=False)}
    await cache.set(current_user.id, path, body)
    return body


@router.get("/trash")
async def get_category_trash(
    current_user: User = Depends(get_current_active_user),
    db: AsyncSession = Depends(get_db),
):
    return {"success": True, "data": await _categories_with_counts(db, current_user.id, trashed=True)}


@router.post("/", status_code=201)
async def create_category(
    category_in: CategoryCreate,
    request: Request,
    current_user: User = Depends(get_current_active_user),
    db: AsyncSession = Depends(get_db),
    cache: ResponseCache = Depends(get_cache),
):
    category = Category(owner_id=current_user.id, name=category_in.name.strip(), color=category_in.color)
    db.add(category)
    await db.commit()
    await db.refresh(category)

    await cache.invalidate_users(current_user.id)
    await record_audit(db, request, current_user.id, "CREATE", "category", category.id, category_in.model_dump())
    return {"success": True, "data": CategoryResponse.model_validate(category).model_dump(mode="json")}


@router.put("/{category_id}")
async def update_category(
    category_id: int,
    category_in: CategoryUpdate,
    request: Request,
    current_user: User = Depends(get_current_active_user),
    db: AsyncSession = Depends(get_db),
    cache: ResponseCache = Depends(get_cache),
):
    category = await _get_active_category(db, category_id, current_user.id)
    changes = category_in.model_dump(exclude_unset=True, exclude_none=True)
    if "name" in changes:
        changes["name"] = changes["name"].strip()
    for field, value in changes.items():
        setattr(category, field, value)
    await db.commit()
    await db.refresh(category)

    await cache.invalidate_users(current_user.id)
    await record_audit(db, request, current_user.id, "UPDATE", "category", category_id, changes)
    return {"success": True, "data": CategoryResponse.model_validate(category).model_dump(mode="json")}


@router.delete("/{category_id}")
async def delete_category(
    category_id: int,
    request: Request,
    current_user: User = Depends(get_current_active_user),
    db: AsyncSession = Depends(get_db),
    cache: ResponseCache = Depends(get_cache),
):
    """Move a category to the trash; its notes keep their reference"""
    await trash.soft_delete(db, trash.TrashableEntity.CATEGORY, category_id, current_user.id)
    await cache.invalidate_users(current_user.id)
    await record_audit(db, request, current_user.id, "DELETE", "category", category_id)
    return {"success": True, "message": "Category moved to trash"}


@router.post("/{category_id}/restore")
async def restore_category(
    category_id: int,
    request: Request,
    current_user: User = Depends(get_current_active_user),
    db: AsyncSession = Depends(get_db),
    cache: ResponseCache = Depends(get_cache),
):
    await trash.restore(db, trash.TrashableEntity.CATEGORY, category_id, current_user.id)
    await cache.invalidate_users(current_user.id)
    await record_audit(db, request, current_user.id, "RESTORE", "category", category_id)
    return {"success": True, "message": "Category restored"}


@router.delete("/{category_id}/permanent")
async def purge_category(
    category_id: int,
    request: Request,
    current_user: User = Depends(get_current_active_user),
    db: AsyncSession = Depends(get_db),
    cache: ResponseCache = Depends(get_cache),
    storage: LocalFileStorage = Depends(get_storage),
):
    await trash.purge(db, trash.TrashableEntity.CATEGORY, category_id, current_user.id, storage)
    await cache.invalidate_users(current_user.id)
    await record_audit(db, request, current_user.id, "PURGE", "category", category_id)
    return {"success": True, "message": "Category permanently deleted"}
