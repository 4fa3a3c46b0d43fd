"""
On-demand usage statistics for a single user (weekly summary, monthly analytics).
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List

from sqlalchemy import and_, case, distinct, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import NotFoundError
from app.models.attachment import Attachment
from app.models.audit_log import AuditLog
from app.models.category import Category
from app.models.note import Note
from app.models.note_share import NoteShare
from app.models.note_tag import note_tags
from app.models.tag import Tag
from app.models.user import User

TOP_N = 5


async def _get_user(db: AsyncSession, user_id: int) -> User:
    result = await db.execute(select(User).where(User.id == user_id))
    user = result.scalar_one_or_none()
    if not user:
        raise NotFoundError("User not found")
    return user


async def _count(db: AsyncSession, stmt) -> int:
    return (await db.execute(stmt)).scalar_one() or 0


async def top_categories(db: AsyncSession, user_id: int) -> List[Dict[str, Any]]:
    note_count = func.count(Note.id).label("note_count")
    result = await db.execute(
        select(Category.name, Category.color, note_count)
        .outerjoin(Note, and_(Note.category_id == Category.id, Note.deleted_at.is_(None)))
        .where(and_(Category.owner_id == user_id, Category.deleted_at.is_(None)))
        .group_by(Category.id, Category.name, Category.color)
        .order_by(note_count.desc(), Category.name)
        .limit(TOP_N)
    )
    return [{"name": name, "color": color, "note_count": count} for name, color, count in result.all()]


async def top_tags(db: AsyncSession, user_id: int) -> List[Dict[str, Any]]:
    usage_count = func.count(note_tags.c.note_id).label("usage_count")
    result = await db.execute(
        select(Tag.name, usage_count)
        .outerjoin(note_tags, note_tags.c.tag_id == Tag.id)
        .where(Tag.owner_id == user_id)
        .group_by(Tag.id, Tag.name)
        .order_by(usage_count.desc(), Tag.name)
        .limit(TOP_N)
    )
    return [{"name": name, "usage_count": count} for name, count in result.all()]


async def weekly_summary(db: AsyncSession, user_id: int) -> Dict[str, Any]:
    """Counts over the user's whole workspace plus notes created in the last 7 days."""
    user = await _get_user(db, user_id)
    now = datetime.now(timezone.utc)
    week_ago = now - timedelta(days=7)

    owned = Note.owner_id == user_id
    statistics = {
        "notes_created_this_week": await _count(
            db, select(func.count(Note.id)).where(and_(owned, Note.created_at >= week_ago))
        ),
        "total_active_notes": await _count(
            db, select(func.count(Note.id)).where(and_(owned, Note.deleted_at.is_(None)))
        ),
        "notes_in_trash": await _count(
            db, select(func.count(Note.id)).where(and_(owned, Note.deleted_at.is_not(None)))
        ),
        "total_categories": await _count(
            db,
            select(func.count(Category.id)).where(
                and_(Category.owner_id == user_id, Category.deleted_at.is_(None))
            ),
        ),
        "total_tags": await _count(db, select(func.count(Tag.id)).where(Tag.owner_id == user_id)),
        "total_attachments": await _count(
            db, select(func.count(Attachment.id)).join(Note, Note.id == Attachment.note_id).where(owned)
        ),
        "users_shared_with": await _count(
            db,
            select(func.count(distinct(NoteShare.shared_with)))
            .join(Note, Note.id == NoteShare.note_id)
            .where(owned),
        ),
    }

    return {
        "user": {"id": user.id, "username": user.username, "email": user.email},
        "period": {"from": week_ago.isoformat(), "to": now.isoformat()},
        "statistics": statistics,
        "top_categories": await top_categories(db, user_id),
        "top_tags": await top_tags(db, user_id),
    }


async def monthly_analytics(db: AsyncSession, user_id: int) -> Dict[str, Any]:
    """Activity over the last 30 days: active notes created, pinning, length, actions and a daily trend."""
    user = await _get_user(db, user_id)
    now = datetime.now(timezone.utc)
    month_ago = now - timedelta(days=30)

    recent = and_(Note.owner_id == user_id, Note.created_at >= month_ago, Note.deleted_at.is_(None))
    created, avg_length, pinned = (
        await db.execute(
            select(
                func.count(Note.id),
                func.avg(func.length(Note.content)),
                func.sum(case((Note.is_pinned.is_(True), 1), else_=0)),
            ).where(recent)
        )
    ).one()
    total_actions = await _count(
        db,
        select(func.count(AuditLog.id)).where(and_(AuditLog.user_id == user_id, AuditLog.created_at >= month_ago)),
    )

    day = func.date(Note.created_at).label("day")
    trend = await db.execute(select(day, func.count(Note.id)).where(recent).group_by(day).order_by(day))

    return {
        "user": {"id": user.id, "username": user.username, "email": user.email},
        "period": {"from": month_ago.isoformat(), "to": now.isoformat()},
        "statistics": {
            "notes_created_this_month": created or 0,
            "avg_note_length": round(float(avg_length), 1) if avg_length is not None else None,
            "pinned_notes": int(pinned or 0),
            "total_actions": total_actions,
        },
        # sqlite returns the day as text, postgresql as a date
        "trend": [{"date": str(day_value), "notes_created": count} for day_value, count in trend.all()],
    }
