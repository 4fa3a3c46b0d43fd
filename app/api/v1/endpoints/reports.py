from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database import get_db
from app.core.exceptions import ValidationError
from app.core.security import get_current_admin
from app.models.audit_log import AuditLog
from app.models.user import User
from app.services import reports

router = APIRouter()


@router.get("/audit")
async def get_audit_log_report(
    start_date: Optional[datetime] = Query(None),
    end_date: Optional[datetime] = Query(None),
    limit: int = Query(500, ge=1, le=5000),
    current_user: User = Depends(get_current_admin),
    db: AsyncSession = Depends(get_db),
):
    """Audit entries, newest first, optionally within [start_date, end_date] (admin only)"""
    if start_date and end_date and start_date > end_date:
        raise ValidationError(details=[{"field": "start_date", "message": "Must not be after end_date"}])

    query = (
        select(AuditLog, User.username)
        .outerjoin(User, User.id == AuditLog.user_id)
        .order_by(AuditLog.created_at.desc(), AuditLog.id.desc())
        .limit(limit)
    )
    if start_date:
        query = query.where(AuditLog.created_at >= start_date)
    if end_date:
        query = query.where(AuditLog.created_at <= end_date)

    result = await db.execute(query)
    entries = [
        {
            "id": entry.id,
            "user_id": entry.user_id,
            "username": username,
            "action": entry.action,
            "entity_type": entry.entity_type,
            "entity_id": entry.entity_id,
            "ip_address": entry.ip_address,
            "user_agent": entry.user_agent,
            "created_at": entry.created_at.isoformat() if entry.created_at else None,
        }
        for entry, username in result.all()
    ]
    return {"success": True, "count": len(entries), "data": entries}


@router.get("/weekly/{user_id}")
async def get_weekly_report_for_user(
    user_id: int,
    current_user: User = Depends(get_current_admin),
    db: AsyncSession = Depends(get_db),
):
    """Weekly summary for one user (admin only)"""
    return {"success": True, "data": await reports.weekly_summary(db, user_id)}


@router.get("/monthly/{user_id}")
async def get_monthly_report_for_user(
    user_id: int,
    current_user: User = Depends(get_current_admin),
    db: AsyncSession = Depends(get_db),
):
    """Last 30 days of activity for one user (admin only)"""
    return {"success": True, "data": await reports.monthly_analytics(db, user_id)}
