import json
import logging
from typing import Any, Optional

from fastapi import Request
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.audit_log import AuditLog

logger = logging.getLogger(__name__)


async def record_audit(
    db: AsyncSession,
    request: Request,
    user_id: Optional[int],
    action: str,
    entity_type: str,
    entity_id: Optional[int] = None,
    new_values: Any = None,
) -> None:
    """Append an audit entry after a successful mutation.

    Runs in its own commit once the mutation has committed; a failure here
    is logged and never fails the request.
    """
    entry = AuditLog(
        user_id=user_id,
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
        new_values=json.dumps(new_values, default=str) if new_values is not None else None,
        ip_address=request.client.host if request.client else None,
        user_agent=(request.headers.get("user-agent") or "")[:500] or None,
    )
    try:
        db.add(entry)
        await db.commit()
        logger.info("Audit log: %s %s by user %s", action, entity_type, user_id)
    except SQLAlchemyError:
        await db.rollback()
        logger.error("Audit log error", exc_info=True)
