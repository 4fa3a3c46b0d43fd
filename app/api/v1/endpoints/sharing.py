from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database import get_db
from app.core.security import get_current_active_user
from app.models.user import User
from app.schemas.sharing import ShareCreate, ShareResponse, ShareUser
from app.services import sharing
from app.services.audit import record_audit
from app.services.cache import ResponseCache, get_cache
from app.services.notes import note_to_response
from app.services.notifications import NotificationHub, get_hub

router = APIRouter()


def _share_response(share, user: User) -> dict:
    return ShareResponse(
        share_id=share.id,
        user=ShareUser(id=user.id, username=user.username, email=user.email),
        permission=share.permission,
        shared_at=share.created_at,
    ).model_dump(mode="json")


@router.post("/notes/{note_id}/share")
async def share_note(
    note_id: int,
    share_in: ShareCreate,
    request: Request,
    current_user: User = Depends(get_current_active_user),
    db: AsyncSession = Depends(get_db),
    cache: ResponseCache = Depends(get_cache),
    hub: NotificationHub = Depends(get_hub),
):
    """Grant (or change) another user's access to one of your notes"""
    share, recipient, note = await sharing.share_note(
        db, note_id, current_user, share_in.email, sharing.AccessLevel(share_in.permission)
    )
    await cache.invalidate_users(current_user.id, recipient.id)
    await record_audit(
        db, request, current_user.id, "SHARE", "note", note_id,
        {"shared_with": recipient.id, "permission": share.permission},
    )
    await hub.notify_user(recipient.id, {
        "type": "note_shared",
        "note_id": note_id,
        "note_title": note.title,
        "shared_by": current_user.username,
        "permission": share.permission,
    })
    return {"success": True, "message": "Note shared successfully", "data": _share_response(share, recipient)}


@router.get("/notes/{note_id}/users")
async def get_note_users(
    note_id: int,
    current_user: User = Depends(get_current_active_user),
    db: AsyncSession = Depends(get_db),
):
    """Users a note is shared with (owner only)"""
    shares = await sharing.list_grantees(db, note_id, current_user.id)
    return {"success": True, "data": [_share_response(share, share.user) for share in shares]}


@router.get("/shared-with-me")
async def get_shared_with_me(
    current_user: User = Depends(get_current_active_user),
    db: AsyncSession = Depends(get_db),
):
    notes = await sharing.list_shared_with_me(db, current_user.id)
    return {"success": True, "data": [note_to_response(note, permission) for note, permission in notes]}


@router.delete("/{share_id}")
async def remove_share(
    share_id: int,
    request: Request,
    current_user: User = Depends(get_current_active_user),
    db: AsyncSession = Depends(get_db),
    cache: ResponseCache = Depends(get_cache),
):
    """Revoke a grant on one of your notes"""
    share = await sharing.revoke_share(db, share_id, current_user.id)
    await cache.invalidate_users(current_user.id, share.shared_with)
    await record_audit(db, request, current_user.id, "UNSHARE", "note", share.note_id, {"share_id": share_id})
    return {"success": True, "message": "Share removed successfully"}
