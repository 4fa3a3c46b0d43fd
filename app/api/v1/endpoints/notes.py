import json
from typing import List, Optional

from fastapi import APIRouter, Depends, File, Form, Request, UploadFile
from fastapi.responses import FileResponse
from sqlalchemy import and_, delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import Settings
from app.core.database import get_db
from app.core.exceptions import NotFoundError, ValidationError
from app.core.security import get_current_active_user, get_settings_dep
from app.models.attachment import Attachment
from app.models.user import User
from app.schemas.note import NoteCreate, NoteUpdate
from app.services import trash
from app.services.audit import record_audit
from app.services.cache import ResponseCache, get_cache
from app.services.notes import NOTE_ALIAS, NoteService, get_note_service, note_to_response
from app.services.notifications import NotificationHub, get_hub
from app.services.query import QueryComposer
from app.services.sharing import AccessLevel, resolve_access
from app.services.storage import LocalFileStorage, get_storage

router = APIRouter()


def parse_tags(raw: Optional[str]) -> Optional[List[str]]:
    """Tags arrive as a JSON array or a comma-separated string."""
    if raw is None:
        return None
    raw = raw.strip()
    if raw.startswith("["):
        try:
            tags = json.loads(raw)
        except ValueError:
            raise ValidationError(details=[{"field": "tags", "message": "Invalid JSON array"}])
        if not isinstance(tags, list):
            raise ValidationError(details=[{"field": "tags", "message": "Must be a list"}])
        return [str(tag) for tag in tags]
    return [tag for tag in raw.split(",") if tag.strip()]


def _composer(request: Request, settings: Settings) -> QueryComposer:
    return QueryComposer(NOTE_ALIAS, request.query_params, settings.DEFAULT_PAGE_SIZE, settings.MAX_PAGE_SIZE)


def _permission(access) -> Optional[str]:
    return None if access.is_owner else access.permission.value


async def _listing(request, current_user, service, cache, settings, trashed):
    composer = _composer(request, settings)
    path = cache.request_path(request)
    cached = await cache.get(current_user.id, path)
    if cached is not None:
        return cached

    if trashed:
        notes, total = await service.list_trash(current_user.id, composer)
    else:
        notes, total = await service.list_notes(current_user.id, composer)
    body = {
        "success": True,
        "data": [note_to_response(note) for note in notes],
        "pagination": composer.pagination_meta(total),
    }
    await cache.set(current_user.id, path, body)
    return body


@router.get("/")
async def get_notes(
    request: Request,
    current_user: User = Depends(get_current_active_user),
    service: NoteService = Depends(get_note_service),
    cache: ResponseCache = Depends(get_cache),
    settings: Settings = Depends(get_settings_dep),
):
    """List the caller's notes (search, category_id, is_pinned, date_from, date_to, sort, order, page, limit)"""
    return await _listing(request, current_user, service, cache, settings, trashed=False)


@router.get("/trash")
async def get_trash(
    request: Request,
    current_user: User = Depends(get_current_active_user),
    service: NoteService = Depends(get_note_service),
    cache: ResponseCache = Depends(get_cache),
    settings: Settings = Depends(get_settings_dep),
):
    """List the caller's soft-deleted notes"""
    return await _listing(request, current_user, service, cache, settings, trashed=True)


@router.get("/tags")
async def get_all_tags(
    current_user: User = Depends(get_current_active_user),
    service: NoteService = Depends(get_note_service),
):
    """Tag names used on the caller's own notes"""
    return {"success": True, "data": await service.list_tags(current_user.id)}


@router.get("/{note_id}")
async def get_note(
    note_id: int,
    current_user: User = Depends(get_current_active_user),
    service: NoteService = Depends(get_note_service),
):
    note, access = await service.get(note_id, current_user.id)
    return {"success": True, "data": note_to_response(note, _permission(access))}


@router.post("/", status_code=201)
async def create_note(
    request: Request,
    title: str = Form(...),
    content: Optional[str] = Form(None),
    category_id: Optional[int] = Form(None),
    is_pinned: bool = Form(False),
    tags: Optional[str] = Form(None),
    files: Optional[List[UploadFile]] = File(None),
    current_user: User = Depends(get_current_active_user),
    service: NoteService = Depends(get_note_service),
    db: AsyncSession = Depends(get_db),
):
    """Create a note with its tags and up to five attachments"""
    data = NoteCreate(
        title=title,
        content=content,
        category_id=category_id,
        is_pinned=is_pinned,
        tags=parse_tags(tags) or [],
    )
    note = await service.create(current_user.id, data, files or [])
    await record_audit(db, request, current_user.id, "CREATE", "note", note.id, {"title": note.title})
    return {"success": True, "data": note_to_response(note)}


@router.put("/{note_id}")
async def update_note(
    note_id: int,
    request: Request,
    title: Optional[str] = Form(None),
    content: Optional[str] = Form(None),
    category_id: Optional[int] = Form(None),
    is_pinned: Optional[bool] = Form(None),
    tags: Optional[str] = Form(None),
    files: Optional[List[UploadFile]] = File(None),
    current_user: User = Depends(get_current_active_user),
    service: NoteService = Depends(get_note_service),
    hub: NotificationHub = Depends(get_hub),
    db: AsyncSession = Depends(get_db),
):
    """Update a note; omitted fields are left as they are and ``tags=[]`` clears the tag set"""
    form = await request.form()
    fields = {"title": title, "content": content, "category_id": category_id, "is_pinned": is_pinned}
    # Only fields present in the form count as set
    provided = {name: value for name, value in fields.items() if name in form}
    if "tags" in form:
        provided["tags"] = parse_tags(tags) or []
    data = NoteUpdate(**provided)

    note, access = await service.update(note_id, current_user.id, data, files or [])
    await record_audit(db, request, current_user.id, "UPDATE", "note", note_id, data.model_dump(exclude_unset=True))
    await hub.note_updated(note_id, {"note_id": note_id, "title": note.title, "updated_by": current_user.username})
    return {"success": True, "data": note_to_response(note, _permission(access))}


@router.delete("/{note_id}")
async def delete_note(
    note_id: int,
    request: Request,
    current_user: User = Depends(get_current_active_user),
    db: AsyncSession = Depends(get_db),
    cache: ResponseCache = Depends(get_cache),
):
    """Move a note to the trash"""
    access = await resolve_access(db, note_id, current_user.id, AccessLevel.EDIT)
    await trash.soft_delete(db, trash.TrashableEntity.NOTE, note_id, access.owner_id, actor_id=current_user.id)
    await cache.invalidate_users(current_user.id, access.owner_id)
    await record_audit(db, request, current_user.id, "DELETE", "note", note_id)
    return {"success": True, "message": "Note moved to trash"}


@router.post("/{note_id}/restore")
async def restore_note(
    note_id: int,
    request: Request,
    current_user: User = Depends(get_current_active_user),
    db: AsyncSession = Depends(get_db),
    cache: ResponseCache = Depends(get_cache),
):
    await trash.restore(db, trash.TrashableEntity.NOTE, note_id, current_user.id)
    await cache.invalidate_users(current_user.id)
    await record_audit(db, request, current_user.id, "RESTORE", "note", note_id)
    return {"success": True, "message": "Note restored"}


@router.delete("/{note_id}/permanent")
async def purge_note(
    note_id: int,
    request: Request,
    current_user: User = Depends(get_current_active_user),
    db: AsyncSession = Depends(get_db),
    cache: ResponseCache = Depends(get_cache),
    storage: LocalFileStorage = Depends(get_storage),
):
    """Permanently delete a trashed note and its attachment files"""
    await trash.purge(db, trash.TrashableEntity.NOTE, note_id, current_user.id, storage)
    await cache.invalidate_users(current_user.id)
    await record_audit(db, request, current_user.id, "PURGE", "note", note_id)
    return {"success": True, "message": "Note permanently deleted"}


async def _get_attachment(db: AsyncSession, note_id: int, attachment_id: int) -> Attachment:
    result = await db.execute(
        select(Attachment).where(and_(Attachment.id == attachment_id, Attachment.note_id == note_id))
    )
    attachment = result.scalar_one_or_none()
    if not attachment:
        raise NotFoundError("Attachment not found")
    return attachment


@router.get("/{note_id}/attachments/{attachment_id}")
async def download_attachment(
    note_id: int,
    attachment_id: int,
    current_user: User = Depends(get_current_active_user),
    db: AsyncSession = Depends(get_db),
    storage: LocalFileStorage = Depends(get_storage),
):
    await resolve_access(db, note_id, current_user.id, AccessLevel.READ)
    attachment = await _get_attachment(db, note_id, attachment_id)
    path = storage.resolve(attachment.file_path)
    if not path.is_file():
        raise NotFoundError("File not found")
    return FileResponse(path, media_type=attachment.mime_type, filename=attachment.original_filename)


@router.delete("/{note_id}/attachments/{attachment_id}")
async def delete_attachment(
    note_id: int,
    attachment_id: int,
    request: Request,
    current_user: User = Depends(get_current_active_user),
    db: AsyncSession = Depends(get_db),
    cache: ResponseCache = Depends(get_cache),
    storage: LocalFileStorage = Depends(get_storage),
):
    """Remove the attachment row, then its file"""
    access = await resolve_access(db, note_id, current_user.id, AccessLevel.EDIT)
    attachment = await _get_attachment(db, note_id, attachment_id)
    file_path = attachment.file_path

    await db.execute(delete(Attachment).where(Attachment.id == attachment.id))
    await db.commit()
    storage.delete_quietly([file_path])

    await cache.invalidate_users(current_user.id, access.owner_id)
    await record_audit(db, request, current_user.id, "DELETE", "attachment", attachment_id)
    return {"success": True, "message": "Attachment deleted"}
