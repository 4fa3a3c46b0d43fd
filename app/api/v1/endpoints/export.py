import csv
import io
import time

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse, Response
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import and_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from app.core.database import get_db
from app.core.exceptions import StorageError
from app.core.security import get_current_active_user
from app.models.note import Note
from app.models.user import User
from app.schemas.note import NoteCreate, NoteImport
from app.services.audit import record_audit
from app.services.cache import ResponseCache, get_cache
from app.services.notes import replace_note_tags

router = APIRouter()

CSV_COLUMNS = ["ID", "Title", "Content", "Category", "Pinned", "Created At", "Updated At"]


async def _active_notes(db: AsyncSession, owner_id: int):
    result = await db.execute(
        select(Note)
        .options(selectinload(Note.tags), selectinload(Note.category))
        .where(and_(Note.owner_id == owner_id, Note.deleted_at.is_(None)))
        .order_by(Note.updated_at.desc(), Note.id.desc())
    )
    return result.scalars().all()


def _category_name(note: Note):
    if note.category is None or note.category.deleted_at is not None:
        return None
    return note.category.name


def _attachment_header(extension: str) -> dict:
    return {"Content-Disposition": f"attachment; filename=notes-export-{int(time.time() * 1000)}.{extension}"}


@router.get("/notes/json")
async def export_json(
    current_user: User = Depends(get_current_active_user),
    db: AsyncSession = Depends(get_db),
):
    notes = await _active_notes(db, current_user.id)
    data = [
        {
            "id": note.id,
            "title": note.title,
            "content": note.content,
            "is_pinned": bool(note.is_pinned),
            "created_at": note.created_at.isoformat() if note.created_at else None,
            "updated_at": note.updated_at.isoformat() if note.updated_at else None,
            "category": _category_name(note),
            "tags": [tag.name for tag in note.tags],
        }
        for note in notes
    ]
    return JSONResponse(content=data, headers=_attachment_header("json"))


@router.get("/notes/csv")
async def export_csv(
    current_user: User = Depends(get_current_active_user),
    db: AsyncSession = Depends(get_db),
):
    notes = await _active_notes(db, current_user.id)
    buffer = io.StringIO()
    writer = csv.writer(buffer)
    writer.writerow(CSV_COLUMNS)
    for note in notes:
        writer.writerow([
            note.id,
            note.title,
            note.content or "",
            _category_name(note) or "",
            "true" if note.is_pinned else "false",
            note.created_at.isoformat() if note.created_at else "",
            note.updated_at.isoformat() if note.updated_at else "",
        ])
    return Response(content=buffer.getvalue(), media_type="text/csv", headers=_attachment_header("csv"))


@router.post("/notes/import")
async def import_json(
    payload: NoteImport,
    request: Request,
    current_user: User = Depends(get_current_active_user),
    db: AsyncSession = Depends(get_db),
    cache: ResponseCache = Depends(get_cache),
):
    """Import notes in one transaction; invalid entries are skipped and reported"""
    valid = []
    errors = []
    for index, item in enumerate(payload.notes):
        try:
            valid.append(NoteCreate(
                title=(item.title or "").strip() or "Imported Note",
                content=item.content or "",
                is_pinned=item.is_pinned,
                tags=item.tags or [],
            ))
        except PydanticValidationError:
            errors.append(f"Failed to import note {index + 1}: {item.title or 'Untitled'}")

    try:
        for data in valid:
            note = Note(owner_id=current_user.id, title=data.title, content=data.content, is_pinned=data.is_pinned)
            db.add(note)
            await db.flush()
            if data.tags:
                await replace_note_tags(db, note.id, current_user.id, data.tags)
        await db.commit()
    except SQLAlchemyError as exc:
        await db.rollback()
        raise StorageError("Failed to import notes") from exc

    imported = len(valid)
    if imported:
        await cache.invalidate_users(current_user.id)
        await record_audit(db, request, current_user.id, "IMPORT", "note", None, {"imported": imported})

    body = {"success": True, "message": f"Successfully imported {imported} notes", "imported": imported}
    if errors:
        body["errors"] = errors
    return body
