"""
Note writes (note row + tag set + attachments) as one atomic unit, plus the
read paths used by the notes endpoints.

Statement order inside a write: access check -> note row -> tag set ->
attachments -> commit. Uploaded files are saved before the transaction
starts and removed again if it does not commit.
"""

import asyncio
import logging
from typing import Iterable, List, Optional, Sequence, Tuple

from fastapi import Depends, UploadFile
from sqlalchemy import and_, delete, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased, selectinload

from app.core.config import Settings
from app.core.database import get_db
from app.core.exceptions import NotFoundError, StorageError, ValidationError
from app.core.security import get_settings_dep
from app.models.attachment import Attachment
from app.models.category import Category
from app.models.note import Note
from app.models.note_tag import note_tags
from app.models.tag import Tag
from app.schemas.note import AttachmentResponse, CategorySummary, NoteCreate, NoteResponse, NoteUpdate
from app.services.cache import ResponseCache, get_cache
from app.services.query import QueryComposer
from app.services.sharing import AccessLevel, NoteAccess, dialect_insert, resolve_access
from app.services.storage import LocalFileStorage, StoredFile, get_storage, validate_uploads

logger = logging.getLogger(__name__)

NOTE_ALIAS = "n"


def normalize_tags(tag_names: Optional[Iterable[str]]) -> List[str]:
    """Strip, lower-case and de-duplicate, keeping first-seen order."""
    seen = []
    for name in tag_names or []:
        name = (name or "").strip().lower()
        if name and name not in seen:
            seen.append(name)
    return seen


async def upsert_tags(db: AsyncSession, owner_id: int, tag_names: Sequence[str]) -> List[int]:
    """Get-or-create each (owner, name) tag with a single atomic upsert per name."""
    insert = dialect_insert(db)
    tag_ids = []
    for name in tag_names:
        stmt = insert(Tag).values(owner_id=owner_id, name=name)
        stmt = stmt.on_conflict_do_update(
            index_elements=[Tag.owner_id, Tag.name],
            set_={"name": stmt.excluded.name},
        ).returning(Tag.id)
        tag_ids.append((await db.execute(stmt)).scalar_one())
    return tag_ids


async def replace_note_tags(db: AsyncSession, note_id: int, owner_id: int, tag_names: Sequence[str]) -> None:
    await db.execute(delete(note_tags).where(note_tags.c.note_id == note_id))
    tag_ids = await upsert_tags(db, owner_id, normalize_tags(tag_names))
    if tag_ids:
        await db.execute(note_tags.insert(), [{"note_id": note_id, "tag_id": tag_id} for tag_id in tag_ids])


async def insert_attachments(db: AsyncSession, note_id: int, stored: Sequence[StoredFile]) -> None:
    db.add_all([
        Attachment(
            note_id=note_id,
            filename=f.filename,
            original_filename=f.original_filename,
            mime_type=f.mime_type,
            file_size=f.file_size,
            file_path=f.file_path,
        )
        for f in stored
    ])
    await db.flush()


def note_to_response(note: Note, permission: Optional[str] = None) -> dict:
    """JSON-ready note; a trashed category is reported as no category."""
    category = None
    if note.category is not None and note.category.deleted_at is None:
        category = CategorySummary.model_validate(note.category)
    return NoteResponse(
        id=note.id,
        title=note.title,
        content=note.content,
        is_pinned=bool(note.is_pinned),
        owner_id=note.owner_id,
        owner_username=note.owner.username if note.owner else None,
        category=category,
        tags=[tag.name for tag in note.tags],
        attachments=[AttachmentResponse.model_validate(a) for a in note.attachments],
        permission=permission,
        created_at=note.created_at,
        updated_at=note.updated_at,
        deleted_at=note.deleted_at,
    ).model_dump(mode="json")


class NoteService:
    """Create/update notes with their tags and attachments, all-or-nothing."""

    def __init__(self, db: AsyncSession, storage: LocalFileStorage, cache: ResponseCache, settings: Settings):
        self.db = db
        self.storage = storage
        self.cache = cache
        self.settings = settings

    async def load(self, note_id: int) -> Note:
        result = await self.db.execute(
            select(Note)
            .options(
                selectinload(Note.tags),
                selectinload(Note.attachments),
                selectinload(Note.category),
                selectinload(Note.owner),
            )
            .where(Note.id == note_id)
            .execution_options(populate_existing=True)
        )
        note = result.scalar_one_or_none()
        if note is None:
            raise NotFoundError("Note not found")
        return note

    async def get(self, note_id: int, user_id: int) -> Tuple[Note, NoteAccess]:
        access = await resolve_access(self.db, note_id, user_id, AccessLevel.READ)
        return await self.load(note_id), access

    async def _check_category(self, owner_id: int, category_id: int) -> None:
        result = await self.db.execute(
            select(Category.id).where(
                and_(Category.id == category_id, Category.owner_id == owner_id, Category.deleted_at.is_(None))
            )
        )
        if result.scalar_one_or_none() is None:
            raise ValidationError(details=[{"field": "category_id", "message": "Category not found"}])

    async def _store_uploads(self, uploads: Sequence[UploadFile]) -> List[StoredFile]:
        stored: List[StoredFile] = []
        try:
            for upload in uploads:
                stored.append(await self.storage.save(upload))
        except OSError as exc:
            self.storage.delete_quietly([f.file_path for f in stored])
            raise StorageError("Could not store uploaded files") from exc
        return stored

    async def _abort(self, stored: Sequence[StoredFile]) -> None:
        await self.db.rollback()
        removed = [f.file_path for f in stored]
        if removed:
            self.storage.delete_quietly(removed)
            logger.info("Rolled back note write; removed %d uploaded file(s)", len(removed))

    async def create(self, owner_id: int, data: NoteCreate, uploads: Sequence[UploadFile] = ()) -> Note:
        validate_uploads(list(uploads), self.settings)
        if data.category_id is not None:
            await self._check_category(owner_id, data.category_id)

        stored = await self._store_uploads(uploads)
        try:
            note = Note(
                owner_id=owner_id,
                title=data.title,
                content=data.content,
                category_id=data.category_id,
                is_pinned=data.is_pinned,
            )
            self.db.add(note)
            await self.db.flush()
            note_id = note.id

            if data.tags:
                await replace_note_tags(self.db, note_id, owner_id, data.tags)
            if stored:
                await insert_attachments(self.db, note_id, stored)
            await self.db.commit()
        except asyncio.CancelledError:
            self.storage.delete_quietly([f.file_path for f in stored])
            raise
        except SQLAlchemyError as exc:
            await self._abort(stored)
            raise StorageError("Failed to create note") from exc
        except Exception:
            await self._abort(stored)
            raise

        logger.info("Note %s created by user %s", note_id, owner_id)
        await self.cache.invalidate_users(owner_id)
        return await self.load(note_id)

    async def update(
        self, note_id: int, editor_id: int, data: NoteUpdate, uploads: Sequence[UploadFile] = ()
    ) -> Tuple[Note, NoteAccess]:
        validate_uploads(list(uploads), self.settings)
        access = await resolve_access(self.db, note_id, editor_id, AccessLevel.EDIT)
        owner_id = access.owner_id

        replace_tags = "tags" in data.model_fields_set
        changes = data.model_dump(exclude_unset=True, exclude={"tags"})
        if changes.get("title", "") is None:
            raise ValidationError(details=[{"field": "title", "message": "Note title is required"}])
        if changes.get("is_pinned", False) is None:
            changes.pop("is_pinned")
        if changes.get("category_id") is not None:
            await self._check_category(owner_id, changes["category_id"])

        stored = await self._store_uploads(uploads)
        try:
            result = await self.db.execute(
                select(Note).where(and_(Note.id == note_id, Note.deleted_at.is_(None)))
            )
            note = result.scalar_one_or_none()
            if note is None:
                raise NotFoundError("Note not found")
            for field, value in changes.items():
                setattr(note, field, value)
            note.updated_at = func.now()
            await self.db.flush()

            if replace_tags:
                await replace_note_tags(self.db, note_id, owner_id, data.tags or [])
            if stored:
                await insert_attachments(self.db, note_id, stored)
            await self.db.commit()
        except asyncio.CancelledError:
            self.storage.delete_quietly([f.file_path for f in stored])
            raise
        except SQLAlchemyError as exc:
            await self._abort(stored)
            raise StorageError("Failed to update note") from exc
        except Exception:
            await self._abort(stored)
            raise

        logger.info("Note %s updated by user %s", note_id, editor_id)
        await self.cache.invalidate_users(editor_id, owner_id)
        return await self.load(note_id), access

    def _listing(self, owner_id: int, trashed: bool):
        n = aliased(Note, name=NOTE_ALIAS)
        state = n.deleted_at.is_not(None) if trashed else n.deleted_at.is_(None)
        scope = and_(n.owner_id == owner_id, state)
        return n, scope

    async def list_notes(self, owner_id: int, composer: QueryComposer, trashed: bool = False) -> Tuple[List[Note], int]:
        """One page of the owner's active (or trashed) notes and the total match count."""
        n, scope = self._listing(owner_id, trashed)

        count_stmt = composer.apply_filters(select(func.count()).select_from(n).where(scope))
        total = (await self.db.execute(count_stmt)).scalar_one()

        stmt = composer.apply(
            select(n)
            .options(
                selectinload(n.tags),
                selectinload(n.attachments),
                selectinload(n.category),
                selectinload(n.owner),
            )
            .where(scope)
        )
        notes = list((await self.db.execute(stmt)).scalars().all())
        return notes, total

    async def list_trash(self, owner_id: int, composer: QueryComposer) -> Tuple[List[Note], int]:
        return await self.list_notes(owner_id, composer, trashed=True)

    async def list_tags(self, owner_id: int) -> List[str]:
        """Tag names in use on the owner's active notes."""
        result = await self.db.execute(
            select(Tag.name)
            .join(note_tags, note_tags.c.tag_id == Tag.id)
            .join(Note, Note.id == note_tags.c.note_id)
            .where(and_(Tag.owner_id == owner_id, Note.deleted_at.is_(None)))
            .distinct()
            .order_by(Tag.name)
        )
        return [row[0] for row in result.all()]


def get_note_service(
    db: AsyncSession = Depends(get_db),
    storage: LocalFileStorage = Depends(get_storage),
    cache: ResponseCache = Depends(get_cache),
    settings: Settings = Depends(get_settings_dep),
) -> NoteService:
    return NoteService(db, storage, cache, settings)
