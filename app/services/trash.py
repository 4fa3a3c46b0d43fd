"""
Soft-delete lifecycle: Active -> Trashed -> Active (restore) or Removed (purge).

Transitions are owner-scoped and only apply from the expected source state;
anything else reports NotFoundError without revealing whether the row exists.
"""

import enum
import logging
from typing import List, Optional

from sqlalchemy import and_, delete, func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import NotFoundError, StorageError
from app.models.attachment import Attachment
from app.models.category import Category
from app.models.note import Note
from app.models.note_share import NoteShare
from app.models.note_tag import note_tags
from app.services.storage import LocalFileStorage

logger = logging.getLogger(__name__)


class TrashableEntity(str, enum.Enum):
    NOTE = "note"
    CATEGORY = "category"


# Closed set of models the lifecycle may touch.
_MODELS = {
    TrashableEntity.NOTE: Note,
    TrashableEntity.CATEGORY: Category,
}


def _model(entity: TrashableEntity):
    return _MODELS[TrashableEntity(entity)]


def _not_found(entity: TrashableEntity) -> NotFoundError:
    return NotFoundError(f"{TrashableEntity(entity).value.capitalize()} not found")


async def soft_delete(
    db: AsyncSession, entity: TrashableEntity, entity_id: int, owner_id: int, actor_id: Optional[int] = None
) -> None:
    """Move an active row to the trash. ``actor_id`` defaults to the owner."""
    model = _model(entity)
    result = await db.execute(
        update(model)
        .where(and_(model.id == entity_id, model.owner_id == owner_id, model.deleted_at.is_(None)))
        .values(deleted_at=func.now(), deleted_by=actor_id or owner_id)
    )
    if result.rowcount == 0:
        await db.rollback()
        raise _not_found(entity)
    await db.commit()


async def restore(db: AsyncSession, entity: TrashableEntity, entity_id: int, owner_id: int) -> None:
    model = _model(entity)
    result = await db.execute(
        update(model)
        .where(and_(model.id == entity_id, model.owner_id == owner_id, model.deleted_at.is_not(None)))
        .values(deleted_at=None, deleted_by=None)
    )
    if result.rowcount == 0:
        await db.rollback()
        raise _not_found(entity)
    await db.commit()


async def purge(
    db: AsyncSession,
    entity: TrashableEntity,
    entity_id: int,
    owner_id: int,
    storage: LocalFileStorage,
) -> List[str]:
    """Irreversibly remove a trashed row and its dependents.

    For notes the attachment paths are read first, the rows are deleted and
    committed, and only then are the files removed. File failures are logged
    and returned, never raised.
    """
    entity = TrashableEntity(entity)
    model = _model(entity)
    owned_trashed = and_(model.id == entity_id, model.owner_id == owner_id, model.deleted_at.is_not(None))

    found = await db.execute(select(model.id).where(owned_trashed))
    if found.scalar_one_or_none() is None:
        raise _not_found(entity)

    file_paths: List[str] = []
    try:
        if entity is TrashableEntity.NOTE:
            paths = await db.execute(select(Attachment.file_path).where(Attachment.note_id == entity_id))
            file_paths = list(paths.scalars().all())
            await db.execute(delete(Attachment).where(Attachment.note_id == entity_id))
            await db.execute(delete(note_tags).where(note_tags.c.note_id == entity_id))
            await db.execute(delete(NoteShare).where(NoteShare.note_id == entity_id))
        else:
            await db.execute(
                update(Note)
                .where(and_(Note.category_id == entity_id, Note.owner_id == owner_id))
                .values(category_id=None)
            )
        result = await db.execute(delete(model).where(owned_trashed))
        if result.rowcount == 0:
            await db.rollback()
            raise _not_found(entity)
        await db.commit()
    except SQLAlchemyError as exc:
        await db.rollback()
        raise StorageError("Could not delete item") from exc

    failed = storage.delete_quietly(file_paths)
    if failed:
        logger.warning("Purged %s %s; %d file(s) left for cleanup", entity.value, entity_id, len(failed))
    return failed
