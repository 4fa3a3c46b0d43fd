"""
Effective access to a note (owner / grantee / none) and grant management.
"""

import enum
import logging
from dataclasses import dataclass
from typing import List, Optional

from sqlalchemy import and_, delete, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from app.core.exceptions import NotFoundError, PermissionDeniedError, ValidationError
from app.models.note import Note
from app.models.note_share import NoteShare
from app.models.user import User

logger = logging.getLogger(__name__)


class AccessLevel(str, enum.Enum):
    READ = "read"
    EDIT = "edit"


class AccessRole(str, enum.Enum):
    OWNER = "owner"
    GRANTEE = "grantee"
    NONE = "none"


@dataclass
class NoteAccess:
    role: AccessRole
    owner_id: Optional[int] = None
    permission: Optional[AccessLevel] = None

    @property
    def is_owner(self) -> bool:
        return self.role is AccessRole.OWNER

    def allows(self, required: AccessLevel) -> bool:
        if self.role is AccessRole.OWNER:
            return True
        if self.role is AccessRole.NONE:
            return False
        return required is AccessLevel.READ or self.permission is AccessLevel.EDIT


def dialect_insert(db: AsyncSession):
    """``insert`` construct with ON CONFLICT support for the bound dialect."""
    name = db.get_bind().dialect.name
    if name == "postgresql":
        return postgresql.insert
    if name == "sqlite":
        return sqlite.insert
    raise RuntimeError(f"Upsert is not supported on {name}")


async def classify_access(db: AsyncSession, note_id: int, user_id: int) -> NoteAccess:
    """Owner check first; only then look for a grant. Trashed notes count as missing."""
    result = await db.execute(
        select(Note.owner_id).where(and_(Note.id == note_id, Note.deleted_at.is_(None)))
    )
    owner_id = result.scalar_one_or_none()
    if owner_id is None:
        return NoteAccess(AccessRole.NONE)
    if owner_id == user_id:
        return NoteAccess(AccessRole.OWNER, owner_id=owner_id)

    result = await db.execute(
        select(NoteShare.permission).where(
            and_(NoteShare.note_id == note_id, NoteShare.shared_with == user_id)
        )
    )
    permission = result.scalar_one_or_none()
    if permission is None:
        return NoteAccess(AccessRole.NONE, owner_id=owner_id)
    return NoteAccess(AccessRole.GRANTEE, owner_id=owner_id, permission=AccessLevel(permission))


async def resolve_access(
    db: AsyncSession, note_id: int, user_id: int, required: AccessLevel = AccessLevel.READ
) -> NoteAccess:
    """Raise unless ``user_id`` may act on the note at ``required`` level.

    Callers without any access get NotFoundError so the note's existence is
    not revealed; read-only grantees asking for edit get PermissionDeniedError.
    """
    access = await classify_access(db, note_id, user_id)
    if access.role is AccessRole.NONE:
        raise NotFoundError("Note not found")
    if not access.allows(required):
        raise PermissionDeniedError("You only have read permission for this note")
    return access


async def _get_owned_note(db: AsyncSession, note_id: int, owner_id: int) -> Note:
    result = await db.execute(
        select(Note).where(
            and_(Note.id == note_id, Note.owner_id == owner_id, Note.deleted_at.is_(None))
        )
    )
    note = result.scalar_one_or_none()
    if not note:
        raise NotFoundError("Note not found or you do not own this note")
    return note


async def share_note(
    db: AsyncSession, note_id: int, granter: User, grantee_email: str, permission: AccessLevel
) -> tuple[NoteShare, User, Note]:
    """Create the grant or update its permission; one row per (note, grantee)."""
    email = grantee_email.strip().lower()
    if email == (granter.email or "").lower():
        raise ValidationError("Cannot share note with yourself")

    result = await db.execute(select(User).where(User.email == email))
    recipient = result.scalar_one_or_none()
    if not recipient:
        raise NotFoundError("User not found with that email")

    note = await _get_owned_note(db, note_id, granter.id)

    insert = dialect_insert(db)
    stmt = insert(NoteShare).values(
        note_id=note_id,
        shared_by=granter.id,
        shared_with=recipient.id,
        permission=permission.value,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=[NoteShare.note_id, NoteShare.shared_with],
        set_={"permission": stmt.excluded.permission},
    ).returning(NoteShare.id)
    share_id = (await db.execute(stmt)).scalar_one()
    await db.commit()

    result = await db.execute(
        select(NoteShare).where(NoteShare.id == share_id).execution_options(populate_existing=True)
    )
    logger.info("Note %s shared with user %s (%s)", note_id, recipient.id, permission.value)
    return result.scalar_one(), recipient, note


async def list_grantees(db: AsyncSession, note_id: int, owner_id: int) -> List[NoteShare]:
    await _get_owned_note(db, note_id, owner_id)
    result = await db.execute(
        select(NoteShare)
        .options(selectinload(NoteShare.user))
        .where(NoteShare.note_id == note_id)
        .order_by(NoteShare.created_at.desc(), NoteShare.id.desc())
    )
    return list(result.scalars().all())


async def list_shared_with_me(db: AsyncSession, user_id: int) -> List[tuple[Note, str]]:
    result = await db.execute(
        select(Note, NoteShare.permission)
        .join(NoteShare, NoteShare.note_id == Note.id)
        .options(
            selectinload(Note.tags),
            selectinload(Note.owner),
            selectinload(Note.category),
            selectinload(Note.attachments),
        )
        .where(and_(NoteShare.shared_with == user_id, Note.deleted_at.is_(None)))
        .order_by(Note.updated_at.desc(), Note.id.desc())
    )
    return [(note, permission) for note, permission in result.all()]


async def revoke_share(db: AsyncSession, share_id: int, owner_id: int) -> NoteShare:
    """Delete a grant on one of the caller's notes; returns the removed row."""
    result = await db.execute(
        select(NoteShare)
        .join(Note, Note.id == NoteShare.note_id)
        .where(and_(NoteShare.id == share_id, Note.owner_id == owner_id))
    )
    share = result.scalar_one_or_none()
    if not share:
        raise NotFoundError("Share not found or you do not have permission")
    await db.execute(delete(NoteShare).where(NoteShare.id == share_id))
    await db.commit()
    return share
