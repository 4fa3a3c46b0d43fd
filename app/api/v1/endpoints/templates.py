from fastapi import APIRouter, Depends, Request
from sqlalchemy import and_, case, delete, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database import get_db
from app.core.exceptions import NotFoundError
from app.core.security import get_current_active_user
from app.models.note_template import NoteTemplate
from app.models.user import User
from app.schemas.note import NoteCreate
from app.schemas.template import TemplateCreate, TemplateResponse
from app.services.audit import record_audit
from app.services.notes import NoteService, get_note_service, note_to_response

router = APIRouter()


def _template_response(template: NoteTemplate, user_id: int) -> dict:
    response = TemplateResponse.model_validate(template)
    response.is_owner = template.owner_id == user_id
    return response.model_dump(mode="json")


@router.get("/")
async def get_templates(
    current_user: User = Depends(get_current_active_user),
    db: AsyncSession = Depends(get_db),
):
    """The caller's templates followed by public ones, most used first"""
    is_owner = case((NoteTemplate.owner_id == current_user.id, 1), else_=0)
    result = await db.execute(
        select(NoteTemplate)
        .where(or_(NoteTemplate.owner_id == current_user.id, NoteTemplate.is_public.is_(True)))
        .order_by(is_owner.desc(), NoteTemplate.usage_count.desc(), NoteTemplate.name)
    )
    templates = result.scalars().all()
    return {
        "success": True,
        "count": len(templates),
        "data": [_template_response(template, current_user.id) for template in templates],
    }


@router.post("/", status_code=201)
async def create_template(
    template_in: TemplateCreate,
    request: Request,
    current_user: User = Depends(get_current_active_user),
    db: AsyncSession = Depends(get_db),
):
    template = NoteTemplate(owner_id=current_user.id, usage_count=0, **template_in.model_dump())
    db.add(template)
    await db.commit()
    await db.refresh(template)

    await record_audit(db, request, current_user.id, "CREATE", "template", template.id, {"name": template.name})
    return {"success": True, "data": _template_response(template, current_user.id)}


@router.post("/{template_id}/use", status_code=201)
async def use_template(
    template_id: int,
    request: Request,
    current_user: User = Depends(get_current_active_user),
    db: AsyncSession = Depends(get_db),
    service: NoteService = Depends(get_note_service),
):
    """Create a note from one of your templates or a public one"""
    result = await db.execute(
        select(NoteTemplate).where(
            and_(
                NoteTemplate.id == template_id,
                or_(NoteTemplate.owner_id == current_user.id, NoteTemplate.is_public.is_(True)),
            )
        )
    )
    template = result.scalar_one_or_none()
    if not template:
        raise NotFoundError("Template not found")

    data = NoteCreate(
        title=template.title_template or "Untitled Note",
        content=template.content_template or "",
    )
    note = await service.create(current_user.id, data)

    await db.execute(
        update(NoteTemplate)
        .where(NoteTemplate.id == template_id)
        .values(usage_count=NoteTemplate.usage_count + 1)
    )
    await db.commit()

    await record_audit(db, request, current_user.id, "CREATE", "note", note.id, {"template_id": template_id})
    return {"success": True, "data": note_to_response(note)}


@router.delete("/{template_id}")
async def delete_template(
    template_id: int,
    request: Request,
    current_user: User = Depends(get_current_active_user),
    db: AsyncSession = Depends(get_db),
):
    result = await db.execute(
        delete(NoteTemplate).where(and_(NoteTemplate.id == template_id, NoteTemplate.owner_id == current_user.id))
    )
    if result.rowcount == 0:
        await db.rollback()
        raise NotFoundError("Template not found or you do not own it")
    await db.commit()

    await record_audit(db, request, current_user.id, "DELETE", "template", template_id)
    return {"success": True, "message": "Template deleted successfully"}
