from pydantic import BaseModel, Field, field_validator
from datetime import datetime
from typing import Optional, List


def _clean_title(value: Optional[str]) -> Optional[str]:
    if value is None:
        return value
    if not value.strip():
        raise ValueError("Note title is required")
    return value.strip()


def _check_tags(value: Optional[List[str]]) -> Optional[List[str]]:
    for tag in value or []:
        if len(tag) > 30:
            raise ValueError("Tags must be at most 30 characters")
    return value


class NoteBase(BaseModel):
    title: str = Field(..., min_length=1, max_length=200)
    content: Optional[str] = Field(None, max_length=10000)
    category_id: Optional[int] = Field(None, gt=0)
    is_pinned: bool = False
    tags: Optional[List[str]] = Field(default_factory=list, max_length=10)

    @field_validator("title")
    @classmethod
    def title_not_blank(cls, value):
        return _clean_title(value)

    @field_validator("tags")
    @classmethod
    def tag_length(cls, value):
        return _check_tags(value)


class NoteCreate(NoteBase):
    pass


class NoteUpdate(BaseModel):
    """Omitted fields keep their value; ``tags=[]`` clears the tag set."""
    title: Optional[str] = Field(None, min_length=1, max_length=200)
    content: Optional[str] = Field(None, max_length=10000)
    category_id: Optional[int] = Field(None, gt=0)
    is_pinned: Optional[bool] = None
    tags: Optional[List[str]] = Field(None, max_length=10)

    @field_validator("title")
    @classmethod
    def title_not_blank(cls, value):
        return _clean_title(value)

    @field_validator("tags")
    @classmethod
    def tag_length(cls, value):
        return _check_tags(value)


class AttachmentResponse(BaseModel):
    id: int
    original_filename: str
    mime_type: str
    file_size: int
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class CategorySummary(BaseModel):
    id: int
    name: str
    color: str

    class Config:
        from_attributes = True


class NoteResponse(BaseModel):
    id: int
    title: str
    content: Optional[str] = None
    is_pinned: bool = False
    owner_id: int
    owner_username: Optional[str] = None
    category: Optional[CategorySummary] = None
    tags: List[str] = []
    attachments: List[AttachmentResponse] = []
    permission: Optional[str] = None  # set for notes seen through a grant
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    deleted_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class ImportedNote(BaseModel):
    title: Optional[str] = None
    content: Optional[str] = None
    is_pinned: bool = False
    tags: Optional[List[str]] = None


class NoteImport(BaseModel):
    notes: List[ImportedNote]
