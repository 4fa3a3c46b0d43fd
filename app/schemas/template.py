from pydantic import BaseModel, Field
from datetime import datetime
from typing import Optional


class TemplateCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = Field(None, max_length=500)
    title_template: Optional[str] = Field(None, max_length=200)
    content_template: Optional[str] = Field(None, max_length=10000)
    is_public: bool = False


class TemplateResponse(BaseModel):
    id: int
    name: str
    description: Optional[str] = None
    title_template: Optional[str] = None
    content_template: Optional[str] = None
    is_public: bool
    usage_count: int
    is_owner: bool = False
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True
