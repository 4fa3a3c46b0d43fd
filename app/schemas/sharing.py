from pydantic import BaseModel, EmailStr
from datetime import datetime
from typing import Literal, Optional


class ShareCreate(BaseModel):
    email: EmailStr
    permission: Literal["read", "edit"] = "read"


class ShareUser(BaseModel):
    id: int
    username: str
    email: str


class ShareResponse(BaseModel):
    share_id: int
    user: ShareUser
    permission: str
    shared_at: Optional[datetime] = None
