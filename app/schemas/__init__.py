from .user import UserCreate, UserResponse
from .note import NoteCreate, NoteUpdate, NoteResponse
from .auth import Token
from .category import CategoryCreate, CategoryUpdate, CategoryResponse
from .sharing import ShareCreate, ShareResponse
from .template import TemplateCreate, TemplateResponse

__all__ = [
    "UserCreate", "UserResponse",
    "NoteCreate", "NoteUpdate", "NoteResponse",
    "Token",
    "CategoryCreate", "CategoryUpdate", "CategoryResponse",
    "ShareCreate", "ShareResponse",
    "TemplateCreate", "TemplateResponse",
]
