from .user import User
from .category import Category
from .note import Note
from .note_share import NoteShare
from .tag import Tag
from .note_tag import note_tags
from .attachment import Attachment
from .audit_log import AuditLog
from .note_template import NoteTemplate

__all__ = [
    "User", "Category", "Note", "NoteShare", "Tag", "note_tags",
    "Attachment", "AuditLog", "NoteTemplate",
]
