"""
Local file storage for note attachments.
"""

import logging
import re
import secrets
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, List

from fastapi import Request, UploadFile
from fastapi.concurrency import run_in_threadpool

from app.core.config import Settings
from app.core.exceptions import ValidationError

logger = logging.getLogger(__name__)


@dataclass
class StoredFile:
    filename: str
    original_filename: str
    mime_type: str
    file_size: int
    file_path: str


def generate_unique_filename(original_name: str) -> str:
    """``my report.pdf`` -> ``my_report_1700000000000_k3j2h1g0f9e8.pdf``"""
    path = Path(original_name or "file")
    stem = re.sub(r"[^a-z0-9]", "_", path.stem, flags=re.IGNORECASE).lower() or "file"
    suffix = re.sub(r"[^a-z0-9.]", "", path.suffix.lower())
    return f"{stem}_{int(time.time() * 1000)}_{secrets.token_hex(6)}{suffix}"


class LocalFileStorage:
    def __init__(self, root: str):
        self.root = Path(root)
        self.attachments_dir = self.root / "attachments"

    def ensure_dirs(self) -> None:
        self.attachments_dir.mkdir(parents=True, exist_ok=True)

    def resolve(self, file_path: str) -> Path:
        """Map a stored path back into the attachments directory, dropping any directory parts."""
        return self.attachments_dir / Path(file_path).name

    async def save(self, upload: UploadFile) -> StoredFile:
        self.ensure_dirs()
        data = await upload.read()
        filename = generate_unique_filename(upload.filename)
        target = self.attachments_dir / filename
        await run_in_threadpool(target.write_bytes, data)
        logger.info("File saved: %s", target)
        return StoredFile(
            filename=filename,
            original_filename=upload.filename or filename,
            mime_type=upload.content_type or "application/octet-stream",
            file_size=len(data),
            file_path=str(target),
        )

    def delete(self, file_path: str) -> None:
        """Remove a file; a file that is already gone is not an error."""
        self.resolve(file_path).unlink(missing_ok=True)
        logger.info("File deleted: %s", file_path)

    def delete_quietly(self, file_paths: Iterable[str], attempts: int = 2) -> List[str]:
        """Best-effort delete; returns the paths that could not be removed."""
        failed = []
        for file_path in file_paths:
            for attempt in range(1, attempts + 1):
                try:
                    self.delete(file_path)
                    break
                except OSError:
                    logger.warning("Error deleting file %s (attempt %d)", file_path, attempt, exc_info=True)
            else:
                logger.error("Giving up on file %s", file_path)
                failed.append(file_path)
        return failed


def validate_uploads(files: List[UploadFile], settings: Settings) -> None:
    """Reject bad uploads before anything touches storage or the database."""
    errors = []
    if len(files) > settings.MAX_FILES_PER_NOTE:
        errors.append({"field": "files", "message": f"Maximum {settings.MAX_FILES_PER_NOTE} files allowed"})
    allowed = settings.allowed_file_types
    for upload in files:
        if upload.content_type not in allowed:
            errors.append({"field": "files", "message": f"File type {upload.content_type} is not allowed"})
        if upload.size is not None and upload.size > settings.MAX_FILE_SIZE:
            errors.append({"field": "files", "message": f"File {upload.filename} exceeds maximum allowed size"})
    if errors:
        raise ValidationError(details=errors)


def get_storage(request: Request) -> LocalFileStorage:
    return request.app.state.storage
