"""Vector store records."""

import mimetypes
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Set

from pydantic import BaseModel, Field

MAX_FILE_SIZE = 512 * 1024 * 1024  # 512MB vendor limit
MAX_FILES_PER_BATCH = 20

SUPPORTED_FILE_TYPES = frozenset(
    {
        "text/plain",
        "text/markdown",
        "text/csv",
        "application/pdf",
        "application/json",
        "application/vnd.ms-excel",
        "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
        "application/msword",
        "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    }
)

# Extensions mimetypes does not map consistently across platforms
_EXTENSION_TYPES = {
    ".md": "text/markdown",
    ".markdown": "text/markdown",
    ".txt": "text/plain",
    ".csv": "text/csv",
    ".json": "application/json",
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class FileStatus(str, Enum):
    """Lifecycle of one uploaded file."""

    PENDING = "pending"
    UPLOADING = "uploading"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class BatchStatus(str, Enum):
    """Vendor batch states; everything but IN_PROGRESS is terminal."""

    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class FileUpload(BaseModel):
    """A file supplied by the caller."""

    filename: str
    content: bytes
    content_type: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_path(cls, path: str | Path, content_type: Optional[str] = None) -> "FileUpload":
        path = Path(path)
        return cls(filename=path.name, content=path.read_bytes(), content_type=content_type)

    @property
    def size(self) -> int:
        return len(self.content)

    @property
    def resolved_content_type(self) -> Optional[str]:
        """Declared content type, else one guessed from the filename."""
        if self.content_type:
            return self.content_type
        suffix = Path(self.filename).suffix.lower()
        if suffix in _EXTENSION_TYPES:
            return _EXTENSION_TYPES[suffix]
        guessed, _ = mimetypes.guess_type(self.filename)
        return guessed


class UploadedFile(BaseModel):
    """Status of one file in the vector index."""

    id: str = ""
    filename: str
    status: FileStatus
    error: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    bytes: Optional[int] = None


class BatchJob(BaseModel):
    """One batch-attach job and its per-file counts."""

    batch_id: str
    file_ids: Set[str] = Field(default_factory=set)
    status: BatchStatus = BatchStatus.IN_PROGRESS
    completed_count: int = 0
    in_progress_count: int = 0
    failed_count: int = 0
    cancelled_count: int = 0
    total_count: int = 0

    @property
    def is_terminal(self) -> bool:
        return self.status != BatchStatus.IN_PROGRESS


class UploadResult(BaseModel):
    """Outcome of ``upload_files``; ``batch_id`` is empty when nothing uploaded."""

    batch_id: str
    files: List[UploadedFile]

    @property
    def succeeded(self) -> List[UploadedFile]:
        return [f for f in self.files if f.status != FileStatus.FAILED]

    @property
    def failed(self) -> List[UploadedFile]:
        return [f for f in self.files if f.status == FileStatus.FAILED]


class IndexStats(BaseModel):
    """Vector index summary."""

    index_id: str
    name: Optional[str] = None
    status: Optional[str] = None
    usage_bytes: int = 0
    file_counts: Dict[str, int] = Field(default_factory=dict)
