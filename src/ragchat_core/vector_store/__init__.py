"""Vector store client and records."""

from ragchat_core.vector_store.client import VectorStoreClient
from ragchat_core.vector_store.models import (
    BatchJob,
    BatchStatus,
    FileStatus,
    FileUpload,
    IndexStats,
    UploadedFile,
    UploadResult,
)

__all__ = [
    "VectorStoreClient",
    "BatchJob",
    "BatchStatus",
    "FileStatus",
    "FileUpload",
    "IndexStats",
    "UploadedFile",
    "UploadResult",
]
