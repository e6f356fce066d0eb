"""
Pydantic schemas for the file storage API.
"""

from __future__ import annotations

from datetime import datetime
from typing import Dict

from pydantic import BaseModel

from filevault.models import BlobIndexEntry


class UploadResponse(BaseModel):
    fileId: str
    filename: str
    contentType: str
    message: str = "Uploaded"


class FileInfo(BaseModel):
    id: str
    filename: str
    contentType: str
    length: int
    uploadDate: datetime
    metadata: Dict[str, str]

    @classmethod
    def from_entry(cls, entry: BlobIndexEntry) -> "FileInfo":
        return cls(
            id=entry.id,
            filename=entry.filename,
            contentType=entry.content_type,
            length=entry.length,
            uploadDate=entry.uploaded_at,
            metadata=entry.metadata,
        )


class DeleteResponse(BaseModel):
    message: str


class ShareResponse(BaseModel):
    shareUrl: str


class ErrorResponse(BaseModel):
    error: str
