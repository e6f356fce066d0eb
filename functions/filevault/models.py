"""
Records and identifier helpers for stored blobs.
"""

from __future__ import annotations

import mimetypes
import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Iterator, Optional

DEFAULT_CONTENT_TYPE = "application/octet-stream"

# Conventional GridFS chunk size.
DEFAULT_CHUNK_SIZE = 255 * 1024

BLOB_ID_PATTERN = re.compile(r"^[0-9a-f]{32}$")


def new_blob_id() -> str:
    return uuid.uuid4().hex


def is_valid_blob_id(value: str) -> bool:
    return bool(BLOB_ID_PATTERN.match(value or ""))


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def derive_content_type(declared: Optional[str], filename: str) -> str:
    """
    Use the declared type when the client sent one, otherwise guess from the
    filename extension.
    """
    if declared:
        return declared
    guessed, _ = mimetypes.guess_type(filename)
    return guessed or DEFAULT_CONTENT_TYPE


def split_chunks(data: bytes, chunk_size: int) -> Iterator[bytes]:
    if chunk_size <= 0:
        raise ValueError("chunk_size must be positive")
    view = memoryview(data)
    for offset in range(0, len(data), chunk_size):
        yield bytes(view[offset : offset + chunk_size])


@dataclass
class BlobIndexEntry:
    id: str
    filename: str
    content_type: str
    length: int
    uploaded_at: datetime = field(default_factory=utc_now)
    metadata: Dict[str, str] = field(default_factory=dict)
