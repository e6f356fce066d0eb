"""
Upload, download, listing and deletion of chunked blobs.

The service only talks to the ChunkStore and BlobIndex interfaces. An upload
writes every chunk before the index entry is created, so a blob is never
listable while partially written. Deletion removes the index entry first so
no new download can start once it returns.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, Iterator, Optional
from urllib.parse import quote

from filevault.chunks import ChunkStore
from filevault.db import BlobIndex
from filevault.errors import (
    BlobIdCollision,
    BlobNotFound,
    InternalError,
    InvalidInput,
    PayloadTooLarge,
    StorageError,
)
from filevault.models import (
    DEFAULT_CHUNK_SIZE,
    BlobIndexEntry,
    derive_content_type,
    is_valid_blob_id,
    new_blob_id,
    split_chunks,
    utc_now,
)

logger = logging.getLogger(__name__)

# A freshly generated id is retried once before giving up.
MAX_ID_ATTEMPTS = 2


def _ascii_fallback(filename: str) -> str:
    cleaned = "".join(ch if 32 <= ord(ch) < 127 else "_" for ch in filename)
    return cleaned.replace("\\", "\\\\").replace('"', '\\"')


def content_disposition(filename: str, as_attachment: bool) -> str:
    if not as_attachment:
        return "inline"
    quoted = quote(filename, safe="")
    if quoted != filename:
        return (
            f'attachment; filename="{_ascii_fallback(filename)}"; '
            f"filename*=utf-8''{quoted}"
        )
    return f'attachment; filename="{filename}"'



@dataclass
class Download:
    entry: BlobIndexEntry
    disposition: str
    chunks: Iterator[bytes]

    @property
    def media_type(self) -> str:
        return self.entry.content_type

    @property
    def headers(self) -> Dict[str, str]:
        return {
            "Content-Disposition": self.disposition,
            "Content-Length": str(self.entry.length),
        }


class FileService:
    def __init__(
        self,
        *,
        chunk_store: ChunkStore,
        blob_index: BlobIndex,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        max_upload_bytes: Optional[int] = None,
        client_origin: str = "http://localhost:3000",
        id_factory: Callable[[], str] = new_blob_id,
    ) -> None:
        if chunk_size <= 0:
            raise ValueError("chunk_size must be positive")
        self.chunk_store = chunk_store
        self.blob_index = blob_index
        self._chunk_size = chunk_size
        self._max_upload_bytes = max_upload_bytes
        self._client_origin = client_origin.rstrip("/")
        self._id_factory = id_factory

    @property
    def max_upload_bytes(self) -> Optional[int]:
        return self._max_upload_bytes

    def upload(
        self,
        data: Optional[bytes],
        *,
        filename: str,
        content_type: Optional[str] = None,
        metadata: Optional[Dict[str, str]] = None,
    ) -> BlobIndexEntry:
        """
        Store ``data`` as a new blob and return its committed index entry.

        Chunks already written are removed again if anything fails (or the
        call is interrupted) before the index entry is committed.
        """
        if data is None:
            raise InvalidInput("No file provided")
        if self._max_upload_bytes is not None and len(data) > self._max_upload_bytes:
            raise PayloadTooLarge(
                f"File exceeds the {self._max_upload_bytes} byte upload limit"
            )

        resolved_type = derive_content_type(content_type, filename)
        tags = {str(k): str(v) for k, v in (metadata or {}).items()}
        tags.update(
            originalName=filename, mimeType=resolved_type, size=str(len(data))
        )

        blob_id = self._allocate_id()
        entry = BlobIndexEntry(
            id=blob_id,
            filename=filename,
            content_type=resolved_type,
            length=len(data),
            metadata=tags,
        )
        try:
            for sequence, chunk in enumerate(split_chunks(data, self._chunk_size)):
                self.chunk_store.put(blob_id, sequence, chunk)
            entry.uploaded_at = utc_now()
            self.blob_index.create(entry)
        except BaseException as exc:
            self._rollback(blob_id)
            if isinstance(exc, BlobIdCollision):
                raise InternalError(
                    f"Blob id {blob_id} was taken during upload"
                ) from exc
            raise

        logger.info(
            "Stored %s (%s, %d bytes) as %s",
            filename,
            resolved_type,
            entry.length,
            blob_id,
        )
        return entry

    def _allocate_id(self) -> str:
        for _ in range(MAX_ID_ATTEMPTS):
            blob_id = self._id_factory()
            if self.blob_index.get(blob_id) is None and not self.chunk_store.exists(
                blob_id
            ):
                return blob_id
            logger.warning("Generated blob id %s is already in use", blob_id)
        raise InternalError("Could not allocate a unique blob id")

    def _rollback(self, blob_id: str) -> None:
        try:
            self.chunk_store.delete(blob_id)
        except Exception:
            logger.exception("Failed to roll back chunks of %s", blob_id)

    def _check_id(self, blob_id: str) -> None:
        if not is_valid_blob_id(blob_id):
            raise InvalidInput("Invalid id")

    def get_entry(self, blob_id: str) -> BlobIndexEntry:
        self._check_id(blob_id)
        entry = self.blob_index.get(blob_id)
        if entry is None:
            raise BlobNotFound("File not found")
        return entry

    def list_files(self) -> list[BlobIndexEntry]:
        return self.blob_index.list()

    def open_download(self, blob_id: str, *, as_attachment: bool = False) -> Download:
        entry = self.get_entry(blob_id)
        if entry.length:
            source: Iterable[bytes] = self.chunk_store.get(blob_id)
        else:
            source = iter(())
        return Download(
            entry=entry,
            disposition=content_disposition(entry.filename, as_attachment),
            chunks=self._stream(entry, source),
        )

    def _stream(self, entry: BlobIndexEntry, source: Iterable[bytes]) -> Iterator[bytes]:
        sent = 0
        try:
            for chunk in source:
                sent += len(chunk)
                if sent > entry.length:
                    raise StorageError(
                        f"Blob {entry.id} holds more than {entry.length} bytes"
                    )
                yield chunk
            if sent != entry.length:
                # Chunks vanished under us, most likely a concurrent delete.
                raise StorageError(
                    f"Blob {entry.id} ended after {sent} of {entry.length} bytes"
                )
        except GeneratorExit:
            logger.info(
                "Download of %s stopped by the client after %d bytes", entry.id, sent
            )
            raise
        finally:
            close = getattr(source, "close", None)
            if close is not None:
                close()

    def delete(self, blob_id: str) -> None:
        """Remove a blob. Deleting an id that does not exist is not an error."""
        self._check_id(blob_id)
        self.blob_index.delete(blob_id)
        self.chunk_store.delete(blob_id)
        logger.info("Deleted blob %s", blob_id)

    def share_url(self, blob_id: str) -> str:
        self._check_id(blob_id)
        return f"{self._client_origin}/preview/{blob_id}"

    def close(self) -> None:
        self.chunk_store.close()
        self.blob_index.close()
