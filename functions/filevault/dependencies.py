"""
Dependency wiring for the FastAPI app.

Backends are built once per application from settings and kept on
``app.state``; request handlers reach them through ``get_file_service``.
"""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import Request
from sqlalchemy.engine import Engine

from filevault.chunks import ChunkStore, InMemoryChunkStore, RedisChunkStore, S3ChunkStore
from filevault.config import Settings
from filevault.db import (
    BlobIndex,
    InMemoryBlobIndex,
    SqlBlobIndex,
    SqlChunkStore,
    create_sql_engine,
)
from filevault.service import FileService

logger = logging.getLogger(__name__)


def build_chunk_store(settings: Settings, engine: Optional[Engine] = None) -> ChunkStore:
    """
    Pick the chunk backend: S3 when a bucket is configured, then Redis, then
    the SQL database, falling back to memory.
    """
    if settings.use_in_memory_backends:
        return InMemoryChunkStore()
    if settings.s3_bucket:
        return S3ChunkStore(
            bucket=settings.s3_bucket,
            region=settings.s3_region or "",
            endpoint=settings.s3_endpoint or "",
            access_key_id=settings.aws_access_key_id or "",
            secret_access_key=settings.aws_secret_access_key or "",
            prefix=settings.s3_prefix,
        )
    if settings.redis_url:
        return RedisChunkStore(url=settings.redis_url, key_prefix=settings.redis_key_prefix)
    if engine is not None:
        return SqlChunkStore(engine)
    return InMemoryChunkStore()


def build_blob_index(settings: Settings, engine: Optional[Engine] = None) -> BlobIndex:
    if settings.use_in_memory_backends or engine is None:
        return InMemoryBlobIndex()
    return SqlBlobIndex(engine)


def build_file_service(settings: Settings) -> FileService:
    engine = None
    if not settings.use_in_memory_backends and settings.database_url:
        engine = create_sql_engine(settings.database_url)
    chunk_store = build_chunk_store(settings, engine)
    blob_index = build_blob_index(settings, engine)
    logger.info(
        "Using %s for chunks and %s for the blob index",
        type(chunk_store).__name__,
        type(blob_index).__name__,
    )
    return FileService(
        chunk_store=chunk_store,
        blob_index=blob_index,
        chunk_size=settings.chunk_size_bytes,
        max_upload_bytes=settings.max_upload_bytes,
        client_origin=settings.client_origin,
    )


def get_file_service(request: Request) -> FileService:
    return request.app.state.file_service
