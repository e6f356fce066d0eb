"""
Chunk storage abstraction with in-memory, S3-compatible and Redis backends.

A blob's bytes are kept as numbered chunks starting at 0. Readers get a lazy
iterator that fetches one chunk at a time, so a slow consumer never causes a
whole blob to be buffered.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, Optional, Protocol

import boto3
import redis
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError
from redis import exceptions as redis_exceptions

from filevault.errors import BlobIdCollision, BlobNotFound, StorageError

logger = logging.getLogger(__name__)


class ChunkStore(Protocol):
    """Defines the operations the file service needs from chunk storage."""

    def put(self, blob_id: str, sequence: int, data: bytes) -> None:
        ...

    def get(self, blob_id: str) -> Iterator[bytes]:
        """Return a fresh iterator over the blob's chunks, or raise BlobNotFound."""
        ...

    def exists(self, blob_id: str) -> bool:
        ...

    def delete(self, blob_id: str) -> None:
        ...

    def close(self) -> None:
        ...


class InMemoryChunkStore:
    """Chunk store for development and tests."""

    def __init__(self):
        self.blobs: Dict[str, Dict[int, bytes]] = {}
        self._lock = threading.Lock()

    def put(self, blob_id: str, sequence: int, data: bytes) -> None:
        with self._lock:
            chunks = self.blobs.setdefault(blob_id, {})
            if sequence in chunks:
                raise BlobIdCollision(f"Chunk {sequence} of {blob_id} already exists")
            chunks[sequence] = bytes(data)

    def get(self, blob_id: str) -> Iterator[bytes]:
        if not self.exists(blob_id):
            raise BlobNotFound(f"No chunks stored for {blob_id}")
        return self._iter_chunks(blob_id)

    def _iter_chunks(self, blob_id: str) -> Iterator[bytes]:
        sequence = 0
        while True:
            with self._lock:
                data = self.blobs.get(blob_id, {}).get(sequence)
            if data is None:
                return
            yield data
            sequence += 1

    def exists(self, blob_id: str) -> bool:
        with self._lock:
            return bool(self.blobs.get(blob_id))

    def delete(self, blob_id: str) -> None:
        with self._lock:
            self.blobs.pop(blob_id, None)

    def reset(self) -> None:
        """Clear all stored chunks (useful in tests)."""
        with self._lock:
            self.blobs.clear()

    def close(self) -> None:
        pass


def _is_missing_key(exc: ClientError) -> bool:
    code = exc.response.get("Error", {}).get("Code")
    return code in ("NoSuchKey", "404", "NotFound")


@dataclass
class S3ChunkStore:
    """
    S3-compatible chunk store. Each chunk is one object under
    ``<prefix>/<blob_id>/<sequence>``.
    """

    bucket: str
    region: str = ""
    endpoint: str = ""
    access_key_id: str = ""
    secret_access_key: str = ""
    prefix: str = "uploads"
    client: Optional[Any] = field(default=None, repr=False)

    def __post_init__(self):
        if self.client is None:
            config = Config(signature_version="s3v4")
            self.client = boto3.client(
                "s3",
                endpoint_url=self.endpoint or None,
                region_name=self.region or None,
                aws_access_key_id=self.access_key_id or None,
                aws_secret_access_key=self.secret_access_key or None,
                config=config,
            )

    def _blob_prefix(self, blob_id: str) -> str:
        return f"{self.prefix}/{blob_id}/"

    def _key(self, blob_id: str, sequence: int) -> str:
        # Zero padded so listings sort in sequence order.
        return f"{self._blob_prefix(blob_id)}{sequence:08d}"

    def put(self, blob_id: str, sequence: int, data: bytes) -> None:
        try:
            self.client.put_object(
                Bucket=self.bucket,
                Key=self._key(blob_id, sequence),
                Body=data,
                ContentType="application/octet-stream",
            )
        except (BotoCoreError, ClientError) as exc:
            raise StorageError(f"Failed to write chunk {sequence} of {blob_id}") from exc

    def get(self, blob_id: str) -> Iterator[bytes]:
        if not self.exists(blob_id):
            raise BlobNotFound(f"No chunks stored for {blob_id}")
        return self._iter_chunks(blob_id)

    def _iter_chunks(self, blob_id: str) -> Iterator[bytes]:
        sequence = 0
        while True:
            try:
                response = self.client.get_object(
                    Bucket=self.bucket, Key=self._key(blob_id, sequence)
                )
            except ClientError as exc:
                if _is_missing_key(exc):
                    return
                raise StorageError(
                    f"Failed to read chunk {sequence} of {blob_id}"
                ) from exc
            except BotoCoreError as exc:
                raise StorageError(
                    f"Failed to read chunk {sequence} of {blob_id}"
                ) from exc
            body = response["Body"]
            try:
                data = body.read()
            finally:
                body.close()
            yield data
            sequence += 1

    def exists(self, blob_id: str) -> bool:
        try:
            response = self.client.list_objects_v2(
                Bucket=self.bucket, Prefix=self._blob_prefix(blob_id), MaxKeys=1
            )
        except (BotoCoreError, ClientError) as exc:
            raise StorageError(f"Failed to look up chunks of {blob_id}") from exc
        return response.get("KeyCount", 0) > 0

    def delete(self, blob_id: str) -> None:
        try:
            paginator = self.client.get_paginator("list_objects_v2")
            for page in paginator.paginate(
                Bucket=self.bucket, Prefix=self._blob_prefix(blob_id)
            ):
                objects = [{"Key": obj["Key"]} for obj in page.get("Contents", [])]
                if objects:
                    self.client.delete_objects(
                        Bucket=self.bucket,
                        Delete={"Objects": objects, "Quiet": True},
                    )
        except (BotoCoreError, ClientError) as exc:
            raise StorageError(f"Failed to delete chunks of {blob_id}") from exc

    def close(self) -> None:
        self.client.close()


@dataclass
class RedisChunkStore:
    """Redis-backed chunk store using one string key per chunk."""

    url: str = ""
    key_prefix: str = "filevault:chunks"
    client: Optional[Any] = field(default=None, repr=False)

    def __post_init__(self):
        if self.client is None:
            self.client = redis.Redis.from_url(self.url)

    def _key(self, blob_id: str, sequence: int) -> str:
        return f"{self.key_prefix}:{blob_id}:{sequence}"

    def put(self, blob_id: str, sequence: int, data: bytes) -> None:
        try:
            created = self.client.set(self._key(blob_id, sequence), data, nx=True)
        except redis_exceptions.RedisError as exc:
            raise StorageError(f"Failed to write chunk {sequence} of {blob_id}") from exc
        if not created:
            raise BlobIdCollision(f"Chunk {sequence} of {blob_id} already exists")

    def get(self, blob_id: str) -> Iterator[bytes]:
        if not self.exists(blob_id):
            raise BlobNotFound(f"No chunks stored for {blob_id}")
        return self._iter_chunks(blob_id)

    def _iter_chunks(self, blob_id: str) -> Iterator[bytes]:
        sequence = 0
        while True:
            try:
                data = self.client.get(self._key(blob_id, sequence))
            except redis_exceptions.RedisError as exc:
                raise StorageError(
                    f"Failed to read chunk {sequence} of {blob_id}"
                ) from exc
            if data is None:
                return
            yield data
            sequence += 1

    def exists(self, blob_id: str) -> bool:
        # Chunks are written from 0 upward and removed all at once.
        try:
            return bool(self.client.exists(self._key(blob_id, 0)))
        except redis_exceptions.RedisError as exc:
            raise StorageError(f"Failed to look up chunks of {blob_id}") from exc

    def delete(self, blob_id: str) -> None:
        try:
            keys = list(self.client.scan_iter(match=f"{self.key_prefix}:{blob_id}:*"))
            if keys:
                self.client.delete(*keys)
        except redis_exceptions.RedisError as exc:
            raise StorageError(f"Failed to delete chunks of {blob_id}") from exc

    def close(self) -> None:
        self.client.close()
