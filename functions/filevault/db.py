"""
Blob index abstraction plus the SQLAlchemy-backed index and chunk store.
"""

from __future__ import annotations

import itertools
import threading
from datetime import datetime, timezone
from typing import Dict, Iterator, Optional, Protocol, Tuple

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    Integer,
    LargeBinary,
    String,
    create_engine,
    delete,
    select,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from filevault.errors import BlobIdCollision, BlobNotFound, StorageError
from filevault.models import BlobIndexEntry


class BlobIndex(Protocol):
    """Interface for the blob metadata catalog."""

    def create(self, entry: BlobIndexEntry) -> None:
        ...

    def get(self, blob_id: str) -> Optional[BlobIndexEntry]:
        ...

    def list(self) -> list[BlobIndexEntry]:
        """Entries by upload time, most recent first."""
        ...

    def delete(self, blob_id: str) -> None:
        ...

    def close(self) -> None:
        ...


class InMemoryBlobIndex:
    """Simple in-memory index for development and tests."""

    def __init__(self):
        self.entries: Dict[str, Tuple[int, BlobIndexEntry]] = {}
        self._sequence = itertools.count()
        self._lock = threading.Lock()

    def create(self, entry: BlobIndexEntry) -> None:
        with self._lock:
            if entry.id in self.entries:
                raise BlobIdCollision(f"Blob {entry.id} already exists")
            self.entries[entry.id] = (next(self._sequence), entry)

    def get(self, blob_id: str) -> Optional[BlobIndexEntry]:
        with self._lock:
            item = self.entries.get(blob_id)
        return item[1] if item else None

    def list(self) -> list[BlobIndexEntry]:
        with self._lock:
            items = list(self.entries.values())
        items.sort(key=lambda item: (item[1].uploaded_at, item[0]), reverse=True)
        return [entry for _, entry in items]

    def delete(self, blob_id: str) -> None:
        with self._lock:
            self.entries.pop(blob_id, None)

    def reset(self) -> None:
        """Clear all stored data (useful in tests)."""
        with self._lock:
            self.entries.clear()

    def close(self) -> None:
        pass


Base = declarative_base()


class FileRow(Base):
    __tablename__ = "files"

    # Insertion order, used to break upload time ties.
    seq = Column(Integer, primary_key=True, autoincrement=True)
    id = Column(String(32), nullable=False, unique=True, index=True)
    filename = Column(String, nullable=False)
    content_type = Column(String, nullable=False)
    length = Column(Integer, nullable=False)
    uploaded_at = Column(DateTime(timezone=True), nullable=False, index=True)
    tags = Column("metadata", JSON, nullable=False)


class ChunkRow(Base):
    __tablename__ = "chunks"

    files_id = Column(String(32), primary_key=True)
    n = Column(Integer, primary_key=True)
    data = Column(LargeBinary, nullable=False)


def create_sql_engine(database_url: str) -> Engine:
    """
    Build an engine and make sure the tables exist. Accepts any SQLAlchemy
    URL (e.g., Postgres, or SQLite for local runs and tests).
    """
    if not database_url:
        raise ValueError("DATABASE_URL is required for the SQL backends")
    if database_url.startswith("sqlite"):
        kwargs: dict = {"connect_args": {"check_same_thread": False}}
        if ":memory:" in database_url or database_url.endswith("://"):
            kwargs["poolclass"] = StaticPool
    else:
        kwargs = {"pool_pre_ping": True, "pool_recycle": 1800}
    engine = create_engine(database_url, future=True, **kwargs)
    Base.metadata.create_all(engine)
    return engine


def _session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(
        bind=engine, class_=Session, expire_on_commit=False, future=True
    )


def _to_utc(value: datetime) -> datetime:
    # SQLite hands back naive values; they were written as UTC.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class SqlBlobIndex:
    """SQLAlchemy-backed blob index."""

    def __init__(self, engine: Engine):
        self.engine = engine
        self.Session = _session_factory(engine)

    def _to_entry(self, row: FileRow) -> BlobIndexEntry:
        return BlobIndexEntry(
            id=row.id,
            filename=row.filename,
            content_type=row.content_type,
            length=row.length,
            uploaded_at=_to_utc(row.uploaded_at),
            metadata=dict(row.tags or {}),
        )

    def create(self, entry: BlobIndexEntry) -> None:
        try:
            with self.Session() as session:
                session.add(
                    FileRow(
                        id=entry.id,
                        filename=entry.filename,
                        content_type=entry.content_type,
                        length=entry.length,
                        uploaded_at=_to_utc(entry.uploaded_at),
                        tags=dict(entry.metadata),
                    )
                )
                session.commit()
        except IntegrityError as exc:
            raise BlobIdCollision(f"Blob {entry.id} already exists") from exc
        except SQLAlchemyError as exc:
            raise StorageError(f"Failed to index blob {entry.id}") from exc

    def get(self, blob_id: str) -> Optional[BlobIndexEntry]:
        try:
            with self.Session() as session:
                row = session.execute(
                    select(FileRow).where(FileRow.id == blob_id)
                ).scalar_one_or_none()
                return self._to_entry(row) if row else None
        except SQLAlchemyError as exc:
            raise StorageError(f"Failed to look up blob {blob_id}") from exc

    def list(self) -> list[BlobIndexEntry]:
        try:
            with self.Session() as session:
                rows = session.execute(
                    select(FileRow).order_by(
                        FileRow.uploaded_at.desc(), FileRow.seq.desc()
                    )
                ).scalars()
                return [self._to_entry(row) for row in rows]
        except SQLAlchemyError as exc:
            raise StorageError("Failed to list blobs") from exc

    def delete(self, blob_id: str) -> None:
        try:
            with self.Session() as session:
                session.execute(delete(FileRow).where(FileRow.id == blob_id))
                session.commit()
        except SQLAlchemyError as exc:
            raise StorageError(f"Failed to delete blob {blob_id}") from exc

    def close(self) -> None:
        self.engine.dispose()


class SqlChunkStore:
    """
    SQLAlchemy-backed chunk store. Reads open one short session per chunk so
    no cursor is held while the consumer is slow.
    """

    def __init__(self, engine: Engine):
        self.engine = engine
        self.Session = _session_factory(engine)

    def put(self, blob_id: str, sequence: int, data: bytes) -> None:
        try:
            with self.Session() as session:
                session.add(ChunkRow(files_id=blob_id, n=sequence, data=data))
                session.commit()
        except IntegrityError as exc:
            raise BlobIdCollision(
                f"Chunk {sequence} of {blob_id} already exists"
            ) from exc
        except SQLAlchemyError as exc:
            raise StorageError(f"Failed to write chunk {sequence} of {blob_id}") from exc

    def get(self, blob_id: str) -> Iterator[bytes]:
        if not self.exists(blob_id):
            raise BlobNotFound(f"No chunks stored for {blob_id}")
        return self._iter_chunks(blob_id)

    def _iter_chunks(self, blob_id: str) -> Iterator[bytes]:
        sequence = 0
        while True:
            try:
                with self.Session() as session:
                    row = session.get(ChunkRow, (blob_id, sequence))
                    data = row.data if row else None
            except SQLAlchemyError as exc:
                raise StorageError(
                    f"Failed to read chunk {sequence} of {blob_id}"
                ) from exc
            if data is None:
                return
            yield data
            sequence += 1

    def exists(self, blob_id: str) -> bool:
        try:
            with self.Session() as session:
                found = session.execute(
                    select(ChunkRow.n).where(ChunkRow.files_id == blob_id).limit(1)
                ).first()
                return found is not None
        except SQLAlchemyError as exc:
            raise StorageError(f"Failed to look up chunks of {blob_id}") from exc

    def delete(self, blob_id: str) -> None:
        try:
            with self.Session() as session:
                session.execute(delete(ChunkRow).where(ChunkRow.files_id == blob_id))
                session.commit()
        except SQLAlchemyError as exc:
            raise StorageError(f"Failed to delete chunks of {blob_id}") from exc

    def close(self) -> None:
        self.engine.dispose()
