"""Chunk persistence on SQLAlchemy.

The ``knowledge_chunks`` table enforces ``(content_type, content_id,
chunk_hash)`` uniqueness with a database constraint. Rows are never hard
deleted except through :meth:`KnowledgeStore.delete_all_for_content`.
"""

import logging
import threading
from collections.abc import Iterable
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    create_engine,
    delete,
    func,
    or_,
    select,
    text,
    update,
)
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker
from sqlalchemy.pool import StaticPool

from ..errors import ConsistencyError, KnowledgeBaseError
from .models import Chunk, to_utc

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    """Declarative base for knowledge base tables."""

    pass


class TimestampMixin:
    """``created_at`` set on insert, ``updated_at`` refreshed on every ORM update."""

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False
    )


class ChunkRow(Base, TimestampMixin):
    """One chunk of one document."""

    __tablename__ = "knowledge_chunks"
    __table_args__ = (
        UniqueConstraint("content_type", "content_id", "chunk_hash", name="uq_knowledge_chunk_identity"),
        Index("ix_knowledge_chunks_content_key", "content_type", "content_id"),
        Index("ix_knowledge_chunks_active", "is_active", "content_type"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    content_type: Mapped[str] = mapped_column(String(64), nullable=False)
    content_id: Mapped[str] = mapped_column(String(255), nullable=False)
    chunk_index: Mapped[int] = mapped_column(Integer, nullable=False)
    total_chunks: Mapped[int] = mapped_column(Integer, nullable=False)
    chunk_text: Mapped[str] = mapped_column(Text, nullable=False)
    chunk_hash: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    word_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    embedding: Mapped[list | None] = mapped_column(JSON, nullable=True)
    embedding_model: Mapped[str | None] = mapped_column(String(128), nullable=True)
    chunk_metadata: Mapped[dict] = mapped_column("metadata", JSON, nullable=False, default=dict)
    language: Mapped[str | None] = mapped_column(String(16), nullable=True)
    last_modified: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    def to_chunk(self) -> Chunk:
        return Chunk(
            content_type=self.content_type,
            content_id=self.content_id,
            chunk_index=self.chunk_index,
            total_chunks=self.total_chunks,
            text=self.chunk_text,
            chunk_hash=self.chunk_hash,
            word_count=self.word_count,
            embedding=list(self.embedding) if self.embedding is not None else None,
            embedding_model=self.embedding_model,
            metadata=dict(self.chunk_metadata or {}),
            language=self.language,
            last_modified=to_utc(self.last_modified),
            is_active=self.is_active,
            created_at=to_utc(self.created_at),
            updated_at=to_utc(self.updated_at),
        )


def create_store_engine(database_url: str, echo: bool = False):
    """Create an engine; SQLite connections are shared across worker threads."""
    kwargs: dict[str, Any] = {"echo": echo}
    if database_url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False}
        if database_url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
    else:
        kwargs["pool_pre_ping"] = True
    return create_engine(database_url, **kwargs)


class KnowledgeStore:
    """Repository for chunk rows.

    All public methods are safe to call from several threads; access is
    serialized by an internal lock. Returned :class:`Chunk` objects are
    detached copies.
    """

    def __init__(self, database_url: str = "sqlite://", echo: bool = False, engine=None):
        """Initialize the store and create the schema if needed.

        Args:
            database_url: SQLAlchemy URL (default: private in-memory SQLite database)
            echo: Log emitted SQL
            engine: Pre-built engine, overrides database_url
        """
        self.engine = engine or create_store_engine(database_url, echo=echo)
        self._session_factory = sessionmaker(bind=self.engine, autocommit=False, autoflush=False, expire_on_commit=False)
        self._lock = threading.RLock()
        Base.metadata.create_all(self.engine)

    def ping(self):
        """Raise KnowledgeBaseError if the database is unreachable."""
        try:
            with self._lock, self.engine.connect() as connection:
                connection.execute(text("SELECT 1"))
        except SQLAlchemyError as e:
            raise KnowledgeBaseError(f"Knowledge store unreachable: {e}") from e

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def upsert_chunk(self, chunk: Chunk) -> Chunk:
        """Insert or update the row keyed by ``(content_type, content_id, chunk_hash)``."""
        with self._lock, self._session_factory() as session:
            try:
                row = self._upsert(session, chunk)
                session.commit()
            except IntegrityError as e:
                session.rollback()
                raise self._consistency_error(chunk, e) from e
            return row.to_chunk()

    def commit_document(
        self, content_type: str, content_id: str, chunks: Iterable[Chunk], keep_hashes: Iterable[str], total_chunks: int
    ) -> list[Chunk]:
        """Write a document's new chunk set in one transaction.

        Upserts ``chunks``, restamps ``total_chunks`` on the kept rows and
        deactivates every other active row of the document.

        Returns:
            The rows that were deactivated
        """
        keep = set(keep_hashes)
        with self._lock, self._session_factory() as session:
            try:
                for chunk in chunks:
                    self._upsert(session, chunk)
                session.flush()

                session.execute(
                    update(ChunkRow)
                    .where(
                        ChunkRow.content_type == content_type,
                        ChunkRow.content_id == content_id,
                        ChunkRow.chunk_hash.in_(keep),
                        ChunkRow.total_chunks != total_chunks,
                    )
                    .values(total_chunks=total_chunks, updated_at=ChunkRow.updated_at)
                    .execution_options(synchronize_session=False)
                )
                deactivated = self._deactivate(session, content_type, content_id, keep, max_index=total_chunks)
                session.commit()
            except IntegrityError as e:
                session.rollback()
                logger.error(f"[STORE] Uniqueness violation while writing {content_type}/{content_id}: {e.orig}")
                raise ConsistencyError(
                    f"Uniqueness violation while writing {content_type}/{content_id}: {e.orig}"
                ) from e
        if deactivated:
            logger.debug(f"[STORE] Deactivated {len(deactivated)} stale chunk(s) of {content_type}/{content_id}")
        return deactivated

    def deactivate_chunks(
        self, content_type: str, content_id: str, exclude_hashes: Iterable[str] = (), max_index: int | None = None
    ) -> list[Chunk]:
        """Deactivate active rows of a document whose hash is not in ``exclude_hashes``.

        Rows at ``chunk_index >= max_index`` are deactivated as well when
        ``max_index`` is given.

        Returns:
            The rows that were deactivated
        """
        with self._lock, self._session_factory() as session:
            deactivated = self._deactivate(session, content_type, content_id, set(exclude_hashes), max_index)
            session.commit()
        return deactivated

    def delete_all_for_content(self, content_type: str, content_id: str) -> list[str]:
        """Hard-delete every row of a document.

        Returns:
            chunk_id of each deleted row
        """
        with self._lock, self._session_factory() as session:
            rows = session.scalars(
                select(ChunkRow).where(ChunkRow.content_type == content_type, ChunkRow.content_id == content_id)
            ).all()
            chunk_ids = [row.to_chunk().chunk_id for row in rows]
            session.execute(
                delete(ChunkRow).where(ChunkRow.content_type == content_type, ChunkRow.content_id == content_id)
            )
            session.commit()
        return chunk_ids

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def find_by_content_key(self, content_type: str, content_id: str, active_only: bool = False) -> list[Chunk]:
        """Return all rows of a document ordered by chunk index."""
        stmt = select(ChunkRow).where(ChunkRow.content_type == content_type, ChunkRow.content_id == content_id)
        if active_only:
            stmt = stmt.where(ChunkRow.is_active.is_(True))
        return self._fetch(stmt.order_by(ChunkRow.chunk_index, ChunkRow.id))

    def find_by_hash(self, content_type: str, content_id: str, chunk_hash: str) -> Chunk | None:
        rows = self._fetch(
            select(ChunkRow).where(
                ChunkRow.content_type == content_type,
                ChunkRow.content_id == content_id,
                ChunkRow.chunk_hash == chunk_hash,
            )
        )
        return rows[0] if rows else None

    def find_embedding(self, chunk_hash: str, embedding_model: str) -> list[float] | None:
        """Return any stored embedding of this text computed with ``embedding_model``."""
        with self._lock, self._session_factory() as session:
            embedding = session.scalars(
                select(ChunkRow.embedding)
                .where(
                    ChunkRow.chunk_hash == chunk_hash,
                    ChunkRow.embedding_model == embedding_model,
                    ChunkRow.embedding.is_not(None),
                )
                .limit(1)
            ).first()
        return list(embedding) if embedding is not None else None

    def query_active(
        self,
        content_type: str | None = None,
        content_id: str | None = None,
        language: str | None = None,
        chunk_hashes: Iterable[str] | None = None,
        limit: int | None = None,
        include_unlabelled: bool = False,
    ) -> list[Chunk]:
        """Return active rows matching every given filter.

        With ``include_unlabelled``, a ``language`` filter also matches rows
        that carry no language.
        """
        stmt = select(ChunkRow).where(ChunkRow.is_active.is_(True))
        if content_type is not None:
            stmt = stmt.where(ChunkRow.content_type == content_type)
        if content_id is not None:
            stmt = stmt.where(ChunkRow.content_id == content_id)
        if language is not None:
            if include_unlabelled:
                stmt = stmt.where(or_(ChunkRow.language == language, ChunkRow.language.is_(None)))
            else:
                stmt = stmt.where(ChunkRow.language == language)
        if chunk_hashes is not None:
            stmt = stmt.where(ChunkRow.chunk_hash.in_(set(chunk_hashes)))
        stmt = stmt.order_by(ChunkRow.content_type, ChunkRow.content_id, ChunkRow.chunk_index)
        if limit is not None:
            stmt = stmt.limit(limit)
        return self._fetch(stmt)

    def active_content_ids(self, content_type: str) -> set[str]:
        with self._lock, self._session_factory() as session:
            ids = session.scalars(
                select(ChunkRow.content_id)
                .where(ChunkRow.content_type == content_type, ChunkRow.is_active.is_(True))
                .distinct()
            ).all()
        return set(ids)

    def active_embedding_models(self) -> set[str]:
        """Embedding models used by active rows."""
        with self._lock, self._session_factory() as session:
            models = session.scalars(
                select(ChunkRow.embedding_model)
                .where(ChunkRow.is_active.is_(True), ChunkRow.embedding_model.is_not(None))
                .distinct()
            ).all()
        return set(models)

    def get_statistics(self) -> dict[str, Any]:
        """Chunk counts per content type."""
        with self._lock, self._session_factory() as session:
            active_rows = session.execute(
                select(
                    ChunkRow.content_type,
                    func.count(ChunkRow.id),
                    func.count(func.distinct(ChunkRow.content_id)),
                    func.avg(ChunkRow.word_count),
                    func.max(ChunkRow.updated_at),
                )
                .where(ChunkRow.is_active.is_(True))
                .group_by(ChunkRow.content_type)
            ).all()
            inactive = session.scalar(select(func.count(ChunkRow.id)).where(ChunkRow.is_active.is_(False)))

        by_type = {}
        for content_type, chunks, documents, avg_words, last_updated in active_rows:
            by_type[content_type] = {
                "active_chunks": chunks,
                "documents": documents,
                "avg_word_count": round(float(avg_words or 0), 1),
                "last_updated": to_utc(last_updated).isoformat() if last_updated else None,
            }
        return {
            "total_active_chunks": sum(stats["active_chunks"] for stats in by_type.values()),
            "total_documents": sum(stats["documents"] for stats in by_type.values()),
            "inactive_chunks": inactive or 0,
            "by_content_type": by_type,
        }

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _fetch(self, stmt) -> list[Chunk]:
        with self._lock, self._session_factory() as session:
            return [row.to_chunk() for row in session.scalars(stmt).all()]

    @staticmethod
    def _upsert(session: Session, chunk: Chunk) -> ChunkRow:
        row = session.scalars(
            select(ChunkRow).where(
                ChunkRow.content_type == chunk.content_type,
                ChunkRow.content_id == chunk.content_id,
                ChunkRow.chunk_hash == chunk.chunk_hash,
            )
        ).first()
        if row is None:
            row = ChunkRow(
                content_type=chunk.content_type,
                content_id=chunk.content_id,
                chunk_hash=chunk.chunk_hash,
            )
            session.add(row)
        row.chunk_index = chunk.chunk_index
        row.total_chunks = chunk.total_chunks
        row.chunk_text = chunk.text
        row.word_count = chunk.word_count
        row.embedding = chunk.embedding
        row.embedding_model = chunk.embedding_model
        row.chunk_metadata = dict(chunk.metadata)
        row.language = chunk.language
        row.last_modified = to_utc(chunk.last_modified)
        row.is_active = chunk.is_active
        row.updated_at = _utcnow()
        return row

    @staticmethod
    def _deactivate(
        session: Session, content_type: str, content_id: str, keep: set[str], max_index: int | None
    ) -> list[Chunk]:
        rows = session.scalars(
            select(ChunkRow).where(
                ChunkRow.content_type == content_type,
                ChunkRow.content_id == content_id,
                ChunkRow.is_active.is_(True),
            )
        ).all()
        deactivated = []
        for row in rows:
            stale = row.chunk_hash not in keep or (max_index is not None and row.chunk_index >= max_index)
            if stale:
                row.is_active = False
                row.updated_at = _utcnow()
                deactivated.append(row)
        session.flush()
        return [row.to_chunk() for row in deactivated]

    @staticmethod
    def _consistency_error(chunk: Chunk, error: IntegrityError) -> ConsistencyError:
        logger.error(f"[STORE] Uniqueness violation for chunk {chunk.chunk_id}: {error.orig}")
        return ConsistencyError(f"Chunk {chunk.chunk_id} violates the uniqueness constraint")
