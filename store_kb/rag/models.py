"""Typed records passed through the indexing and retrieval pipeline."""

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any


def to_utc(value: datetime | None) -> datetime | None:
    """Return ``value`` as an aware UTC datetime (naive values are assumed UTC)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


@dataclass
class ContentRecord:
    """One logical document produced by a content source.

    ``(content_type, content_id)`` identifies the document. The body is plain
    text; markup is expected to be stripped by the source.
    """

    content_id: str
    content_type: str
    body: str
    title: str = ""
    url: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)
    language: str | None = None
    last_modified: datetime | None = None

    def __post_init__(self):
        if self.content_id is not None and not isinstance(self.content_id, str):
            self.content_id = str(self.content_id)
        self.last_modified = to_utc(self.last_modified)
        if self.metadata is None:
            self.metadata = {}


@dataclass
class ChunkDraft:
    """A chunk as produced by the chunker, before hashing and storage."""

    text: str
    chunk_index: int
    total_chunks: int
    word_count: int


@dataclass
class Chunk:
    """A stored chunk row."""

    content_type: str
    content_id: str
    chunk_index: int
    total_chunks: int
    text: str
    chunk_hash: str
    word_count: int
    embedding: list[float] | None = None
    embedding_model: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    language: str | None = None
    last_modified: datetime | None = None
    is_active: bool = True
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def chunk_id(self) -> str:
        """Stable identifier shared with the vector store."""
        return f"{self.content_type}:{self.content_id}:{self.chunk_hash}"

    def vector_metadata(self) -> dict[str, Any]:
        """Metadata attached to this chunk's vector."""
        return {
            "content_type": self.content_type,
            "content_id": self.content_id,
            "chunk_index": self.chunk_index,
            "language": self.language,
            "title": self.metadata.get("title", ""),
            "url": self.metadata.get("url", ""),
        }


@dataclass
class ItemResult:
    """Outcome of indexing a single content record."""

    content_type: str
    content_id: str
    chunks_processed: int = 0
    chunks_inserted: int = 0
    chunks_updated: int = 0
    chunks_skipped: int = 0
    chunks_deactivated: int = 0
    skipped: bool = False
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class IndexingRun:
    """In-flight state of one indexing pass over a single content type."""

    content_type: str
    current_content_type: str | None = None
    current_content_id: str | None = None
    batch_progress: float = 0.0
    total_items: int = 0
    items_processed: int = 0
    chunks_processed: int = 0
    chunks_inserted: int = 0
    chunks_updated: int = 0
    chunks_skipped: int = 0
    chunks_deactivated: int = 0
    errors: list[dict[str, str]] = field(default_factory=list)
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def record(self, result: ItemResult):
        """Accumulate the counters of one processed item."""
        self.items_processed += 1
        self.chunks_processed += result.chunks_processed
        self.chunks_inserted += result.chunks_inserted
        self.chunks_updated += result.chunks_updated
        self.chunks_skipped += result.chunks_skipped
        self.chunks_deactivated += result.chunks_deactivated
        for message in result.errors:
            self.errors.append({"content_id": result.content_id, "error": message})

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["started_at"] = _iso(self.started_at)
        return data


@dataclass
class RetrievalContext:
    """Caller context for a retrieval request.

    Attributes:
        language: Restrict candidates to this language when set
        content_type_preference: Content types to boost during re-ranking
        max_tokens: Token budget of the context window (None = configured default)
        filters: Extra vector-store filter keys, passed through unchanged
    """

    language: str | None = None
    content_type_preference: list[str] = field(default_factory=list)
    max_tokens: int | None = None
    filters: dict[str, Any] = field(default_factory=dict)


@dataclass
class ContextExcerpt:
    """One chunk included in a context window, with provenance."""

    chunk_id: str
    content_type: str
    content_id: str
    chunk_index: int
    title: str
    url: str
    text: str
    similarity: float
    score: float
    token_count: int
    updated_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["updated_at"] = _iso(self.updated_at)
        return data


@dataclass
class ContextWindow:
    """Ordered excerpts selected to ground one language-model call."""

    query: str
    max_tokens: int
    excerpts: list[ContextExcerpt] = field(default_factory=list)

    @property
    def total_tokens(self) -> int:
        return sum(excerpt.token_count for excerpt in self.excerpts)

    @property
    def is_empty(self) -> bool:
        return not self.excerpts

    def to_dict(self) -> dict[str, Any]:
        return {
            "query": self.query,
            "max_tokens": self.max_tokens,
            "total_tokens": self.total_tokens,
            "excerpts": [excerpt.to_dict() for excerpt in self.excerpts],
        }
