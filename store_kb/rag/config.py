"""RAG configuration dataclass."""

from dataclasses import dataclass, field

from ..errors import ConfigurationError

DEFAULT_CONTENT_TYPES = ["product", "page", "post", "policy", "faq", "category"]

# Maximum characters per chunk, by content type
DEFAULT_CHUNK_SIZES = {
    "product": 800,
    "page": 1000,
    "post": 1200,
    "policy": 1000,
    "faq": 600,
    "category": 400,
}

DEFAULT_TYPE_PRIORITIES = {
    "product": 0.9,
    "faq": 0.85,
    "policy": 0.8,
    "page": 0.75,
    "post": 0.7,
    "category": 0.65,
    "unknown": 0.5,
}

# (query keywords, boosted content types, multiplier)
DEFAULT_QUERY_BOOSTS = [
    (("return", "returns", "refund", "policy", "shipping", "warranty"), ("policy",), 1.2),
    (("how", "what", "why", "when"), ("faq",), 1.15),
    (("product", "buy", "price", "sku", "stock"), ("product",), 1.2),
]

MIN_CHUNK_CHARS = 50
MAX_CHUNK_CHARS = 4000
MAX_BATCH_SIZE = 100


@dataclass
class RAGConfig:
    """Configuration for knowledge base indexing and retrieval.

    Attributes:
        embedding_model: Identifier of the embedding model used for chunks and queries
        content_types: Content types indexed by a full pass when none are requested

        # Chunking settings
        chunk_sizes: Maximum characters per chunk, keyed by content type
        max_chunk_chars: Chunk size for content types missing from chunk_sizes (default: 1000)
        overlap_ratio: Overlap between adjacent chunks as a fraction of chunk size (default: 0.1)
        chunk_overlaps: Optional per-type overlap overrides in characters, at most 50% of the size.

        # Indexing settings
        batch_size: Records processed per batch (default: 25, range 1-100)
        cache_ttl: Seconds an embedding stays in the in-process cache (default: 86400, 0 = disabled)
        max_execution_time: Time budget for a full pass in seconds, checked between documents (default: 300)
        cleanup_orphans: Deactivate chunks of documents no longer returned by their source (default: True)
        max_parallel_types: Content types indexed concurrently (default: 1)
        retry_attempts: Attempts per embedding request before giving up (default: 5)
        retry_initial_delay: First backoff delay in seconds, doubled each retry (default: 1.0)
        retry_max_delay: Upper bound for a single backoff delay (default: 16.0)

        # Retrieval settings
        search_top_k: Candidates requested from the vector store (default: 20)
        similarity_threshold: Minimum cosine similarity for a candidate (default: 0.7)
        max_context_tokens: Default token budget of a context window (default: 4000)
        max_context_chunks: Maximum excerpts per context window (default: 8)
        similarity_weight: Re-rank weight of vector similarity (default: 0.7)
        type_priority_weight: Re-rank weight of content-type priority (default: 0.2)
        freshness_weight: Re-rank weight of chunk freshness (default: 0.1)
            The three weights must sum to 1.0.
        content_type_priorities: Priority table by content type. "unknown" is the fallback.
        query_boosts: (keywords, content types, multiplier) rules applied to the priority table
    """

    embedding_model: str = "nomic-embed-text"
    content_types: list[str] = field(default_factory=lambda: list(DEFAULT_CONTENT_TYPES))

    # Chunking settings
    chunk_sizes: dict[str, int] = field(default_factory=lambda: dict(DEFAULT_CHUNK_SIZES))
    max_chunk_chars: int = 1000
    overlap_ratio: float = 0.1
    chunk_overlaps: dict[str, int] = field(default_factory=dict)

    # Indexing settings
    batch_size: int = 25
    cache_ttl: int = 86400  # 24 hours
    max_execution_time: float = 300.0
    cleanup_orphans: bool = True
    max_parallel_types: int = 1
    retry_attempts: int = 5
    retry_initial_delay: float = 1.0
    retry_max_delay: float = 16.0
    show_progress: bool = True

    # Retrieval settings
    search_top_k: int = 20
    similarity_threshold: float = 0.7
    max_context_tokens: int = 4000
    max_context_chunks: int = 8
    similarity_weight: float = 0.7
    type_priority_weight: float = 0.2
    freshness_weight: float = 0.1
    content_type_priorities: dict[str, float] = field(default_factory=lambda: dict(DEFAULT_TYPE_PRIORITIES))
    query_boosts: list[tuple] = field(default_factory=lambda: list(DEFAULT_QUERY_BOOSTS))

    def __post_init__(self):
        """Validate ranges and re-rank weights."""
        validate_batch_size(self.batch_size)
        validate_cache_ttl(self.cache_ttl)

        total_weight = self.similarity_weight + self.type_priority_weight + self.freshness_weight
        if abs(total_weight - 1.0) > 0.01:  # Allow small floating point error
            raise ConfigurationError(
                f"Re-rank weights must sum to 1.0, got {total_weight} "
                f"(similarity={self.similarity_weight}, type_priority={self.type_priority_weight}, "
                f"freshness={self.freshness_weight})"
            )

        if not 0 <= self.overlap_ratio < 0.5:
            raise ConfigurationError(f"overlap_ratio must be in [0, 0.5), got {self.overlap_ratio}")

        self._validate_chunk_size("default", self.max_chunk_chars)
        for content_type, size in self.chunk_sizes.items():
            self._validate_chunk_size(content_type, size)
        for content_type in set(self.chunk_sizes) | set(self.chunk_overlaps):
            size, overlap = self.chunk_settings(content_type)
            if overlap < 0 or overlap * 2 > size:
                raise ConfigurationError(
                    f"Overlap for '{content_type}' must be between 0 and 50% of the chunk size "
                    f"({size}), got {overlap}"
                )

        if not 0.0 <= self.similarity_threshold <= 1.0:
            raise ConfigurationError(f"similarity_threshold must be in [0, 1], got {self.similarity_threshold}")
        for name in ("search_top_k", "max_context_tokens", "max_context_chunks", "retry_attempts", "max_parallel_types"):
            if getattr(self, name) < 1:
                raise ConfigurationError(f"{name} must be at least 1, got {getattr(self, name)}")
        if self.max_execution_time is not None and self.max_execution_time < 0:
            raise ConfigurationError(f"max_execution_time must be >= 0, got {self.max_execution_time}")

    def chunk_settings(self, content_type: str) -> tuple[int, int]:
        """Return ``(max_chunk_chars, overlap_chars)`` for a content type."""
        size = self.chunk_sizes.get(content_type, self.max_chunk_chars)
        overlap = self.chunk_overlaps.get(content_type, int(size * self.overlap_ratio))
        return size, overlap

    @staticmethod
    def _validate_chunk_size(content_type: str, size: int):
        if not MIN_CHUNK_CHARS <= size <= MAX_CHUNK_CHARS:
            raise ConfigurationError(
                f"Chunk size for '{content_type}' must be between {MIN_CHUNK_CHARS} and {MAX_CHUNK_CHARS}, got {size}"
            )


def validate_batch_size(batch_size: int):
    """Raise ConfigurationError unless ``batch_size`` is an int in 1-100."""
    if isinstance(batch_size, bool) or not isinstance(batch_size, int) or not 1 <= batch_size <= MAX_BATCH_SIZE:
        raise ConfigurationError(f"Batch size must be an integer between 1 and {MAX_BATCH_SIZE}, got {batch_size!r}")


def validate_cache_ttl(seconds: int):
    """Raise ConfigurationError unless ``seconds`` is a non-negative int."""
    if isinstance(seconds, bool) or not isinstance(seconds, int) or seconds < 0:
        raise ConfigurationError(f"Cache TTL must be a non-negative integer, got {seconds!r}")
