"""Content indexing and retrieval pipeline."""

from .chunker import ChunkingStrategy, estimate_tokens, normalize_text
from .config import RAGConfig
from .embeddings import BackendEmbeddings, EmbeddingService
from .hashing import ContentHasher
from .indexer import Indexer
from .models import (
    Chunk,
    ChunkDraft,
    ContentRecord,
    ContextExcerpt,
    ContextWindow,
    IndexingRun,
    ItemResult,
    RetrievalContext,
)
from .retriever import Retriever
from .sources import ContentSource, JsonContentSource, StaticContentSource, discover_json_sources
from .store import KnowledgeStore
from .vectorstore import InMemoryVectorIndex, VectorStore

__all__ = [
    "BackendEmbeddings",
    "Chunk",
    "ChunkDraft",
    "ChunkingStrategy",
    "ContentHasher",
    "ContentRecord",
    "ContentSource",
    "ContextExcerpt",
    "ContextWindow",
    "EmbeddingService",
    "InMemoryVectorIndex",
    "Indexer",
    "IndexingRun",
    "ItemResult",
    "JsonContentSource",
    "KnowledgeStore",
    "RAGConfig",
    "RetrievalContext",
    "Retriever",
    "StaticContentSource",
    "VectorStore",
    "discover_json_sources",
    "estimate_tokens",
    "normalize_text",
]
