"""Store Knowledge Base - content indexing and retrieval for a RAG shopping assistant."""

from .config import ServerConfig
from .errors import (
    ConfigurationError,
    ConsistencyError,
    EmbeddingModelMismatchError,
    IndexingInProgressError,
    KnowledgeBaseError,
    SourceError,
    TransientServiceError,
    ValidationError,
)
from .server import KnowledgeServer
from .tools import create_knowledge_search_tool, format_context_window

# The pipeline lives in store_kb.rag:
# from store_kb.rag import Indexer, Retriever, KnowledgeStore, RAGConfig

__version__ = "0.1.0"
__all__ = [
    "ConfigurationError",
    "ConsistencyError",
    "EmbeddingModelMismatchError",
    "IndexingInProgressError",
    "KnowledgeBaseError",
    "KnowledgeServer",
    "ServerConfig",
    "SourceError",
    "TransientServiceError",
    "ValidationError",
    "create_knowledge_search_tool",
    "format_context_window",
]
