"""Exception types raised by the knowledge base pipeline."""


class KnowledgeBaseError(Exception):
    """Base class for all knowledge base errors."""


class ValidationError(KnowledgeBaseError):
    """A content record is malformed. Never retried."""

    def __init__(self, field: str, message: str | None = None):
        self.field = field
        super().__init__(message or f"Missing required field: '{field}'")


class ConfigurationError(KnowledgeBaseError):
    """A configuration value is out of range."""


class TransientServiceError(KnowledgeBaseError):
    """Network, timeout or rate-limit failure from an external service."""

    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)


class ConsistencyError(KnowledgeBaseError):
    """A write would violate the chunk uniqueness invariant."""


class EmbeddingModelMismatchError(KnowledgeBaseError):
    """The query embedding model differs from the model used for stored chunks."""

    def __init__(self, query_model: str, stored_models):
        self.query_model = query_model
        self.stored_models = sorted(stored_models)
        super().__init__(
            f"Query model '{query_model}' does not match indexed embedding model(s): {', '.join(self.stored_models)}"
        )


class IndexingInProgressError(KnowledgeBaseError):
    """An indexing pass over the same content type is already running."""

    def __init__(self, content_type: str):
        self.content_type = content_type
        super().__init__(f"Indexing already in progress for content type '{content_type}'")


class SourceError(KnowledgeBaseError):
    """A content source could not be read."""


__all__ = [
    "ConfigurationError",
    "ConsistencyError",
    "EmbeddingModelMismatchError",
    "IndexingInProgressError",
    "KnowledgeBaseError",
    "SourceError",
    "TransientServiceError",
    "ValidationError",
]
