"""Shared pytest fixtures for knowledge base tests."""

import pytest
from langchain_core.embeddings import Embeddings

from store_kb.config import ServerConfig
from store_kb.errors import TransientServiceError
from store_kb.rag.config import RAGConfig
from store_kb.rag.embeddings import EmbeddingService
from store_kb.rag.indexer import Indexer
from store_kb.rag.models import ContentRecord
from store_kb.rag.retriever import Retriever
from store_kb.rag.sources import StaticContentSource
from store_kb.rag.store import KnowledgeStore
from store_kb.rag.vectorstore import InMemoryVectorIndex

RETURNS_BODY = "Returns are accepted within 30 days. Contact support for a label."

VOCABULARY = [
    "return",
    "refund",
    "label",
    "support",
    "shipping",
    "warranty",
    "shirt",
    "cotton",
    "price",
    "size",
    "days",
    "contact",
]


def pytest_configure(config):
    config.addinivalue_line("markers", "unit: fast tests without external services")


class KeywordEmbeddings(Embeddings):
    """Deterministic embeddings: one dimension per vocabulary word plus a small bias."""

    def __init__(self, fail_times: int = 0):
        self.calls = 0
        self.query_calls = 0
        self.fail_times = fail_times

    def vector(self, text: str) -> list[float]:
        lowered = text.lower()
        return [float(lowered.count(word)) for word in VOCABULARY] + [0.1]

    def _maybe_fail(self):
        if self.fail_times > 0:
            self.fail_times -= 1
            raise TransientServiceError("rate limited", status_code=429)

    def embed_documents(self, texts: list[str]) -> list[list[float]]:
        self.calls += 1
        self._maybe_fail()
        return [self.vector(text) for text in texts]

    def embed_query(self, text: str) -> list[float]:
        self.query_calls += 1
        self._maybe_fail()
        return self.vector(text)


def _make_record(content_id="42", body=RETURNS_BODY, content_type="page", **kwargs) -> ContentRecord:
    return ContentRecord(content_id=content_id, content_type=content_type, body=body, **kwargs)


@pytest.fixture
def returns_body():
    """The returns notice: two sentences that split into two page chunks."""
    return RETURNS_BODY


@pytest.fixture
def make_record():
    """Factory for ContentRecord (defaults: page 42 with the returns notice)."""
    return _make_record


@pytest.fixture
def default_config():
    """Provide a default ServerConfig instance for testing."""
    return ServerConfig()


@pytest.fixture
def rag_config():
    """RAGConfig with small page chunks and no progress bars."""
    return RAGConfig(
        embedding_model="test-embed",
        chunk_sizes={"page": 60, "policy": 200, "product": 200, "faq": 200},
        similarity_threshold=0.5,
        retry_attempts=3,
        retry_initial_delay=0.01,
        show_progress=False,
    )


@pytest.fixture
def store():
    """Private in-memory SQLite knowledge store."""
    return KnowledgeStore("sqlite://")


@pytest.fixture
def fake_embeddings():
    return KeywordEmbeddings()


@pytest.fixture
def sleeps():
    """Backoff delays requested by the embedding service."""
    return []


@pytest.fixture
def embedding_service(fake_embeddings, store, rag_config, sleeps):
    return EmbeddingService(
        fake_embeddings,
        model=rag_config.embedding_model,
        store=store,
        cache_ttl=3600,
        retry_attempts=rag_config.retry_attempts,
        retry_initial_delay=rag_config.retry_initial_delay,
        sleep=sleeps.append,
    )


@pytest.fixture
def vector_index():
    return InMemoryVectorIndex()


@pytest.fixture
def page_source():
    return StaticContentSource("page", [_make_record()])


@pytest.fixture
def make_indexer(store, embedding_service, vector_index, rag_config):
    """Factory building an Indexer over the shared store and vector index."""

    def _make(*sources, config=None):
        return Indexer(store, embedding_service, list(sources), vector_store=vector_index, config=config or rag_config)

    return _make


@pytest.fixture
def indexer(make_indexer, page_source):
    return make_indexer(page_source)


@pytest.fixture
def retriever(store, embedding_service, vector_index, rag_config):
    return Retriever(store, embedding_service, vector_index, config=rag_config)
