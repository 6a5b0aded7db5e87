"""Tests for embedding computation, backends and the vector index."""

import types
from concurrent.futures import ThreadPoolExecutor
from unittest.mock import MagicMock, patch

import pytest
import requests

from store_kb.backends import check_lmstudio_health, check_ollama_health, embed_lmstudio, embed_ollama
from store_kb.errors import KnowledgeBaseError, TransientServiceError
from store_kb.rag import embeddings as embeddings_module
from store_kb.rag.embeddings import BackendEmbeddings, EmbeddingService
from store_kb.rag.hashing import ContentHasher
from store_kb.rag.models import Chunk
from store_kb.rag.vectorstore import InMemoryVectorIndex, VectorStore


def mock_response(status_code=200, payload=None):
    response = MagicMock()
    response.status_code = status_code
    response.json.return_value = payload or {}
    if status_code >= 400:
        response.raise_for_status.side_effect = requests.HTTPError(f"{status_code} Client Error")
    return response


@pytest.mark.unit
class TestEmbeddingService:
    """Test caching, store reuse and retries."""

    def test_embed_is_cached_by_hash(self, embedding_service, fake_embeddings):
        first = embedding_service.embed("Contact support for a label.")
        second = embedding_service.embed("Contact support for a label.")

        assert first == second
        assert fake_embeddings.calls == 1
        assert embedding_service.cache_hits == 1

    def test_cache_disabled_with_zero_ttl(self, fake_embeddings, sleeps):
        service = EmbeddingService(fake_embeddings, model="test-embed", cache_ttl=0, sleep=sleeps.append)

        service.embed("Contact support for a label.")
        service.embed("Contact support for a label.")

        assert fake_embeddings.calls == 2
        assert service.stats()["cache_size"] == 0

    def test_call_counter_is_exact_across_threads(self, fake_embeddings):
        service = EmbeddingService(fake_embeddings, model="test-embed", cache_ttl=0)

        def embed_many(lane):
            for i in range(50):
                service.embed(f"lane {lane} text {i}")

        with ThreadPoolExecutor(max_workers=8) as pool:
            list(pool.map(embed_many, range(8)))

        assert service.stats()["calls"] == 400

    def test_expired_entry_is_recomputed(self, embedding_service, fake_embeddings, monkeypatch):
        clock = iter([0.0, 10_000.0, 10_000.0])
        monkeypatch.setattr(embeddings_module, "time", types.SimpleNamespace(monotonic=lambda: next(clock)))

        embedding_service.embed("Contact support for a label.")
        embedding_service.embed("Contact support for a label.")

        assert fake_embeddings.calls == 2
        assert embedding_service.cache_hits == 0

    def test_stored_embedding_reused(self, embedding_service, fake_embeddings, store):
        text = "Contact support for a label."
        store.upsert_chunk(
            Chunk(
                content_type="page",
                content_id="1",
                chunk_index=0,
                total_chunks=1,
                text=text,
                chunk_hash=ContentHasher().hash(text),
                word_count=5,
                embedding=[0.25, 0.75],
                embedding_model="test-embed",
            )
        )

        assert embedding_service.embed(text) == [0.25, 0.75]
        assert fake_embeddings.calls == 0
        assert embedding_service.store_hits == 1

    def test_transient_errors_retried_with_backoff(self, embedding_service, fake_embeddings, sleeps):
        fake_embeddings.fail_times = 2

        vector = embedding_service.embed("Contact support for a label.")

        assert vector == fake_embeddings.vector("Contact support for a label.")
        assert fake_embeddings.calls == 3
        assert sleeps == pytest.approx([0.01, 0.02])

    def test_exhausted_retries_reraise(self, embedding_service, fake_embeddings, sleeps):
        fake_embeddings.fail_times = 5

        with pytest.raises(TransientServiceError) as exc_info:
            embedding_service.embed("Contact support for a label.")

        assert exc_info.value.status_code == 429
        assert fake_embeddings.calls == 3
        assert len(sleeps) == 2

    def test_backoff_capped_at_max_delay(self, fake_embeddings, sleeps):
        service = EmbeddingService(
            fake_embeddings,
            model="test-embed",
            retry_attempts=6,
            retry_initial_delay=1.0,
            retry_max_delay=4.0,
            sleep=sleeps.append,
        )
        fake_embeddings.fail_times = 5

        service.embed("Contact support for a label.")

        assert sleeps == [1.0, 2.0, 4.0, 4.0, 4.0]

    def test_non_transient_errors_not_retried(self, fake_embeddings, sleeps):
        fake_embeddings.embed_documents = MagicMock(side_effect=KnowledgeBaseError("bad request"))
        service = EmbeddingService(fake_embeddings, model="test-embed", sleep=sleeps.append)

        with pytest.raises(KnowledgeBaseError):
            service.embed("Contact support for a label.")

        assert sleeps == []
        assert service.calls == 1

    def test_query_embeddings_are_not_cached(self, embedding_service, fake_embeddings):
        embedding_service.embed_query("return label")
        embedding_service.embed_query("return label")

        assert fake_embeddings.query_calls == 2
        assert embedding_service.stats()["cache_size"] == 0


@pytest.mark.unit
class TestBackendEmbeddings:
    """Test LangChain adapter over the HTTP backends."""

    def test_ollama_backend(self, default_config):
        default_config.EMBEDDING_BACKEND = "ollama"
        embeddings = BackendEmbeddings(default_config)

        with patch("store_kb.backends.requests.post") as mock_post:
            mock_post.return_value = mock_response(payload={"embeddings": [[0.1, 0.2], [0.3, 0.4]]})
            vectors = embeddings.embed_documents(["a", "b"])

        assert vectors == [[0.1, 0.2], [0.3, 0.4]]
        args, kwargs = mock_post.call_args
        assert args[0] == f"{default_config.OLLAMA_ENDPOINT}/api/embed"
        assert kwargs["json"] == {"model": default_config.EMBEDDING_MODEL, "input": ["a", "b"]}
        assert kwargs["timeout"] == (default_config.BACKEND_CONNECT_TIMEOUT, default_config.BACKEND_READ_TIMEOUT)

    def test_lmstudio_backend_orders_by_index(self, default_config):
        default_config.EMBEDDING_BACKEND = "lmstudio"
        embeddings = BackendEmbeddings(default_config)
        payload = {"data": [{"index": 1, "embedding": [0.3]}, {"index": 0, "embedding": [0.1]}]}

        with patch("store_kb.backends.requests.post", return_value=mock_response(payload=payload)) as mock_post:
            vectors = embeddings.embed_documents(["a", "b"])

        assert vectors == [[0.1], [0.3]]
        assert mock_post.call_args[0][0] == f"{default_config.LMSTUDIO_ENDPOINT}/embeddings"

    def test_embed_query(self, default_config):
        embeddings = BackendEmbeddings(default_config)

        with patch("store_kb.backends.requests.post", return_value=mock_response(payload={"embeddings": [[1.0]]})):
            assert embeddings.embed_query("hello") == [1.0]

    def test_empty_input_makes_no_request(self, default_config):
        with patch("store_kb.backends.requests.post") as mock_post:
            assert BackendEmbeddings(default_config).embed_documents([]) == []

        mock_post.assert_not_called()

    @pytest.mark.parametrize("status_code", [429, 500, 503])
    def test_retryable_status_is_transient(self, default_config, status_code):
        with patch("store_kb.backends.requests.post", return_value=mock_response(status_code)):
            with pytest.raises(TransientServiceError) as exc_info:
                embed_ollama(["a"], default_config)

        assert exc_info.value.status_code == status_code

    def test_client_error_is_not_transient(self, default_config):
        with patch("store_kb.backends.requests.post", return_value=mock_response(400)):
            with pytest.raises(KnowledgeBaseError) as exc_info:
                embed_lmstudio(["a"], default_config)

        assert not isinstance(exc_info.value, TransientServiceError)

    @pytest.mark.parametrize("error", [requests.Timeout("slow"), requests.ConnectionError("refused")])
    def test_network_errors_are_transient(self, default_config, error):
        with patch("store_kb.backends.requests.post", side_effect=error):
            with pytest.raises(TransientServiceError):
                embed_ollama(["a"], default_config)

    def test_wrong_embedding_count(self, default_config):
        with patch("store_kb.backends.requests.post", return_value=mock_response(payload={"embeddings": [[1.0]]})):
            with pytest.raises(KnowledgeBaseError, match="1 embeddings for 2 inputs"):
                embed_ollama(["a", "b"], default_config)


@pytest.mark.unit
class TestBackendHealth:
    """Test backend health checks."""

    def test_ollama_healthy_with_latest_tag(self, default_config):
        default_config.EMBEDDING_MODEL = "nomic-embed-text"
        payload = {"models": [{"name": "nomic-embed-text:latest"}]}

        with patch("store_kb.backends.requests.get", return_value=mock_response(payload=payload)):
            healthy, message = check_ollama_health(default_config)

        assert healthy is True
        assert "nomic-embed-text" in message

    def test_ollama_missing_model(self, default_config):
        payload = {"models": [{"name": "llama3:latest"}]}

        with patch("store_kb.backends.requests.get", return_value=mock_response(payload=payload)):
            healthy, message = check_ollama_health(default_config)

        assert healthy is False
        assert "llama3:latest" in message

    def test_ollama_unreachable(self, default_config):
        with patch("store_kb.backends.requests.get", side_effect=requests.ConnectionError()):
            healthy, message = check_ollama_health(default_config)

        assert healthy is False
        assert "Cannot connect" in message

    def test_lmstudio_no_models_loaded(self, default_config):
        with patch("store_kb.backends.requests.get", return_value=mock_response(payload={"data": []})):
            healthy, message = check_lmstudio_health(default_config)

        assert healthy is False
        assert "no models are loaded" in message

    def test_lmstudio_timeout(self, default_config):
        with patch("store_kb.backends.requests.get", side_effect=requests.Timeout()):
            healthy, message = check_lmstudio_health(default_config, timeout=3)

        assert healthy is False
        assert "3s" in message


@pytest.mark.unit
class TestInMemoryVectorIndex:
    """Test cosine search and filtering."""

    def test_protocol(self, vector_index):
        assert isinstance(vector_index, VectorStore)

    def test_search_orders_by_similarity(self, vector_index):
        vector_index.upsert("a", [1.0, 0.0], {"language": "en"})
        vector_index.upsert("b", [1.0, 1.0], {"language": "en"})
        vector_index.upsert("c", [0.0, 1.0], {"language": "fr"})

        results = vector_index.search([1.0, 0.1], k=2)

        assert [chunk_id for chunk_id, _ in results] == ["a", "b"]
        assert results[0][1] == pytest.approx(0.995, abs=1e-3)

    def test_filter_matches_metadata(self, vector_index):
        vector_index.upsert("a", [1.0, 0.0], {"language": "en"})
        vector_index.upsert("c", [0.0, 1.0], {"language": "fr"})

        results = vector_index.search([1.0, 0.0], k=5, filter={"language": "fr"})

        assert [chunk_id for chunk_id, _ in results] == ["c"]
        assert vector_index.search([1.0, 0.0], k=5, filter={"tenant": "x"}) == []

    def test_list_filter_matches_any_value(self, vector_index):
        vector_index.upsert("a", [1.0, 0.0], {"language": "en"})
        vector_index.upsert("b", [1.0, 0.1], {"language": None})
        vector_index.upsert("c", [1.0, 0.2], {"language": "fr"})

        results = vector_index.search([1.0, 0.0], k=5, filter={"language": ["en", None]})

        assert [chunk_id for chunk_id, _ in results] == ["a", "b"]

    def test_upsert_replaces_and_delete_removes(self):
        index = InMemoryVectorIndex()
        index.upsert("a", [1.0, 0.0], {})
        index.upsert("a", [0.0, 1.0], {})

        assert len(index) == 1
        assert index.search([0.0, 1.0], k=1)[0][1] == pytest.approx(1.0)

        index.delete(["a", "missing"])
        assert "a" not in index
        assert index.search([0.0, 1.0], k=1) == []

    def test_zero_query_vector(self, vector_index):
        vector_index.upsert("a", [1.0, 0.0], {})

        assert vector_index.search([0.0, 0.0], k=1) == []

    def test_dimension_mismatch(self, vector_index):
        vector_index.upsert("a", [1.0, 0.0], {})

        with pytest.raises(ValueError):
            vector_index.search([1.0, 0.0, 0.0], k=1)
