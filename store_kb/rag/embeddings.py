"""Embedding computation with retries and content-addressed caching."""

import logging
import threading
import time
from collections.abc import Callable

from langchain_core.embeddings import Embeddings
from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from ..backends import embed_lmstudio, embed_ollama
from ..errors import TransientServiceError
from .hashing import ContentHasher

logger = logging.getLogger(__name__)


class BackendEmbeddings(Embeddings):
    """LangChain embeddings served by the configured Ollama or LM Studio backend."""

    def __init__(self, config):
        """Args:
        config: ServerConfig with EMBEDDING_BACKEND, EMBEDDING_MODEL and endpoints
        """
        self.config = config

    @property
    def model(self) -> str:
        return self.config.EMBEDDING_MODEL

    def embed_documents(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []
        if self.config.EMBEDDING_BACKEND == "ollama":
            return embed_ollama(texts, self.config)
        return embed_lmstudio(texts, self.config)

    def embed_query(self, text: str) -> list[float]:
        return self.embed_documents([text])[0]


class EmbeddingService:
    """Embeds chunk text at most once per ``(model, chunk_hash)``.

    Lookups go to an in-process TTL cache, then to embeddings already stored
    in the knowledge store (any document), and only then to the backend.
    Backend calls are retried with exponential backoff on
    :class:`TransientServiceError`; the last error is re-raised once the
    attempts are exhausted.
    """

    def __init__(
        self,
        embeddings: Embeddings,
        model: str,
        store=None,
        cache_ttl: int = 86400,
        retry_attempts: int = 5,
        retry_initial_delay: float = 1.0,
        retry_max_delay: float = 16.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """Initialize the service.

        Args:
            embeddings: LangChain embeddings implementation that performs the calls
            model: Identifier of the embedding model, recorded on every chunk
            store: Optional KnowledgeStore consulted for previously computed embeddings
            cache_ttl: Seconds an entry stays in the in-process cache (0 disables it)
            retry_attempts: Total attempts per request
            retry_initial_delay: First backoff delay in seconds, doubled each retry
            retry_max_delay: Upper bound for one backoff delay
            sleep: Sleep function used between retries
        """
        self.embeddings = embeddings
        self.model = model
        self.store = store
        self.cache_ttl = cache_ttl
        self.hasher = ContentHasher()

        self.calls = 0
        self.cache_hits = 0
        self.store_hits = 0

        self._cache: dict[tuple[str, str], tuple[float, list[float]]] = {}
        self._lock = threading.Lock()
        self._retrying = Retrying(
            retry=retry_if_exception_type(TransientServiceError),
            stop=stop_after_attempt(retry_attempts),
            wait=wait_exponential(multiplier=retry_initial_delay, min=retry_initial_delay, max=retry_max_delay),
            before_sleep=lambda retry_state: logger.warning(
                f"[EMBED] Retry {retry_state.attempt_number}/{retry_attempts} after: {retry_state.outcome.exception()}"
            ),
            sleep=sleep,
            reraise=True,
        )

    def embed(self, text: str, chunk_hash: str | None = None) -> list[float]:
        """Return the embedding of a chunk, computing it only if no copy exists.

        Raises:
            TransientServiceError: The backend kept failing after all retries
        """
        chunk_hash = chunk_hash or self.hasher.hash(text)
        key = (self.model, chunk_hash)

        cached = self._cache_get(key)
        if cached is not None:
            with self._lock:
                self.cache_hits += 1
            return cached

        if self.store is not None:
            stored = self.store.find_embedding(chunk_hash, self.model)
            if stored is not None:
                with self._lock:
                    self.store_hits += 1
                self._cache_put(key, stored)
                return stored

        vector = self._call(self.embeddings.embed_documents, [text])[0]
        self._cache_put(key, vector)
        return vector

    def embed_query(self, text: str) -> list[float]:
        """Embed a search query (never cached)."""
        return self._call(self.embeddings.embed_query, text)

    def clear_cache(self):
        with self._lock:
            self._cache.clear()

    def stats(self) -> dict:
        with self._lock:
            return {
                "model": self.model,
                "calls": self.calls,
                "cache_hits": self.cache_hits,
                "store_hits": self.store_hits,
                "cache_size": len(self._cache),
                "cache_ttl": self.cache_ttl,
            }

    def _call(self, fn, *args):
        def attempt():
            with self._lock:
                self.calls += 1
            return fn(*args)

        return self._retrying(attempt)

    def _cache_get(self, key: tuple[str, str]) -> list[float] | None:
        if self.cache_ttl <= 0:
            return None
        with self._lock:
            entry = self._cache.get(key)
            if entry is None:
                return None
            stored_at, vector = entry
            if time.monotonic() - stored_at > self.cache_ttl:
                del self._cache[key]
                return None
            return vector

    def _cache_put(self, key: tuple[str, str], vector: list[float]):
        if self.cache_ttl <= 0:
            return
        with self._lock:
            self._cache[key] = (time.monotonic(), vector)
