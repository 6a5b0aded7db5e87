"""Query-time chunk selection and context window assembly.

Retrieval pipeline:
1. Embed the query with the indexing model
2. Top-K candidates from the vector store (active chunks in the caller language or unlabelled)
3. Drop candidates below the similarity threshold
4. Re-rank by similarity, content-type priority and freshness
5. Pack whole chunks into the token budget
"""

import logging
import re
from datetime import datetime, timezone
from typing import Any

from ..errors import EmbeddingModelMismatchError, TransientServiceError, ValidationError
from .chunker import estimate_tokens
from .config import RAGConfig
from .embeddings import EmbeddingService
from .models import Chunk, ContextExcerpt, ContextWindow, RetrievalContext
from .store import KnowledgeStore
from .vectorstore import VectorStore

logger = logging.getLogger(__name__)

_WORD = re.compile(r"[a-z0-9']+")

# (max age in days, score)
FRESHNESS_BUCKETS = [(7, 1.0), (30, 0.9), (90, 0.7), (365, 0.5)]
FRESHNESS_STALE = 0.3
FRESHNESS_UNKNOWN = 0.5

# Scores closer than this are ordered by recency
TIE_PRECISION = 3


def freshness_score(updated_at: datetime | None, now: datetime | None = None) -> float:
    """Score in [0, 1] that decays with the age of a chunk."""
    if updated_at is None:
        return FRESHNESS_UNKNOWN
    now = now or datetime.now(timezone.utc)
    if updated_at.tzinfo is None:
        updated_at = updated_at.replace(tzinfo=timezone.utc)
    age_days = (now - updated_at).total_seconds() / 86400
    for max_days, score in FRESHNESS_BUCKETS:
        if age_days <= max_days:
            return score
    return FRESHNESS_STALE


class Retriever:
    """Builds token-bounded context windows from the knowledge base."""

    def __init__(
        self,
        store: KnowledgeStore,
        embedding_service: EmbeddingService,
        vector_store: VectorStore,
        config: RAGConfig | None = None,
    ):
        self.store = store
        self.embedding_service = embedding_service
        self.vector_store = vector_store
        self.config = config or RAGConfig()

    def retrieve(self, query_text: str, context: RetrievalContext | None = None) -> ContextWindow:
        """Select the chunks that best ground an answer to ``query_text``.

        Args:
            query_text: The user's question
            context: Language, preferred content types, token budget and extra filters

        Returns:
            ContextWindow, empty when no candidate clears the similarity threshold
            or the embedding service is unavailable

        Raises:
            ValidationError: query_text is blank
            EmbeddingModelMismatchError: Active chunks were embedded with another model
        """
        if not query_text or not query_text.strip():
            raise ValidationError("query_text")
        context = context or RetrievalContext()
        max_tokens = context.max_tokens if context.max_tokens is not None else self.config.max_context_tokens
        window = ContextWindow(query=query_text, max_tokens=max_tokens)

        model = self.embedding_service.model
        foreign = self.store.active_embedding_models() - {model}
        if foreign:
            raise EmbeddingModelMismatchError(model, foreign)

        try:
            query_vector = self.embedding_service.embed_query(query_text)
        except TransientServiceError as e:
            logger.warning(f"[RETRIEVER] Query embedding failed, returning empty context: {e}")
            return window

        search_filter = dict(context.filters)
        if context.language:
            search_filter["language"] = [context.language, None]

        try:
            candidates = self.vector_store.search(query_vector, self.config.search_top_k, search_filter or None)
        except TransientServiceError as e:
            logger.warning(f"[RETRIEVER] Vector search failed, returning empty context: {e}")
            return window

        similarities = {
            chunk_id: score for chunk_id, score in candidates if score >= self.config.similarity_threshold
        }
        logger.debug(
            f"[RETRIEVER] {len(candidates)} candidates, {len(similarities)} above "
            f"threshold {self.config.similarity_threshold}"
        )
        if not similarities:
            return window

        chunks = self._load_active(similarities, context.language)
        ranked = self._rerank(query_text, chunks, similarities, context.content_type_preference)
        window.excerpts = self._pack(ranked, max_tokens)

        logger.debug(f"[RETRIEVER] Context window: {len(window.excerpts)} excerpts, {window.total_tokens} tokens")
        return window

    def _load_active(self, similarities: dict[str, float], language: str | None) -> list[Chunk]:
        """Resolve candidate ids to active stored chunks."""
        hashes = {chunk_id.rsplit(":", 1)[-1] for chunk_id in similarities}
        chunks = self.store.query_active(chunk_hashes=hashes, language=language, include_unlabelled=True)
        return [chunk for chunk in chunks if chunk.chunk_id in similarities]

    def _rerank(
        self, query: str, chunks: list[Chunk], similarities: dict[str, float], preference: list[str]
    ) -> list[tuple[float, float, Chunk]]:
        """Return ``(score, similarity, chunk)`` tuples, best first."""
        now = datetime.now(timezone.utc)
        priorities = self._type_priorities(query, preference)
        fallback = priorities.get("unknown", 0.5)

        scored = []
        for chunk in chunks:
            similarity = similarities[chunk.chunk_id]
            score = (
                self.config.similarity_weight * similarity
                + self.config.type_priority_weight * priorities.get(chunk.content_type, fallback)
                + self.config.freshness_weight * freshness_score(chunk.updated_at, now)
            )
            scored.append((score, similarity, chunk))

        epoch = datetime.min.replace(tzinfo=timezone.utc)
        scored.sort(key=lambda item: (round(item[0], TIE_PRECISION), item[2].updated_at or epoch), reverse=True)
        return scored

    def _type_priorities(self, query: str, preference: list[str]) -> dict[str, float]:
        """Priority table adjusted for query intent and caller preference, capped at 1.0."""
        priorities = dict(self.config.content_type_priorities)
        words = set(_WORD.findall(query.lower()))

        for keywords, content_types, multiplier in self.config.query_boosts:
            if words.intersection(keywords):
                for content_type in content_types:
                    base = priorities.get(content_type, priorities.get("unknown", 0.5))
                    priorities[content_type] = min(base * multiplier, 1.0)

        for content_type in preference or []:
            base = priorities.get(content_type, priorities.get("unknown", 0.5))
            priorities[content_type] = min(base * 1.2, 1.0)
        return priorities

    def _pack(self, ranked: list[tuple[float, float, Chunk]], max_tokens: int) -> list[ContextExcerpt]:
        """Greedily add whole chunks while they fit the budget."""
        excerpts: list[ContextExcerpt] = []
        used = 0
        for score, similarity, chunk in ranked:
            if len(excerpts) >= self.config.max_context_chunks:
                break
            tokens = estimate_tokens(chunk.text)
            if used + tokens > max_tokens:
                continue
            used += tokens
            excerpts.append(
                ContextExcerpt(
                    chunk_id=chunk.chunk_id,
                    content_type=chunk.content_type,
                    content_id=chunk.content_id,
                    chunk_index=chunk.chunk_index,
                    title=chunk.metadata.get("title", ""),
                    url=chunk.metadata.get("url", ""),
                    text=chunk.text,
                    similarity=round(similarity, 4),
                    score=round(score, 4),
                    token_count=tokens,
                    updated_at=chunk.updated_at,
                )
            )
        return excerpts

    def describe(self) -> dict[str, Any]:
        return {
            "embedding_model": self.embedding_service.model,
            "search_top_k": self.config.search_top_k,
            "similarity_threshold": self.config.similarity_threshold,
            "max_context_tokens": self.config.max_context_tokens,
            "max_context_chunks": self.config.max_context_chunks,
        }
