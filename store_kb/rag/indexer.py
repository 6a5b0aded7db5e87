"""Incremental indexing of store content into the knowledge base.

Pipeline per document: chunk -> hash -> dedup against stored rows -> embed
what is new -> write the document's new chunk set in one transaction ->
sync the vector store. A document whose embeddings cannot all be computed
is left at its previous state.
"""

import itertools
import json
import logging
import sys
import threading
import time
from collections.abc import Iterable
from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import datetime, timezone
from typing import Any

from tqdm import tqdm

from ..errors import (
    ConfigurationError,
    ConsistencyError,
    IndexingInProgressError,
    KnowledgeBaseError,
    TransientServiceError,
    ValidationError,
)
from .chunker import ChunkingStrategy
from .config import RAGConfig, validate_batch_size, validate_cache_ttl
from .embeddings import EmbeddingService
from .hashing import ContentHasher
from .models import Chunk, ContentRecord, IndexingRun, ItemResult
from .sources import ContentSource
from .store import KnowledgeStore
from .vectorstore import VectorStore

logger = logging.getLogger(__name__)


class Indexer:
    """Indexes content sources into a KnowledgeStore.

    One IndexingRun exists per content type while it is being indexed, so
    different content types can be indexed concurrently while a second
    pass over a busy type is rejected.
    """

    def __init__(
        self,
        store: KnowledgeStore,
        embedding_service: EmbeddingService,
        sources: Iterable[ContentSource] | dict[str, ContentSource] = (),
        vector_store: VectorStore | None = None,
        config: RAGConfig | None = None,
        chunker: ChunkingStrategy | None = None,
        hasher: ContentHasher | None = None,
    ):
        """Initialize the indexer.

        Args:
            store: Chunk persistence
            embedding_service: Computes (or reuses) chunk embeddings
            sources: Content sources, as a list or keyed by content type
            vector_store: Optional vector index kept in sync with active chunks
            config: RAG configuration (defaults to RAGConfig())
            chunker: Chunking strategy (defaults to ChunkingStrategy())
            hasher: Chunk fingerprinting (defaults to ContentHasher())
        """
        self.store = store
        self.embedding_service = embedding_service
        self.vector_store = vector_store
        self.config = config or RAGConfig()
        self.chunker = chunker or ChunkingStrategy()
        self.hasher = hasher or ContentHasher()

        if isinstance(sources, dict):
            self.sources = dict(sources)
        else:
            self.sources = {source.content_type: source for source in sources}

        self._runs: dict[str, IndexingRun] = {}
        self._runs_lock = threading.Lock()
        self._last_report: dict[str, Any] | None = None

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    def register_source(self, source: ContentSource):
        self.sources[source.content_type] = source

    def set_batch_size(self, batch_size: int):
        """Set records per batch (1-100). Raises ConfigurationError otherwise."""
        validate_batch_size(batch_size)
        self.config.batch_size = batch_size

    def set_cache_ttl(self, seconds: int):
        """Set the embedding cache TTL in seconds (>= 0). Raises ConfigurationError otherwise."""
        validate_cache_ttl(seconds)
        self.config.cache_ttl = seconds
        self.embedding_service.cache_ttl = seconds

    # ------------------------------------------------------------------
    # Single document
    # ------------------------------------------------------------------

    def index_single_item(self, record: ContentRecord, force_reindex: bool = False) -> ItemResult:
        """Index one document, writing only what changed.

        Args:
            record: The document to index
            force_reindex: Rewrite every chunk even if unchanged. Stored embeddings are still reused.

        Returns:
            ItemResult with per-chunk counters. ``skipped`` is True when nothing was written.

        Raises:
            ValidationError: content_id, content_type or body is empty
            ConsistencyError: The store rejected the write
        """
        self._validate(record)
        content_type, content_id = record.content_type, record.content_id
        result = ItemResult(content_type=content_type, content_id=content_id)

        max_chars, overlap = self.config.chunk_settings(content_type)
        drafts = self.chunker.chunk(record.body, content_type, max_chars, overlap)
        if not drafts:
            logger.debug(f"[INDEXER] {content_type}/{content_id} has no text after normalization, skipping")
            result.skipped = True
            return result

        existing = {chunk.chunk_hash: chunk for chunk in self.store.find_by_content_key(content_type, content_id)}
        metadata = self._chunk_metadata(record)
        model = self.embedding_service.model
        total = len(drafts)

        writes: list[Chunk] = []
        seen: set[str] = set()
        for draft in drafts:
            result.chunks_processed += 1
            chunk_hash = self.hasher.hash(draft.text)
            if chunk_hash in seen:
                # Identical text twice in one document is stored once
                result.chunks_skipped += 1
                continue
            seen.add(chunk_hash)

            stored = existing.get(chunk_hash)
            if (
                stored is not None
                and not force_reindex
                and self._is_current(stored, record, metadata, draft.chunk_index, model)
            ):
                result.chunks_skipped += 1
                continue

            try:
                if stored is not None and stored.embedding is not None and stored.embedding_model == model:
                    embedding = stored.embedding
                else:
                    embedding = self.embedding_service.embed(draft.text, chunk_hash)
            except TransientServiceError as e:
                result.errors.append(f"chunk {draft.chunk_index}: {e}")
                continue

            writes.append(
                Chunk(
                    content_type=content_type,
                    content_id=content_id,
                    chunk_index=draft.chunk_index,
                    total_chunks=total,
                    text=draft.text,
                    chunk_hash=chunk_hash,
                    word_count=draft.word_count,
                    embedding=embedding,
                    embedding_model=model,
                    metadata=metadata,
                    language=record.language,
                    last_modified=record.last_modified,
                    is_active=True,
                )
            )
            if stored is None:
                result.chunks_inserted += 1
            else:
                result.chunks_updated += 1

        if result.errors:
            logger.warning(
                f"[INDEXER] {content_type}/{content_id} left unchanged: "
                f"{len(result.errors)} chunk(s) could not be embedded"
            )
            result.chunks_inserted = result.chunks_updated = 0
            return result

        if self.vector_store is not None:
            for chunk in writes:
                self.vector_store.upsert(chunk.chunk_id, chunk.embedding, chunk.vector_metadata())

        try:
            deactivated = self.store.commit_document(
                content_type, content_id, writes, keep_hashes=seen, total_chunks=total
            )
        except ConsistencyError:
            if self.vector_store is not None:
                # Vectors of chunks that never reached the store
                self.vector_store.delete([chunk.chunk_id for chunk in writes if chunk.chunk_hash not in existing])
            raise
        if deactivated and self.vector_store is not None:
            self.vector_store.delete([chunk.chunk_id for chunk in deactivated])

        result.chunks_deactivated = len(deactivated)
        result.skipped = not writes and not deactivated
        logger.debug(
            f"[INDEXER] {content_type}/{content_id}: {result.chunks_inserted} inserted, "
            f"{result.chunks_updated} updated, {result.chunks_skipped} skipped, "
            f"{result.chunks_deactivated} deactivated"
        )
        return result

    def remove_content(self, content_id: str, content_type: str) -> bool:
        """Hard-delete every chunk of a document.

        Returns:
            True if any chunk was deleted
        """
        if not content_id:
            raise ValidationError("content_id")
        if not content_type:
            raise ValidationError("content_type")

        chunk_ids = self.store.delete_all_for_content(content_type, str(content_id))
        if chunk_ids and self.vector_store is not None:
            self.vector_store.delete(chunk_ids)
        logger.info(f"[INDEXER] Removed {len(chunk_ids)} chunk(s) of {content_type}/{content_id}")
        return bool(chunk_ids)

    # ------------------------------------------------------------------
    # Passes
    # ------------------------------------------------------------------

    def index_content_type(
        self, content_type: str, force_reindex: bool = False, max_execution_time: float | None = None
    ) -> dict[str, Any]:
        """Index every record of one content type in batches.

        The time budget is checked between documents only, so a document is
        always written completely or not at all. Orphan cleanup runs only
        after a complete pass.

        Args:
            content_type: Content type to index
            force_reindex: Passed to index_single_item
            max_execution_time: Optional time budget in seconds

        Returns:
            Summary dict with item and chunk counters, per-item errors and processing_time

        Raises:
            ConfigurationError: No source is registered for the content type
            IndexingInProgressError: The content type is already being indexed
        """
        source = self.sources.get(content_type)
        if source is None:
            raise ConfigurationError(f"No content source registered for '{content_type}'")

        deadline = time.monotonic() + max_execution_time if max_execution_time else None
        start_time = time.time()
        run = self._start_run(content_type)
        truncated = False
        listed_ids: set[str] = set()
        orphans = 0

        try:
            run.total_items = self._count(source)
            logger.info(f"[INDEXER] Indexing '{content_type}' ({run.total_items or 'unknown'} items)")

            records = iter(source.list_all())
            pbar = tqdm(
                total=run.total_items or None,
                desc=f"Indexing {content_type}",
                unit="doc",
                disable=not self.config.show_progress,
                file=sys.stderr,
            )
            with pbar:
                while not truncated:
                    batch = list(itertools.islice(records, self.config.batch_size))
                    if not batch:
                        break
                    for record in batch:
                        if deadline is not None and time.monotonic() >= deadline:
                            logger.warning(f"[INDEXER] Time budget exhausted while indexing '{content_type}'")
                            truncated = True
                            break
                        listed_ids.add(str(record.content_id))
                        self._process_record(run, record, force_reindex)
                        pbar.update(1)
                        pbar.set_postfix_str(
                            f"inserted={run.chunks_inserted}, updated={run.chunks_updated}, errors={len(run.errors)}",
                            refresh=False,
                        )

            if self.config.cleanup_orphans and not truncated:
                orphans = self._cleanup_orphans(content_type, listed_ids)
        finally:
            self._finish_run(content_type)

        summary = {
            "items_processed": run.items_processed,
            "chunks_processed": run.chunks_processed,
            "chunks_inserted": run.chunks_inserted,
            "chunks_updated": run.chunks_updated,
            "chunks_skipped": run.chunks_skipped,
            "chunks_deactivated": run.chunks_deactivated,
            "orphans_deactivated": orphans,
            "errors": run.errors,
            "truncated": truncated,
            "processing_time": round(time.time() - start_time, 3),
        }
        logger.info(
            f"[INDEXER] '{content_type}' done in {summary['processing_time']:.1f}s: "
            f"{run.items_processed} items, {run.chunks_inserted} inserted, {run.chunks_updated} updated, "
            f"{run.chunks_skipped} skipped, {len(run.errors)} errors"
        )
        return summary

    def index_all_content(
        self,
        content_types: list[str] | None = None,
        force_reindex: bool = False,
        max_execution_time: float | None = None,
    ) -> dict[str, Any]:
        """Index several content types, isolating failures per type.

        Args:
            content_types: Types to index (default: config.content_types that have a source)
            force_reindex: Passed to every index_content_type call
            max_execution_time: Time budget for the whole pass (default: config.max_execution_time, 0 = none)

        Returns:
            Report with success, statistics, processing_summary (per type), errors and timestamp

        Raises:
            KnowledgeBaseError: The store is unreachable, so no type could be started
        """
        if content_types is None:
            content_types = [ct for ct in self.config.content_types if ct in self.sources]
        if max_execution_time is None:
            max_execution_time = self.config.max_execution_time

        self.store.ping()

        logger.info("[INDEXER] " + "=" * 70)
        logger.info(f"[INDEXER] Starting indexing pass: {', '.join(content_types) or 'nothing to index'}")
        logger.info("[INDEXER] " + "=" * 70)

        deadline = time.monotonic() + max_execution_time if max_execution_time else None
        summary: dict[str, dict[str, Any]] = {}
        errors: list[dict[str, str]] = []

        def index_type(content_type: str) -> dict[str, Any]:
            remaining = None
            if deadline is not None:
                remaining = max(deadline - time.monotonic(), 0.001)
            return self.index_content_type(content_type, force_reindex=force_reindex, max_execution_time=remaining)

        if self.config.max_parallel_types > 1 and len(content_types) > 1:
            with ThreadPoolExecutor(max_workers=self.config.max_parallel_types) as executor:
                futures = {executor.submit(index_type, ct): ct for ct in content_types}
                for future in as_completed(futures):
                    content_type = futures[future]
                    try:
                        summary[content_type] = future.result()
                    except Exception as e:
                        self._record_type_failure(content_type, e, errors)
        else:
            for content_type in content_types:
                try:
                    summary[content_type] = index_type(content_type)
                except Exception as e:
                    self._record_type_failure(content_type, e, errors)

        progressed = any(stats["items_processed"] > 0 for stats in summary.values())
        report = {
            "success": progressed or not errors,
            "statistics": self.get_statistics(),
            "processing_summary": {ct: summary[ct] for ct in content_types if ct in summary},
            "errors": errors,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        self._last_report = report

        logger.info(
            f"[INDEXER] Pass complete: {len(summary)}/{len(content_types)} content types indexed, "
            f"{len(errors)} failed"
        )
        return report

    def sync_vector_store(self) -> int:
        """Upsert every active stored embedding into the vector store.

        Returns:
            Number of vectors written
        """
        if self.vector_store is None:
            return 0
        count = 0
        for chunk in self.store.query_active():
            if chunk.embedding is None:
                continue
            self.vector_store.upsert(chunk.chunk_id, chunk.embedding, chunk.vector_metadata())
            count += 1
        logger.info(f"[INDEXER] Vector store synced with {count} active chunks")
        return count

    # ------------------------------------------------------------------
    # Observability
    # ------------------------------------------------------------------

    def is_processing(self, content_type: str | None = None) -> bool:
        """True while an IndexingRun (for ``content_type``, or any) has a current content type."""
        with self._runs_lock:
            if content_type is not None:
                run = self._runs.get(content_type)
                return run is not None and run.current_content_type is not None
            return any(run.current_content_type is not None for run in self._runs.values())

    def get_processing_status(self) -> dict[str, Any]:
        """Snapshot of in-flight runs keyed by content type."""
        with self._runs_lock:
            runs = {content_type: run.to_dict() for content_type, run in self._runs.items()}
        return {
            "is_processing": any(run["current_content_type"] is not None for run in runs.values()),
            "runs": runs,
        }

    def get_statistics(self) -> dict[str, Any]:
        max_chars, overlap = self.config.chunk_settings("default")
        return {
            "store": self.store.get_statistics(),
            "embeddings": self.embedding_service.stats(),
            "configuration": {
                "batch_size": self.config.batch_size,
                "cache_ttl": self.config.cache_ttl,
                "embedding_model": self.embedding_service.model,
                "chunk_sizes": dict(self.config.chunk_sizes),
                "default_chunk_size": max_chars,
                "default_overlap": overlap,
                "content_types": sorted(self.sources),
            },
            "is_processing": self.is_processing(),
            "last_run": self._last_report["timestamp"] if self._last_report else None,
        }

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _validate(record: ContentRecord):
        for field_name in ("content_id", "content_type", "body"):
            value = getattr(record, field_name, None)
            if value is None or (isinstance(value, str) and not value):
                raise ValidationError(field_name)

    @staticmethod
    def _chunk_metadata(record: ContentRecord) -> dict[str, Any]:
        """Chunk metadata in the form the store returns it (JSON types, str keys)."""
        metadata = dict(record.metadata)
        metadata["title"] = record.title
        metadata["url"] = record.url
        return json.loads(json.dumps(metadata, default=str))

    @staticmethod
    def _is_current(
        stored: Chunk, record: ContentRecord, metadata: dict[str, Any], chunk_index: int, model: str
    ) -> bool:
        return (
            stored.is_active
            and stored.embedding_model == model
            and stored.last_modified == record.last_modified
            and stored.metadata == metadata
            and stored.language == record.language
            and stored.chunk_index == chunk_index
        )

    def _process_record(self, run: IndexingRun, record: ContentRecord, force_reindex: bool):
        with self._runs_lock:
            run.current_content_id = record.content_id
        try:
            result = self.index_single_item(record, force_reindex=force_reindex)
        except KnowledgeBaseError as e:
            logger.warning(f"[INDEXER] Failed to index {record.content_type}/{record.content_id}: {e}")
            result = ItemResult(content_type=record.content_type, content_id=record.content_id, errors=[str(e)])
        except Exception as e:
            logger.error(f"[INDEXER] Unexpected error indexing {record.content_type}/{record.content_id}: {e}")
            result = ItemResult(
                content_type=record.content_type, content_id=record.content_id, errors=[f"{type(e).__name__}: {e}"]
            )
        with self._runs_lock:
            run.record(result)
            if run.total_items:
                run.batch_progress = min(run.items_processed / run.total_items, 1.0)

    def _cleanup_orphans(self, content_type: str, listed_ids: set[str]) -> int:
        orphans = self.store.active_content_ids(content_type) - listed_ids
        count = 0
        for content_id in sorted(orphans):
            deactivated = self.store.deactivate_chunks(content_type, content_id)
            if deactivated and self.vector_store is not None:
                self.vector_store.delete([chunk.chunk_id for chunk in deactivated])
            count += len(deactivated)
        if orphans:
            logger.info(f"[INDEXER] Deactivated {count} chunk(s) of {len(orphans)} orphaned '{content_type}' documents")
        return count

    def _start_run(self, content_type: str) -> IndexingRun:
        with self._runs_lock:
            if content_type in self._runs:
                raise IndexingInProgressError(content_type)
            run = IndexingRun(content_type=content_type, current_content_type=content_type)
            self._runs[content_type] = run
            return run

    def _finish_run(self, content_type: str):
        with self._runs_lock:
            run = self._runs.pop(content_type, None)
            if run is not None:
                run.current_content_type = None
                run.current_content_id = None

    @staticmethod
    def _count(source: ContentSource) -> int:
        try:
            return len(source)
        except TypeError:
            return 0

    @staticmethod
    def _record_type_failure(content_type: str, error: Exception, errors: list[dict[str, str]]):
        logger.error(f"[INDEXER] Indexing '{content_type}' failed: {error}")
        errors.append({"content_type": content_type, "error": str(error)})
