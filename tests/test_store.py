"""Tests for KnowledgeStore."""

from datetime import datetime, timedelta, timezone

import pytest

from store_kb.errors import ConsistencyError
from store_kb.rag.hashing import ContentHasher
from store_kb.rag.models import Chunk


def make_chunk(text, index=0, total=1, content_type="page", content_id="42", **kwargs):
    defaults = dict(
        content_type=content_type,
        content_id=content_id,
        chunk_index=index,
        total_chunks=total,
        text=text,
        chunk_hash=ContentHasher().hash(text),
        word_count=len(text.split()),
        embedding=[1.0, 0.0],
        embedding_model="test-embed",
        metadata={"title": "Returns"},
        language="en",
    )
    defaults.update(kwargs)
    return Chunk(**defaults)


@pytest.mark.unit
class TestKnowledgeStore:
    """Test chunk persistence and the uniqueness invariant."""

    def test_upsert_and_find_by_hash(self, store):
        chunk = make_chunk("Returns are accepted within 30 days.")

        saved = store.upsert_chunk(chunk)
        found = store.find_by_hash("page", "42", chunk.chunk_hash)

        assert found is not None
        assert found.text == chunk.text
        assert found.embedding == [1.0, 0.0]
        assert found.metadata == {"title": "Returns"}
        assert found.is_active is True
        assert saved.created_at is not None
        assert saved.updated_at is not None

    def test_upsert_same_key_updates_in_place(self, store):
        chunk = make_chunk("Returns are accepted within 30 days.")
        store.upsert_chunk(chunk)

        chunk.metadata = {"title": "Return policy"}
        chunk.chunk_index = 3
        store.upsert_chunk(chunk)

        rows = store.find_by_content_key("page", "42")
        assert len(rows) == 1
        assert rows[0].metadata == {"title": "Return policy"}
        assert rows[0].chunk_index == 3

    def test_duplicate_rows_rejected_by_database(self, store):
        """Two rows with the same (type, id, hash) in one transaction violate the constraint."""
        chunk = make_chunk("Returns are accepted within 30 days.")

        with pytest.raises(ConsistencyError):
            store.commit_document("page", "42", [chunk, make_chunk(chunk.text)], [chunk.chunk_hash], total_chunks=1)

        assert store.find_by_content_key("page", "42") == []

    def test_same_text_allowed_in_different_documents(self, store):
        store.upsert_chunk(make_chunk("Free shipping.", content_id="1"))
        store.upsert_chunk(make_chunk("Free shipping.", content_id="2"))

        assert len(store.query_active(content_type="page")) == 2

    def test_deactivate_chunks_excluding_hashes(self, store):
        keep = make_chunk("Keep me.", index=0, total=2)
        stale = make_chunk("Drop me.", index=1, total=2)
        store.upsert_chunk(keep)
        store.upsert_chunk(stale)

        deactivated = store.deactivate_chunks("page", "42", exclude_hashes=[keep.chunk_hash])

        assert [c.chunk_hash for c in deactivated] == [stale.chunk_hash]
        assert [c.chunk_hash for c in store.query_active()] == [keep.chunk_hash]
        assert store.find_by_hash("page", "42", stale.chunk_hash).is_active is False

    def test_deactivate_chunks_beyond_max_index(self, store):
        chunks = [make_chunk(f"Sentence number {i}.", index=i, total=5) for i in range(5)]
        for chunk in chunks:
            store.upsert_chunk(chunk)

        deactivated = store.deactivate_chunks(
            "page", "42", exclude_hashes=[c.chunk_hash for c in chunks], max_index=3
        )

        assert sorted(c.chunk_index for c in deactivated) == [3, 4]
        assert [c.chunk_index for c in store.find_by_content_key("page", "42", active_only=True)] == [0, 1, 2]

    def test_commit_document_restamps_total_chunks(self, store):
        chunks = [make_chunk(f"Sentence number {i}.", index=i, total=5) for i in range(5)]
        for chunk in chunks:
            store.upsert_chunk(chunk)

        deactivated = store.commit_document(
            "page", "42", [], keep_hashes=[c.chunk_hash for c in chunks[:3]], total_chunks=3
        )

        assert len(deactivated) == 2
        active = store.find_by_content_key("page", "42", active_only=True)
        assert [c.total_chunks for c in active] == [3, 3, 3]

    def test_delete_all_for_content(self, store):
        store.upsert_chunk(make_chunk("One.", index=0, total=2))
        store.upsert_chunk(make_chunk("Two.", index=1, total=2))
        store.upsert_chunk(make_chunk("Other.", content_id="7"))

        deleted = store.delete_all_for_content("page", "42")

        assert len(deleted) == 2
        assert all(chunk_id.startswith("page:42:") for chunk_id in deleted)
        assert store.find_by_content_key("page", "42") == []
        assert len(store.find_by_content_key("page", "7")) == 1
        assert store.delete_all_for_content("page", "42") == []

    def test_find_embedding_across_documents(self, store):
        chunk = make_chunk("Free shipping.", content_id="1", embedding=[0.5, 0.5])
        store.upsert_chunk(chunk)

        assert store.find_embedding(chunk.chunk_hash, "test-embed") == [0.5, 0.5]
        assert store.find_embedding(chunk.chunk_hash, "other-model") is None
        assert store.find_embedding("0" * 64, "test-embed") is None

    def test_query_active_filters(self, store):
        store.upsert_chunk(make_chunk("English text.", content_id="1", language="en"))
        store.upsert_chunk(make_chunk("Texte français.", content_id="2", language="fr"))
        store.upsert_chunk(make_chunk("Product text.", content_type="product", content_id="3"))

        assert {c.content_id for c in store.query_active(language="fr")} == {"2"}
        assert {c.content_id for c in store.query_active(content_type="product")} == {"3"}
        assert len(store.query_active(limit=2)) == 2

    def test_query_active_language_can_include_unlabelled_rows(self, store):
        store.upsert_chunk(make_chunk("English text.", content_id="1", language="en"))
        store.upsert_chunk(make_chunk("Texte français.", content_id="2", language="fr"))
        store.upsert_chunk(make_chunk("No language set.", content_id="3", language=None))

        assert {c.content_id for c in store.query_active(language="en")} == {"1"}
        assert {c.content_id for c in store.query_active(language="en", include_unlabelled=True)} == {"1", "3"}

    def test_active_embedding_models(self, store):
        store.upsert_chunk(make_chunk("One.", content_id="1"))
        store.upsert_chunk(make_chunk("Two.", content_id="2", embedding_model="old-model", is_active=False))

        assert store.active_embedding_models() == {"test-embed"}

    def test_last_modified_round_trip_is_utc(self, store):
        modified = datetime(2025, 5, 1, 12, 30, tzinfo=timezone(timedelta(hours=2)))
        chunk = make_chunk("Dated.", last_modified=modified)
        store.upsert_chunk(chunk)

        found = store.find_by_hash("page", "42", chunk.chunk_hash)

        assert found.last_modified == modified
        assert found.last_modified.tzinfo is not None

    def test_statistics_by_content_type(self, store):
        store.upsert_chunk(make_chunk("One two three.", content_id="1"))
        store.upsert_chunk(make_chunk("Four five.", content_id="1", index=1))
        store.upsert_chunk(make_chunk("Product.", content_type="product", content_id="9"))
        store.upsert_chunk(make_chunk("Gone.", content_id="2", is_active=False))

        stats = store.get_statistics()

        assert stats["total_active_chunks"] == 3
        assert stats["total_documents"] == 2
        assert stats["inactive_chunks"] == 1
        assert stats["by_content_type"]["page"]["active_chunks"] == 2
        assert stats["by_content_type"]["page"]["documents"] == 1
        assert stats["by_content_type"]["page"]["avg_word_count"] == 2.5
        assert stats["by_content_type"]["product"]["last_updated"] is not None

    def test_ping(self, store):
        store.ping()
