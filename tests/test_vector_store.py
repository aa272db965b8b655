"""Tests for opsrecall.vector_store -- sqlite-vec KNN keyed by entry id."""
import importlib.util
import sqlite3
import zlib

import numpy as np
import pytest

from opsrecall.embeddings import EMBEDDING_DIM, EmbeddingProvider, TfidfEmbedder, tokenize
from opsrecall.knowledge_index import KnowledgeIndex
from opsrecall.vector_store import MAX_SEARCH_LIMIT, VectorStore

pytestmark = pytest.mark.skipif(
    not importlib.util.find_spec("sqlite_vec"),
    reason="sqlite-vec not installed",
)

DOCS = {
    "doc-0": "sprint planning code review",
    "doc-1": "database migration schema design",
    "doc-2": "authentication security tokens",
}


def _unit(index: int) -> np.ndarray:
    vec = np.zeros(EMBEDDING_DIM, dtype=np.float32)
    vec[index] = 1.0
    return vec


class _HashEmbedder(EmbeddingProvider):
    """Corpus-independent provider: tokens hashed into buckets."""

    def is_ready(self):
        return True

    def generate_embedding(self, text):
        vec = np.zeros(EMBEDDING_DIM, dtype=np.float32)
        for token in tokenize(text):
            vec[zlib.crc32(token.encode()) % EMBEDDING_DIM] += 1.0
        norm = float(np.linalg.norm(vec))
        return vec / norm if norm else vec


@pytest.fixture
def embedder():
    e = TfidfEmbedder()
    e.build_vocabulary(list(DOCS.values()))
    return e


@pytest.fixture
def vstore(vec_ctx, embedder):
    store = VectorStore(vec_ctx, embedder=embedder)
    store.initialize()
    return store


class TestVectorStoreBasics:
    def test_initialize_is_idempotent(self, vec_ctx):
        store = VectorStore(vec_ctx)
        store.initialize()
        store.initialize()
        assert VectorStore(vec_ctx).get_vec_stats() == {"count": 0, "dimensions": EMBEDDING_DIM}

    def test_empty_store_not_available(self, vstore):
        assert vstore.is_vec_available() is False
        assert vstore.search(_unit(0), limit=5) == []

    def test_upsert_returns_increasing_handles(self, vstore):
        h1 = vstore.upsert("a", _unit(0))
        h2 = vstore.upsert("b", _unit(1))
        assert h1 > 0
        assert h2 > h1
        assert vstore.is_vec_available() is True
        assert vstore.get_vec_stats()["count"] == 2

    def test_wrong_dimension_rejected(self, vstore):
        with pytest.raises(ValueError):
            vstore.upsert("bad", np.ones(10, dtype=np.float32))
        assert vstore.get_vec_stats()["count"] == 0

    def test_delete(self, vstore):
        vstore.upsert("a", _unit(0))
        assert vstore.delete("a") is True
        assert vstore.delete("a") is False
        assert vstore.get_vec_stats()["count"] == 0
        assert vstore.search(_unit(0)) == []


class TestUpsertSemantics:
    def test_double_upsert_keeps_one_record(self, vstore):
        h1 = vstore.upsert("lesson-1", _unit(0))
        h2 = vstore.upsert("lesson-1", _unit(5))
        assert h1 == h2
        assert vstore.get_vec_stats()["count"] == 1

        hits = vstore.search(_unit(5), limit=5)
        assert [h.id for h in hits] == ["lesson-1"]
        assert hits[0].distance == pytest.approx(0.0, abs=1e-5)
        assert hits[0].score == pytest.approx(1.0, abs=1e-5)

    def test_reupsert_does_not_disturb_other_handles(self, vstore):
        vstore.upsert("a", _unit(0))
        hb = vstore.upsert("b", _unit(1))
        vstore.upsert("a", _unit(2))
        assert vstore.upsert("b", _unit(1)) == hb
        hits = vstore.search(_unit(1), limit=1)
        assert hits[0].id == "b"


class TestSearch:
    def test_three_document_ranking(self, vstore, embedder):
        for entry_id, text in DOCS.items():
            vstore.upsert(entry_id, embedder.generate_embedding(text))

        hits = vstore.search(embedder.generate_embedding("sprint code"), 3)
        assert len(hits) == 3
        assert hits[0].id == "doc-0"
        distances = [h.distance for h in hits]
        assert distances == sorted(distances)

    def test_score_is_clamped_similarity(self, vstore, embedder):
        for entry_id, text in DOCS.items():
            vstore.upsert(entry_id, embedder.generate_embedding(text))
        for hit in vstore.search(embedder.generate_embedding("sprint code"), 3):
            assert hit.score == pytest.approx(max(0.0, 1.0 - hit.distance))
            assert 0.0 <= hit.score <= 1.0

    def test_score_is_cosine_similarity(self, vstore):
        vstore.upsert("a", _unit(0))
        query = (_unit(0) + _unit(1)) / np.sqrt(2.0)
        hit = vstore.search(query, 1)[0]
        assert hit.score == pytest.approx(1.0 / np.sqrt(2.0), abs=1e-4)
        assert hit.distance == pytest.approx(1.0 - 1.0 / np.sqrt(2.0), abs=1e-4)

    def test_partial_term_overlap_scores_above_zero(self, vstore, embedder):
        for entry_id, text in DOCS.items():
            vstore.upsert(entry_id, embedder.generate_embedding(text))
        top = vstore.search_text("sprint", limit=1)[0]
        assert top.id == "doc-0"
        assert 0.0 < top.score < 1.0

    def test_zero_query_matches_nothing(self, vstore):
        vstore.upsert("a", _unit(0))
        assert vstore.search(np.zeros(EMBEDDING_DIM, dtype=np.float32)) == []
        assert vstore.search_text("kubernetes helm") == []

    def test_limit_clamped(self, vstore):
        for i in range(5):
            vstore.upsert(f"e{i}", _unit(i))
        assert len(vstore.search(_unit(0), limit=0)) == 1
        assert len(vstore.search(_unit(0), limit=-3)) == 1
        assert len(vstore.search(_unit(0), limit=MAX_SEARCH_LIMIT + 50)) == 5

    def test_malformed_query_returns_empty(self, vstore):
        vstore.upsert("a", _unit(0))
        assert vstore.search(np.ones(3, dtype=np.float32)) == []

    def test_search_text_needs_vocabulary(self, vec_ctx):
        store = VectorStore(vec_ctx, embedder=TfidfEmbedder())
        store.initialize()
        store.upsert("a", _unit(0))
        assert store.search_text("sprint") == []

    def test_search_text(self, vstore, embedder):
        for entry_id, text in DOCS.items():
            vstore.upsert(entry_id, embedder.generate_embedding(text))
        hits = vstore.search_text("schema migration", limit=1)
        assert hits[0].id == "doc-1"

    def test_to_dict(self, vstore):
        vstore.upsert("a", _unit(0))
        d = vstore.search(_unit(0), 1)[0].to_dict()
        assert set(d) == {"id", "distance", "score"}


class TestIndexAllKnowledge:
    def test_indexes_whole_corpus(self, vec_ctx, knowledge_dir):
        index = KnowledgeIndex(vec_ctx, knowledge_dir)
        total = index.initialize()
        embedder = TfidfEmbedder()
        store = VectorStore(vec_ctx, index, embedder)

        assert store.index_all_knowledge() == total
        assert store.get_vec_stats()["count"] == total
        assert store.is_vocabulary_ready()
        hits = store.search_text("migrations production database", limit=3)
        assert hits[0].id == "lesson-1"

    def test_reindex_replaces_previous_vectors(self, vec_ctx, knowledge_dir):
        index = KnowledgeIndex(vec_ctx, knowledge_dir)
        total = index.initialize()
        store = VectorStore(vec_ctx, index, TfidfEmbedder())
        store.index_all_knowledge()
        assert store.index_all_knowledge() == total
        assert store.get_vec_stats()["count"] == total

    def test_duplicate_ids_in_corpus_index_once(self, vec_ctx, knowledge_dir):
        from opsrecall.knowledge_index import KnowledgeEntry

        index = KnowledgeIndex(vec_ctx, knowledge_dir)
        total = index.initialize()
        with vec_ctx.transaction() as c:
            c.execute(
                "INSERT INTO knowledge_fts (text, id, source, source_id, date) VALUES (?, ?, ?, ?, ?)",
                ("duplicate row", "lesson-1", "lesson", 1, ""),
            )
        index.upsert_entry(KnowledgeEntry("lesson", 9, "brand new lesson", ""))
        store = VectorStore(vec_ctx, index, TfidfEmbedder())
        assert store.index_all_knowledge() == total + 1

    def test_failed_rebuild_keeps_previous_index(self, vec_ctx, knowledge_dir, monkeypatch):
        index = KnowledgeIndex(vec_ctx, knowledge_dir)
        total = index.initialize()
        embedder = TfidfEmbedder()
        store = VectorStore(vec_ctx, index, embedder)
        store.index_all_knowledge()
        vocabulary = embedder.vocabulary

        real_insert = VectorStore._insert
        calls = []

        def failing_insert(self, c, entry_id, blob):
            calls.append(entry_id)
            if len(calls) == 3:
                raise sqlite3.OperationalError("disk I/O error")
            return real_insert(self, c, entry_id, blob)

        monkeypatch.setattr(VectorStore, "_insert", failing_insert)
        with pytest.raises(sqlite3.OperationalError):
            store.index_all_knowledge()
        monkeypatch.undo()

        assert len(calls) == 3
        assert store.get_vec_stats()["count"] == total
        assert embedder.vocabulary is vocabulary
        assert store.search_text("migrations production database", limit=1)[0].id == "lesson-1"

    def test_custom_provider_embeds_corpus(self, vec_ctx, knowledge_dir):
        index = KnowledgeIndex(vec_ctx, knowledge_dir)
        total = index.initialize()
        embedder = _HashEmbedder()
        store = VectorStore(vec_ctx, index, embedder)

        assert store.index_all_knowledge() == total
        texts = dict(index.corpus())
        hit = store.search(embedder.generate_embedding(texts["lesson-1"]), limit=1)[0]
        assert hit.id == "lesson-1"
        assert hit.score == pytest.approx(1.0, abs=1e-4)

    def test_empty_corpus_is_noop(self, vec_ctx, tmp_home):
        index = KnowledgeIndex(vec_ctx, tmp_home / "empty")
        index.initialize()
        embedder = TfidfEmbedder()
        store = VectorStore(vec_ctx, index, embedder)
        assert store.index_all_knowledge() == 0
        assert not embedder.is_ready()

    def test_requires_knowledge_index(self, vec_ctx):
        with pytest.raises(RuntimeError):
            VectorStore(vec_ctx).index_all_knowledge()
