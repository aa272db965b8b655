"""
opsrecall Vector Store -- sqlite-vec k-nearest-neighbour search over knowledge.

vec0 tables are keyed by integer rowid, while knowledge entries are keyed by
strings like "lesson-12". vec_metadata bridges the two: its AUTOINCREMENT
handle is the vec_items rowid, its entry_id is the caller's key.

Usage:
    store = VectorStore(ctx, knowledge_index, embedder)
    store.index_all_knowledge()
    hits = store.search(embedder.generate_embedding("sprint code review"), limit=5)
"""

import logging
import sqlite3
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np

from opsrecall.context import MemoryContext
from opsrecall.embeddings import EMBEDDING_DIM, EmbeddingProvider, TfidfEmbedder
from opsrecall.knowledge_index import KnowledgeIndex

logger = logging.getLogger("opsrecall.vector_store")

MIN_SEARCH_LIMIT = 1
MAX_SEARCH_LIMIT = 100


@dataclass
class VectorSearchResult:
    id: str
    distance: float
    score: float

    def to_dict(self) -> Dict[str, object]:
        return {"id": self.id, "distance": self.distance, "score": self.score}


def _serialize_f32(embedding) -> bytes:
    """Serialize a float32 vector to the little blob sqlite-vec expects."""
    vector = np.asarray(embedding, dtype=np.float32)
    if vector.shape != (EMBEDDING_DIM,):
        raise ValueError(f"embedding must have shape ({EMBEDDING_DIM},), got {vector.shape}")
    return vector.tobytes()


def _clamp_limit(limit) -> int:
    try:
        value = int(limit)
    except (TypeError, ValueError):
        value = 10
    return max(MIN_SEARCH_LIMIT, min(value, MAX_SEARCH_LIMIT))


class VectorStore:
    """Durable KNN search keyed by knowledge entry id."""

    def __init__(
        self,
        ctx: MemoryContext,
        knowledge_index: Optional[KnowledgeIndex] = None,
        embedder: Optional[EmbeddingProvider] = None,
    ):
        self.ctx = ctx
        self.knowledge_index = knowledge_index
        self.embedder = embedder or TfidfEmbedder()
        self._initialized = False

    # ------------------------------------------------------------------
    # Schema
    # ------------------------------------------------------------------

    def initialize(self) -> None:
        """Create the vec0 table and the handle -> entry_id table. Idempotent."""
        if self._initialized:
            return
        with self.ctx.transaction() as c:
            c.execute(f"""
                CREATE VIRTUAL TABLE IF NOT EXISTS vec_items USING vec0(
                    embedding float[{EMBEDDING_DIM}] distance_metric=cosine
                )
            """)
            c.execute("""
                CREATE TABLE IF NOT EXISTS vec_metadata (
                    handle INTEGER PRIMARY KEY AUTOINCREMENT,
                    entry_id TEXT NOT NULL UNIQUE
                )
            """)
        self._initialized = True

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def _insert(self, c: sqlite3.Connection, entry_id: str, blob: bytes) -> int:
        """Metadata row first: its AUTOINCREMENT handle keys the vector row."""
        handle = c.execute("INSERT INTO vec_metadata (entry_id) VALUES (?)", (entry_id,)).lastrowid
        c.execute("INSERT INTO vec_items (rowid, embedding) VALUES (?, ?)", (handle, blob))
        return handle

    def upsert(self, entry_id: str, embedding) -> int:
        """Store *embedding* for *entry_id*; returns the integer handle.

        An existing id keeps its handle: vec0 has no in-place update, so the
        old vector row is deleted and the new one inserted under the same rowid.
        """
        blob = _serialize_f32(embedding)
        self.initialize()
        with self.ctx.transaction() as c:
            row = c.execute("SELECT handle FROM vec_metadata WHERE entry_id = ?", (entry_id,)).fetchone()
            if row:
                handle = row[0]
                c.execute("DELETE FROM vec_items WHERE rowid = ?", (handle,))
                c.execute("INSERT INTO vec_items (rowid, embedding) VALUES (?, ?)", (handle, blob))
            else:
                handle = self._insert(c, entry_id, blob)
        return handle

    def delete(self, entry_id: str) -> bool:
        """Remove the vector and metadata rows for *entry_id*."""
        self.initialize()
        with self.ctx.transaction() as c:
            row = c.execute("SELECT handle FROM vec_metadata WHERE entry_id = ?", (entry_id,)).fetchone()
            if not row:
                return False
            c.execute("DELETE FROM vec_items WHERE rowid = ?", (row[0],))
            c.execute("DELETE FROM vec_metadata WHERE handle = ?", (row[0],))
        return True

    def index_all_knowledge(self) -> int:
        """Re-embed the whole lexical corpus with an embedder fitted to it.

        The clear and the reinsert commit together, and the fitted embedder
        is adopted only after the commit, so a failure leaves the previous
        index and the previous vocabulary in place.
        """
        if self.knowledge_index is None:
            raise RuntimeError("index_all_knowledge needs a KnowledgeIndex to read the corpus from")

        rows = self.knowledge_index.corpus()
        if not rows:
            logger.info("No knowledge entries to vectorize")
            return 0

        fitted = self.embedder.fit([text for _, text in rows])
        items: List[Tuple[str, bytes]] = [
            (entry_id, _serialize_f32(fitted.generate_embedding(text))) for entry_id, text in rows
        ]

        self.initialize()
        with self.ctx.transaction() as c:
            c.execute("DELETE FROM vec_items")
            c.execute("DELETE FROM vec_metadata")
            for entry_id, blob in items:
                self._insert(c, entry_id, blob)

        self.embedder.adopt(fitted)
        logger.info("Vector index built: entries=%d dimensions=%d", len(items), EMBEDDING_DIM)
        return len(items)

    # ------------------------------------------------------------------
    # Query
    # ------------------------------------------------------------------

    def _vec_query(self, blob: bytes, limit: int) -> List[Tuple[int, float]]:
        """Pure KNN against vec_items. Returns [(handle, distance), ...]."""
        return self.ctx.execute(
            """SELECT rowid, distance FROM vec_items
               WHERE embedding MATCH ? AND k = ?
               ORDER BY distance""",
            (blob, limit),
        ).fetchall()

    def _lookup_entry_ids(self, handles: Sequence[int]) -> Dict[int, str]:
        if not handles:
            return {}
        placeholders = ",".join("?" for _ in handles)
        rows = self.ctx.execute(
            f"SELECT handle, entry_id FROM vec_metadata WHERE handle IN ({placeholders})",
            list(handles),
        ).fetchall()
        return {handle: entry_id for handle, entry_id in rows}

    def search(self, query, limit: int = 10) -> List[VectorSearchResult]:
        """Nearest entries to *query*, most similar first.

        Distance is cosine distance, so ``score`` is the cosine similarity
        clamped to [0, 1]. A zero query vector has no direction and matches
        nothing. vec0 applies ``k`` before any JOIN, so the KNN and the id
        lookup run as separate statements. Engine failures log a warning and
        return [].
        """
        limit = _clamp_limit(limit)
        try:
            blob = _serialize_f32(query)
            if not np.asarray(query, dtype=np.float32).any():
                return []
            hits = self._vec_query(blob, limit)
            entry_ids = self._lookup_entry_ids([handle for handle, _ in hits])
        except (sqlite3.Error, ValueError) as e:
            logger.warning("Vector search failed: %s", e)
            return []

        results = []
        for handle, distance in hits:
            entry_id = entry_ids.get(handle)
            if entry_id is None:
                continue
            results.append(VectorSearchResult(id=entry_id, distance=distance, score=max(0.0, 1.0 - distance)))
        return results

    def search_text(self, text: str, limit: int = 10) -> List[VectorSearchResult]:
        """Embed *text* with the active vocabulary and search; [] when not ready."""
        if not self.embedder.is_ready():
            logger.debug("search_text skipped: vocabulary not built")
            return []
        return self.search(self.embedder.generate_embedding(text), limit=limit)

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def _count(self) -> int:
        row = self.ctx.execute("SELECT count(*) FROM vec_items").fetchone()
        return row[0] if row else 0

    def is_vec_available(self) -> bool:
        """True when the vector table exists and holds at least one row."""
        try:
            return self._count() > 0
        except sqlite3.Error:
            return False

    def is_vocabulary_ready(self) -> bool:
        return self.embedder.is_ready()

    def get_vec_stats(self) -> Dict[str, int]:
        try:
            count = self._count()
        except sqlite3.Error:
            count = 0
        return {"count": count, "dimensions": EMBEDDING_DIM}
