"""
opsrecall Engine -- one object owning the context and every store.

Callers construct a RetrievalEngine once and reach the stores through it:

    engine = RetrievalEngine(MemoryContext(db_path), knowledge_dir=path)
    engine.initialize()
    engine.reindex()
    hits = engine.search_knowledge("csrf tokens", mode="hybrid")
    engine.graph.traverse_bfs("pattern-3", max_depth=2)
    engine.episodes.recall_episodes("sqlite")
"""

import logging
from typing import Any, Dict, List, Optional

from opsrecall.context import MemoryContext
from opsrecall.embeddings import EmbeddingProvider, TfidfEmbedder
from opsrecall.episodic import EpisodicLog
from opsrecall.graph_store import GraphStore
from opsrecall.knowledge_index import KnowledgeIndex, SearchResult
from opsrecall.vector_store import VectorStore

logger = logging.getLogger("opsrecall.engine")

SEARCH_MODES = ("lexical", "vector", "hybrid")
# BM25 is unbounded; vector scores are in [0, 1].
HYBRID_FTS_WEIGHT = 1.0
HYBRID_VECTOR_WEIGHT = 2.0


class RetrievalEngine:
    """Owns a MemoryContext and the knowledge, vector, graph and episode stores."""

    def __init__(
        self,
        ctx: Optional[MemoryContext] = None,
        knowledge_dir=None,
        embedder: Optional[EmbeddingProvider] = None,
        retention_days: Optional[int] = None,
    ):
        self.ctx = ctx or MemoryContext()
        self.embedder = embedder or TfidfEmbedder()
        self.knowledge = KnowledgeIndex(self.ctx, knowledge_dir)
        self.vectors = VectorStore(self.ctx, self.knowledge, self.embedder)
        self.graph = GraphStore(self.ctx)
        self.episodes = EpisodicLog(self.ctx, retention_days)

    @property
    def vec_enabled(self) -> bool:
        return self.ctx.vec_loaded

    def initialize(self) -> None:
        """Create every table, prune old episodes, and warm the vector index.

        The vocabulary lives in memory only, so a fresh process re-embeds the
        corpus once to get a vocabulary that matches the stored vectors. An
        empty vector table is filled the same way.
        """
        self.knowledge.initialize()
        self.graph.initialize()
        self.episodes.initialize()
        if not self.vec_enabled:
            logger.warning("Vector search unavailable (sqlite-vec not loaded); lexical and graph only")
            return
        self.vectors.initialize()
        if self.knowledge.is_available() and (
            not self.vectors.is_vocabulary_ready() or not self.vectors.is_vec_available()
        ):
            self.vectors.index_all_knowledge()

    def reindex(self) -> Dict[str, int]:
        """Rebuild the FTS index from the knowledge files, then the vector index."""
        entries = self.knowledge.rebuild_index()
        vectors = self.vectors.index_all_knowledge() if self.vec_enabled else 0
        return {"entries": entries, "vectors": vectors}

    def search_knowledge(
        self, query: str, limit: int = 10, mode: str = "hybrid", track: bool = True
    ) -> List[SearchResult]:
        """Search knowledge entries lexically, by vector similarity, or both.

        With ``track=False`` the hits are not counted as retrievals.
        """
        if mode not in SEARCH_MODES:
            raise ValueError(f"mode must be one of {', '.join(SEARCH_MODES)}")
        if not query or not query.strip():
            return []

        if mode == "lexical":
            results = self.knowledge.search(query, max_results=limit)
        else:
            vec_hits = self.vectors.search_text(query, limit=limit * 3) if self.vec_enabled else []
            vector_scores = {hit.id: hit.score for hit in vec_hits}
            if mode == "vector":
                results = self._vector_only(vector_scores, limit)
            else:
                results = self.knowledge.search(
                    query,
                    max_results=limit,
                    fts_weight=HYBRID_FTS_WEIGHT,
                    vector_weight=HYBRID_VECTOR_WEIGHT,
                    vector_scores=vector_scores,
                )

        if results and track:
            self.knowledge.record_retrievals([r.id for r in results])
        return results

    def _vector_only(self, vector_scores: Dict[str, float], limit: int) -> List[SearchResult]:
        entries = self.knowledge.get_entries(list(vector_scores))
        results = []
        for entry_id, score in vector_scores.items():
            entry = entries.get(entry_id)
            if entry is None:
                continue
            results.append(SearchResult(
                id=entry_id,
                source=entry.source,
                source_id=entry.source_id,
                text=entry.text,
                date=entry.date,
                fts_score=0.0,
                vector_score=score,
                combined_score=score,
            ))
        results.sort(key=lambda r: r.combined_score, reverse=True)
        return results[:limit]

    def stats(self) -> Dict[str, Any]:
        return {
            "knowledge_entries": self.knowledge.entry_count(),
            "vectors": self.vectors.get_vec_stats(),
            "vec_available": self.vectors.is_vec_available(),
            "vocabulary_ready": self.vectors.is_vocabulary_ready(),
            "graph": self.graph.get_graph_stats(),
            "episodes": self.episodes.get_episode_count(),
            "db_path": str(self.ctx.db_path),
        }

    def close(self) -> None:
        self.ctx.close()
