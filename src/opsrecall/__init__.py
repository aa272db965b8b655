"""opsrecall -- Hybrid knowledge retrieval for AI coding agents.

Lexical, vector and graph retrieval over one SQLite file, plus an episodic
log of what was tried and how it went::

    from opsrecall import RetrievalEngine
    engine = RetrievalEngine()
    engine.initialize()
    engine.reindex()
    hits = engine.search_knowledge("flaky integration tests")

For MCP integration run ``opsrecall serve``.
"""

__version__ = "0.3.0"

from opsrecall.context import MemoryContext, get_context, reset_context
from opsrecall.embeddings import (
    EMBEDDING_DIM,
    EmbeddingProvider,
    TfidfEmbedder,
    Vocabulary,
    VocabularyNotBuiltError,
)
from opsrecall.engine import RetrievalEngine
from opsrecall.episodic import Episode, EpisodicLog
from opsrecall.graph_store import GraphEdge, GraphNode, GraphStore
from opsrecall.knowledge_index import KnowledgeEntry, KnowledgeIndex, SearchResult
from opsrecall.vector_store import VectorSearchResult, VectorStore

__all__ = [
    "EMBEDDING_DIM",
    "EmbeddingProvider",
    "Episode",
    "EpisodicLog",
    "GraphEdge",
    "GraphNode",
    "GraphStore",
    "KnowledgeEntry",
    "KnowledgeIndex",
    "MemoryContext",
    "RetrievalEngine",
    "SearchResult",
    "TfidfEmbedder",
    "VectorSearchResult",
    "VectorStore",
    "Vocabulary",
    "VocabularyNotBuiltError",
    "get_context",
    "reset_context",
]
