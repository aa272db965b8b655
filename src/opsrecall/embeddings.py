"""
opsrecall Embeddings -- self-contained TF-IDF embeddings for vector search.

Provides:
- tokenize(text) -> lowercase alphanumeric terms
- Vocabulary.from_documents(docs) -> top-768 terms by document frequency + idf
- TfidfEmbedder.generate_embedding(text) -> 768-dim L2-normalized float32 vector

No model download and no network call: accuracy is bag-of-words, cost is zero.
Anything implementing EmbeddingProvider can replace TfidfEmbedder without
touching the stores.
"""

import logging
import math
import re
import threading
from abc import ABC, abstractmethod
from collections import Counter
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

import numpy as np

__all__ = [
    "EMBEDDING_DIM",
    "VOCAB_SIZE",
    "EmbeddingProvider",
    "TfidfEmbedder",
    "Vocabulary",
    "VocabularyNotBuiltError",
    "tokenize",
]

logger = logging.getLogger("opsrecall.embeddings")

EMBEDDING_DIM = 768
VOCAB_SIZE = EMBEDDING_DIM

_NON_ALNUM_RE = re.compile(r"[^a-z0-9]+")


class VocabularyNotBuiltError(RuntimeError):
    """generate_embedding() was called before any vocabulary existed."""


def tokenize(text: str, min_length: int = 3) -> List[str]:
    """Lowercase, turn every non [a-z0-9] run into a space, drop short tokens."""
    if not text:
        return []
    return [t for t in _NON_ALNUM_RE.sub(" ", text.lower()).split() if len(t) >= min_length]


class Vocabulary:
    """Immutable term list plus idf weights, built from a corpus snapshot.

    ``terms[i]`` is the term for embedding dimension ``i``.
    """

    __slots__ = ("terms", "idf", "total_docs", "distinct_terms", "_index")

    def __init__(self, terms: Sequence[str], idf: Dict[str, float], total_docs: int = 0, distinct_terms: int = 0):
        if len(terms) > EMBEDDING_DIM:
            raise ValueError(f"vocabulary holds {len(terms)} terms, max is {EMBEDDING_DIM}")
        self.terms: Tuple[str, ...] = tuple(terms)
        self.idf: Dict[str, float] = dict(idf)
        self.total_docs = total_docs
        self.distinct_terms = distinct_terms
        self._index: Dict[str, int] = {term: i for i, term in enumerate(self.terms)}

    @classmethod
    def from_documents(cls, documents: Iterable[str], size: int = VOCAB_SIZE) -> "Vocabulary":
        """Select the ``size`` most document-frequent terms.

        Each term counts once per document. Ties keep first-seen order
        (dict insertion order + stable sort).
        """
        doc_freq: Dict[str, int] = {}
        total_docs = 0
        for doc in documents:
            total_docs += 1
            for term in dict.fromkeys(tokenize(doc)):
                doc_freq[term] = doc_freq.get(term, 0) + 1

        ranked = sorted(doc_freq.items(), key=lambda item: -item[1])[:size]
        n = max(1, total_docs)
        idf = {term: math.log(n / df) for term, df in ranked}
        return cls([term for term, _ in ranked], idf, total_docs=total_docs, distinct_terms=len(doc_freq))

    def __len__(self) -> int:
        return len(self.terms)

    def __contains__(self, term: str) -> bool:
        return term in self._index

    def embed(self, text: str) -> np.ndarray:
        """TF-IDF vector for *text*, L2-normalized (zero vector if nothing matches)."""
        vector = np.zeros(EMBEDDING_DIM, dtype=np.float32)
        for term, count in Counter(tokenize(text)).items():
            i = self._index.get(term)
            if i is not None:
                vector[i] = count * self.idf[term]

        norm = float(np.linalg.norm(vector))
        if norm > 0:
            vector /= norm
        return vector


class EmbeddingProvider(ABC):
    """Interface every embedding backend implements.

    A corpus rebuild goes through fit() then adopt(): fit() returns a
    provider that can embed the new corpus without changing this one, and
    adopt() makes it current once the vectors are committed. Backends that
    do not depend on the corpus keep the defaults.
    """

    dimension: int = EMBEDDING_DIM

    @abstractmethod
    def is_ready(self) -> bool:
        ...

    @abstractmethod
    def generate_embedding(self, text: str) -> np.ndarray:
        ...

    def fit(self, documents: Sequence[str]) -> "EmbeddingProvider":
        return self

    def adopt(self, fitted: "EmbeddingProvider") -> None:
        """Make *fitted*, a value returned by fit(), the active state."""


class TfidfEmbedder(EmbeddingProvider):
    """Default provider: bag-of-words TF-IDF over a corpus-built vocabulary.

    The vocabulary is one immutable object behind a single reference, so a
    rebuild swaps terms and weights together and readers never see a mix.
    """

    def __init__(self, vocabulary: Optional[Vocabulary] = None):
        self._vocabulary = vocabulary
        self._swap_lock = threading.Lock()

    @property
    def vocabulary(self) -> Optional[Vocabulary]:
        return self._vocabulary

    def is_ready(self) -> bool:
        return self._vocabulary is not None

    # Name used by the retrieval API.
    is_vocabulary_ready = is_ready

    def set_vocabulary(self, vocabulary: Vocabulary) -> None:
        """Atomically replace the active vocabulary."""
        with self._swap_lock:
            self._vocabulary = vocabulary

    def fit(self, documents: Sequence[str]) -> "TfidfEmbedder":
        """A new embedder over a vocabulary built from *documents*; self is untouched."""
        return TfidfEmbedder(Vocabulary.from_documents(documents))

    def adopt(self, fitted: EmbeddingProvider) -> None:
        if fitted is self:
            return
        if not isinstance(fitted, TfidfEmbedder) or fitted.vocabulary is None:
            raise TypeError("adopt() expects a fitted TfidfEmbedder")
        self.set_vocabulary(fitted.vocabulary)

    def build_vocabulary(self, documents: Sequence[str]) -> None:
        """Build and install a vocabulary from *documents*.

        An empty corpus is a no-op: the current vocabulary stays in place.
        """
        documents = list(documents)
        if not documents:
            logger.warning("build_vocabulary called with an empty corpus; keeping existing vocabulary")
            return

        fitted = self.fit(documents)
        self.adopt(fitted)
        vocabulary = fitted.vocabulary
        logger.info(
            "Vector vocabulary built: total_terms=%d vocab_size=%d total_docs=%d",
            vocabulary.distinct_terms,
            len(vocabulary),
            vocabulary.total_docs,
        )

    def generate_embedding(self, text: str) -> np.ndarray:
        vocabulary = self._vocabulary
        if vocabulary is None:
            raise VocabularyNotBuiltError("Vocabulary not built. Call build_vocabulary() first.")
        return vocabulary.embed(text)

    def get_info(self) -> Dict[str, object]:
        vocabulary = self._vocabulary
        return {
            "backend": "tfidf",
            "dimension": self.dimension,
            "vocabulary_ready": vocabulary is not None,
            "vocab_size": len(vocabulary) if vocabulary is not None else 0,
            "total_docs": vocabulary.total_docs if vocabulary is not None else 0,
        }
