"""
opsrecall Knowledge Index -- FTS5 full-text index over the knowledge base.

The knowledge base is a directory of JSON files (patterns, lessons,
decisions, deferred items). This index flattens them into entries keyed
"<source>-<source_id>", ranks matches with BM25 and an exponential time
decay, and is the corpus the vector store builds its vocabulary from.

It also tracks how often each entry is retrieved so frequently-used
knowledge can be promoted and unused knowledge archived.
"""

import json
import logging
import math
import re
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

from opsrecall import config
from opsrecall.context import MemoryContext

logger = logging.getLogger("opsrecall.knowledge_index")

DEFAULT_MAX_RESULTS = 10
DEFAULT_FTS_WEIGHT = 1.0
DEFAULT_VECTOR_WEIGHT = 0.0
DEFAULT_HALF_LIFE_DAYS = 30
PROMOTION_THRESHOLD = 3
STALE_DAYS = 60
_STALE_LIMIT = 20

# FTS5 metacharacters: quotes, wildcard, negation, caret, grouping, column filter
_FTS_META_RE = re.compile(r'["*\-^():]')


@dataclass
class KnowledgeEntry:
    source: str
    source_id: int
    text: str
    date: str

    @property
    def id(self) -> str:
        return f"{self.source}-{self.source_id}"


@dataclass
class SearchResult:
    id: str
    source: str
    source_id: int
    text: str
    date: str
    fts_score: float
    combined_score: float
    vector_score: Optional[float] = None

    def to_dict(self) -> Dict[str, object]:
        return {
            "id": self.id,
            "source": self.source,
            "source_id": self.source_id,
            "text": self.text,
            "date": self.date,
            "fts_score": self.fts_score,
            "vector_score": self.vector_score,
            "combined_score": self.combined_score,
        }


@dataclass
class RetrievalStat:
    entry_id: str
    count: int
    last_retrieved: Optional[str]


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _parse_dt(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO datetime to an aware UTC datetime, None if unparsable."""
    if not value:
        return None
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    try:
        dt = datetime.fromisoformat(value)
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def time_decay(date_str: str, half_life_days: float, now: Optional[datetime] = None) -> float:
    """Exponential decay with a floor of 0.2 so old but valuable entries survive."""
    dt = _parse_dt(date_str)
    if dt is None:
        return 1.0
    now = now or datetime.now(timezone.utc)
    age_days = (now - dt).total_seconds() / 86400
    if age_days < 0:
        return 1.0
    return max(0.2, math.exp(-0.693 * age_days / half_life_days))


def sanitize_fts_query(raw: str) -> str:
    """Strip FTS5 metacharacters and OR-join the remaining tokens."""
    stripped = _FTS_META_RE.sub(" ", raw or "").strip()
    if not stripped:
        return ""
    return " OR ".join(f'"{token}"' for token in stripped.split())


def _join(*parts) -> str:
    return " ".join(str(p) for p in parts if p).strip()


def _int_id(value) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


class KnowledgeIndex:
    """FTS5 index of knowledge entries plus retrieval tracking."""

    # (file name, top-level key, source label, text builder)
    _SOURCES = (
        ("patterns.json", "patterns", "pattern",
         lambda p: _join(p.get("name"), p.get("description"), p.get("example"))),
        ("lessons.json", "lessons", "lesson",
         lambda l: _join(l.get("situation"), l.get("learning"))),
        ("decisions.json", "decisions", "decision",
         lambda d: _join(d.get("title"), d.get("context"), d.get("rationale"), d.get("alternatives"))),
        ("deferred.json", "items", "deferred",
         lambda d: _join(d.get("title"), d.get("reason"), d.get("effort"))),
    )

    def __init__(self, ctx: MemoryContext, knowledge_dir=None):
        self.ctx = ctx
        self.knowledge_dir = Path(knowledge_dir) if knowledge_dir else config.knowledge_dir()
        self._schema_ready = False

    # ------------------------------------------------------------------
    # Schema / lifecycle
    # ------------------------------------------------------------------

    def _ensure_schema(self) -> None:
        if self._schema_ready:
            return
        with self.ctx.transaction() as c:
            c.execute("""
                CREATE VIRTUAL TABLE IF NOT EXISTS knowledge_fts USING fts5(
                    text,
                    id UNINDEXED,
                    source UNINDEXED,
                    source_id UNINDEXED,
                    date UNINDEXED
                )
            """)
            c.execute("""
                CREATE TABLE IF NOT EXISTS retrieval_counts (
                    entry_id TEXT PRIMARY KEY,
                    count INTEGER DEFAULT 0,
                    last_retrieved_at TEXT
                )
            """)
        self._schema_ready = True

    def initialize(self) -> int:
        """Create tables; rebuild from the JSON files when the index is empty.

        Returns the number of entries in the index afterwards.
        """
        self._ensure_schema()
        count = self.entry_count()
        if count == 0:
            count = self.rebuild_index()
            logger.info("Knowledge index was empty, rebuilt: %d entries", count)
        else:
            logger.info("Knowledge index loaded: %d entries", count)
        return count

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    def load_entries(self) -> List[KnowledgeEntry]:
        """Flatten every knowledge JSON file into entries. Bad files are skipped."""
        entries: List[KnowledgeEntry] = []
        default_date = _now_iso()
        for filename, key, source, build_text in self._SOURCES:
            path = self.knowledge_dir / filename
            if not path.exists():
                continue
            try:
                data = json.loads(path.read_text(encoding="utf-8"))
                items = data.get(key) or []
            except (OSError, ValueError, AttributeError) as e:
                logger.warning("Skipping unreadable knowledge file %s: %s", path.name, e)
                continue
            for item in items:
                if not isinstance(item, dict):
                    continue
                entries.append(KnowledgeEntry(
                    source=source,
                    source_id=_int_id(item.get("id", 0)),
                    text=build_text(item),
                    date=item.get("date") or default_date,
                ))
        return entries

    def rebuild_index(self) -> int:
        """Clear and repopulate the index from the knowledge files in one transaction."""
        self._ensure_schema()
        entries = self.load_entries()
        with self.ctx.transaction() as c:
            c.execute("DELETE FROM knowledge_fts")
            c.executemany(
                "INSERT INTO knowledge_fts (text, id, source, source_id, date) VALUES (?, ?, ?, ?, ?)",
                [(e.text, e.id, e.source, e.source_id, e.date) for e in entries],
            )
        logger.info("FTS5 index rebuilt: %d entries", len(entries))
        return len(entries)

    def upsert_entry(self, entry: KnowledgeEntry) -> None:
        """Replace a single entry (FTS5 has no UPDATE, so delete then insert)."""
        self._ensure_schema()
        with self.ctx.transaction() as c:
            c.execute("DELETE FROM knowledge_fts WHERE id = ?", (entry.id,))
            c.execute(
                "INSERT INTO knowledge_fts (text, id, source, source_id, date) VALUES (?, ?, ?, ?, ?)",
                (entry.text, entry.id, entry.source, entry.source_id, entry.date),
            )

    def delete_entry(self, entry_id: str) -> bool:
        self._ensure_schema()
        with self.ctx.transaction() as c:
            cur = c.execute("DELETE FROM knowledge_fts WHERE id = ?", (entry_id,))
        return cur.rowcount > 0

    def get_entry(self, entry_id: str) -> Optional[KnowledgeEntry]:
        self._ensure_schema()
        row = self.ctx.execute(
            "SELECT source, source_id, text, date FROM knowledge_fts WHERE id = ? LIMIT 1",
            (entry_id,),
        ).fetchone()
        if not row:
            return None
        return KnowledgeEntry(source=row[0], source_id=_int_id(row[1]), text=row[2], date=row[3])

    def get_entries(self, entry_ids: Sequence[str]) -> Dict[str, KnowledgeEntry]:
        """Batch lookup by id."""
        if not entry_ids:
            return {}
        self._ensure_schema()
        placeholders = ",".join("?" for _ in entry_ids)
        rows = self.ctx.execute(
            f"SELECT id, source, source_id, text, date FROM knowledge_fts WHERE id IN ({placeholders})",
            list(entry_ids),
        ).fetchall()
        return {
            r[0]: KnowledgeEntry(source=r[1], source_id=_int_id(r[2]), text=r[3], date=r[4])
            for r in rows
        }

    def corpus(self) -> List[Tuple[str, str]]:
        """All (id, text) pairs, one per id (the last written wins)."""
        self._ensure_schema()
        rows = self.ctx.execute("SELECT id, text FROM knowledge_fts ORDER BY rowid").fetchall()
        by_id: Dict[str, str] = {}
        for entry_id, text in rows:
            by_id.pop(entry_id, None)
            by_id[entry_id] = text or ""
        return list(by_id.items())

    def entry_count(self) -> int:
        self._ensure_schema()
        row = self.ctx.execute("SELECT count(*) FROM knowledge_fts").fetchone()
        return row[0] if row else 0

    def is_available(self) -> bool:
        """True when the index exists and has data."""
        try:
            return self.entry_count() > 0
        except sqlite3.Error:
            return False

    # ------------------------------------------------------------------
    # Search
    # ------------------------------------------------------------------

    def search(
        self,
        query: str,
        max_results: int = DEFAULT_MAX_RESULTS,
        fts_weight: float = DEFAULT_FTS_WEIGHT,
        vector_weight: float = DEFAULT_VECTOR_WEIGHT,
        time_decay_half_life: float = DEFAULT_HALF_LIFE_DAYS,
        vector_scores: Optional[Dict[str, float]] = None,
    ) -> List[SearchResult]:
        """BM25 search with time decay, optionally fused with vector scores.

        ``vector_scores`` maps entry id to a similarity in [0, 1]; entries
        it names are included even when FTS5 did not match them.
        """
        if not query or not query.strip():
            return []
        safe_query = sanitize_fts_query(query)
        vector_scores = vector_scores or {}
        if not safe_query and not vector_scores:
            return []

        self._ensure_schema()
        rows: List[tuple] = []
        if safe_query:
            try:
                rows = self.ctx.execute(
                    """SELECT text, id, source, source_id, date,
                              -bm25(knowledge_fts) AS fts_score
                       FROM knowledge_fts
                       WHERE knowledge_fts MATCH ?
                       ORDER BY fts_score DESC
                       LIMIT ?""",
                    (safe_query, max_results * 3),
                ).fetchall()
            except sqlite3.Error as e:
                logger.warning("FTS5 query failed, returning empty results (query=%r): %s", query, e)
                if not vector_scores:
                    return []

        now = datetime.now(timezone.utc)
        results: Dict[str, SearchResult] = {}
        for text, entry_id, source, source_id, date, raw_score in rows:
            if entry_id in results:
                continue
            fts_score = raw_score * time_decay(date, time_decay_half_life, now)
            vec = vector_scores.get(entry_id)
            results[entry_id] = SearchResult(
                id=entry_id,
                source=source,
                source_id=_int_id(source_id),
                text=text,
                date=date,
                fts_score=fts_score,
                vector_score=vec,
                combined_score=fts_score * fts_weight + (vec or 0.0) * vector_weight,
            )

        missing = [eid for eid in vector_scores if eid not in results]
        for entry_id, entry in self.get_entries(missing).items():
            vec = vector_scores[entry_id]
            results[entry_id] = SearchResult(
                id=entry_id,
                source=entry.source,
                source_id=entry.source_id,
                text=entry.text,
                date=entry.date,
                fts_score=0.0,
                vector_score=vec,
                combined_score=vec * vector_weight,
            )

        ranked = sorted(results.values(), key=lambda r: r.combined_score, reverse=True)[:max_results]
        logger.info("FTS5 search complete: query=%r matches=%d returned=%d", query, len(rows), len(ranked))
        return ranked

    # ------------------------------------------------------------------
    # Retrieval tracking
    # ------------------------------------------------------------------

    def record_retrievals(self, entry_ids: Sequence[str]) -> None:
        if not entry_ids:
            return
        self._ensure_schema()
        now = _now_iso()
        with self.ctx.transaction() as c:
            c.executemany(
                """INSERT INTO retrieval_counts (entry_id, count, last_retrieved_at)
                   VALUES (?, 1, ?)
                   ON CONFLICT(entry_id) DO UPDATE SET
                       count = count + 1,
                       last_retrieved_at = excluded.last_retrieved_at""",
                [(entry_id, now) for entry_id in entry_ids],
            )

    def get_promotion_candidates(self) -> List[RetrievalStat]:
        """Entries retrieved at least PROMOTION_THRESHOLD times, most used first."""
        self._ensure_schema()
        rows = self.ctx.execute(
            """SELECT entry_id, count, last_retrieved_at
               FROM retrieval_counts
               WHERE count >= ?
               ORDER BY count DESC""",
            (PROMOTION_THRESHOLD,),
        ).fetchall()
        return [RetrievalStat(entry_id=r[0], count=r[1], last_retrieved=r[2]) for r in rows]

    def get_stale_entries(self) -> List[RetrievalStat]:
        """Entries never retrieved, or barely retrieved and not in STALE_DAYS."""
        self._ensure_schema()
        cutoff = (datetime.now(timezone.utc) - timedelta(days=STALE_DAYS)).isoformat()
        rows = self.ctx.execute(
            """SELECT f.id AS entry_id,
                      COALESCE(r.count, 0) AS count,
                      COALESCE(r.last_retrieved_at, f.date) AS last_retrieved_at
               FROM knowledge_fts f
               LEFT JOIN retrieval_counts r ON r.entry_id = f.id
               WHERE r.entry_id IS NULL
                  OR (r.last_retrieved_at < ? AND r.count < 2)
               ORDER BY last_retrieved_at ASC
               LIMIT ?""",
            (cutoff, _STALE_LIMIT),
        ).fetchall()
        return [RetrievalStat(entry_id=r[0], count=r[1], last_retrieved=r[2]) for r in rows]
