"""
opsrecall Episodic Log -- what happened last time we tried X.

Append-only journal of sprint actions and their outcomes. An FTS5 shadow
table is kept in sync by triggers, so recall never needs a re-index step.
Episodes older than the retention window are pruned when the log initializes.
"""

import json
import logging
import sqlite3
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Sequence

from opsrecall import config
from opsrecall.context import MemoryContext
from opsrecall.embeddings import tokenize

logger = logging.getLogger("opsrecall.episodic")

_RECALL_MIN_TOKEN = 2
_EPISODE_COLUMNS = "id, sprint_phase, timestamp, action, outcome, lesson, tags"


@dataclass
class Episode:
    id: int
    sprint_phase: str
    timestamp: str
    action: str
    outcome: str
    lesson: Optional[str] = None
    tags: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "sprint_phase": self.sprint_phase,
            "timestamp": self.timestamp,
            "action": self.action,
            "outcome": self.outcome,
            "lesson": self.lesson,
            "tags": list(self.tags),
        }

    @classmethod
    def from_row(cls, row) -> "Episode":
        ep_id, sprint_phase, timestamp, action, outcome, lesson, tags = row
        return cls(
            id=ep_id,
            sprint_phase=sprint_phase,
            timestamp=timestamp,
            action=action,
            outcome=outcome,
            lesson=lesson,
            tags=safe_parse_tags(tags),
        )


def safe_parse_tags(raw) -> List[str]:
    """Stored tag JSON -> list of strings; malformed or non-array -> []."""
    if not raw:
        return []
    try:
        parsed = json.loads(raw)
    except (TypeError, ValueError):
        return []
    if not isinstance(parsed, list):
        return []
    return [str(t) for t in parsed]


class EpisodicLog:
    """Episodes table plus its FTS5 shadow index."""

    def __init__(self, ctx: MemoryContext, retention_days: Optional[int] = None):
        self.ctx = ctx
        self.retention_days = retention_days if retention_days is not None else config.episode_retention_days()
        self._initialized = False

    def initialize(self) -> None:
        """Create tables and sync triggers, then prune expired episodes."""
        if self._initialized:
            return
        with self.ctx.transaction() as c:
            c.execute("""
                CREATE TABLE IF NOT EXISTS episodes (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    sprint_phase TEXT NOT NULL,
                    timestamp TEXT NOT NULL,
                    action TEXT NOT NULL,
                    outcome TEXT NOT NULL,
                    lesson TEXT,
                    tags TEXT NOT NULL DEFAULT '[]'
                )
            """)
            c.execute("CREATE INDEX IF NOT EXISTS idx_episodes_phase_ts ON episodes(sprint_phase, timestamp)")
            c.execute("CREATE INDEX IF NOT EXISTS idx_episodes_timestamp ON episodes(timestamp)")
            c.execute("""
                CREATE VIRTUAL TABLE IF NOT EXISTS episodes_fts USING fts5(
                    action, outcome, lesson, tags,
                    content='episodes',
                    content_rowid='id'
                )
            """)
            c.execute("""
                CREATE TRIGGER IF NOT EXISTS episodes_ai AFTER INSERT ON episodes BEGIN
                    INSERT INTO episodes_fts(rowid, action, outcome, lesson, tags)
                    VALUES (new.id, new.action, new.outcome, COALESCE(new.lesson, ''), new.tags);
                END
            """)
            c.execute("""
                CREATE TRIGGER IF NOT EXISTS episodes_ad AFTER DELETE ON episodes BEGIN
                    INSERT INTO episodes_fts(episodes_fts, rowid, action, outcome, lesson, tags)
                    VALUES ('delete', old.id, old.action, old.outcome, COALESCE(old.lesson, ''), old.tags);
                END
            """)
        self._initialized = True
        self.prune_expired()

    def prune_expired(self, now: Optional[datetime] = None) -> int:
        """Hard-delete episodes older than the retention window. Returns the count."""
        now = now or datetime.now(timezone.utc)
        cutoff = (now - timedelta(days=self.retention_days)).isoformat()
        with self.ctx.transaction() as c:
            deleted = c.execute("DELETE FROM episodes WHERE timestamp < ?", (cutoff,)).rowcount
        if deleted > 0:
            logger.info("Episodic memory: pruned %d entries older than %d days", deleted, self.retention_days)
        return deleted

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def record_episode(
        self,
        sprint_phase: str,
        action: str,
        outcome: str,
        lesson: Optional[str] = None,
        tags: Optional[Sequence[str]] = None,
    ) -> Episode:
        """Append an episode and return it with its id and timestamp."""
        self.initialize()
        tag_list = [str(t) for t in (tags or [])]
        timestamp = datetime.now(timezone.utc).isoformat()
        with self.ctx.transaction() as c:
            ep_id = c.execute(
                """INSERT INTO episodes (sprint_phase, timestamp, action, outcome, lesson, tags)
                   VALUES (?, ?, ?, ?, ?, ?)""",
                (sprint_phase, timestamp, action, outcome, lesson, json.dumps(tag_list)),
            ).lastrowid
        logger.debug("Episode recorded: id=%d phase=%s action=%s", ep_id, sprint_phase, action[:50])
        return Episode(
            id=ep_id,
            sprint_phase=sprint_phase,
            timestamp=timestamp,
            action=action,
            outcome=outcome,
            lesson=lesson,
            tags=tag_list,
        )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def recall_episodes(
        self,
        query: str,
        limit: int = 10,
        sprint_phase: Optional[str] = None,
    ) -> List[Episode]:
        """Keyword recall over action/outcome/lesson/tags, newest first."""
        tokens = tokenize(query, min_length=_RECALL_MIN_TOKEN)
        if not tokens:
            return []
        self.initialize()

        fts_query = " OR ".join(f'"{t}"' for t in tokens)
        sql = """
            SELECT e.id, e.sprint_phase, e.timestamp, e.action, e.outcome, e.lesson, e.tags
            FROM episodes e
            JOIN episodes_fts f ON e.id = f.rowid
            WHERE episodes_fts MATCH ?
        """
        params: List[Any] = [fts_query]
        if sprint_phase:
            sql += " AND e.sprint_phase = ?"
            params.append(sprint_phase)
        sql += " ORDER BY e.timestamp DESC, e.id DESC LIMIT ?"
        params.append(limit)

        try:
            rows = self.ctx.execute(sql, params).fetchall()
        except sqlite3.Error as e:
            logger.warning("Episode recall failed (query=%r): %s", query, e)
            return []
        return [Episode.from_row(r) for r in rows]

    def get_recent_episodes(self, sprint_phase: str, limit: int = 20) -> List[Episode]:
        self.initialize()
        rows = self.ctx.execute(
            f"""SELECT {_EPISODE_COLUMNS}
                FROM episodes
                WHERE sprint_phase = ?
                ORDER BY timestamp DESC, id DESC
                LIMIT ?""",
            (sprint_phase, limit),
        ).fetchall()
        return [Episode.from_row(r) for r in rows]

    def get_episode_count(self) -> int:
        self.initialize()
        return self.ctx.execute("SELECT count(*) FROM episodes").fetchone()[0]
