"""
opsrecall Context -- the one SQLite connection every store shares.

A MemoryContext is constructed once per process and handed to each store.
The connection is opened lazily on first use, runs in WAL mode so readers
are not blocked by the writer, and tries to load the sqlite-vec extension.

Usage:
    ctx = MemoryContext(db_path)
    with ctx.transaction() as conn:
        conn.execute("INSERT ...")
    ctx.close()

For the process-wide default use get_context() / reset_context().
"""

import logging
import os
import sqlite3
import stat
import threading
import time as _time
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, List, Optional

from opsrecall import config

logger = logging.getLogger("opsrecall.context")

# ---------------------------------------------------------------------------
# SQLite retry -- WAL + busy_timeout handle most contention, but a commit can
# still hit "database is locked" when another process holds the write lock
# longer than busy_timeout. Retry with exponential backoff before surfacing.
# ---------------------------------------------------------------------------
_DB_RETRY_ATTEMPTS = 3
_DB_RETRY_BASE_DELAY = 0.5  # seconds


def _retry_on_locked(fn, *args, **kwargs):
    """Call fn with retry on 'database is locked' OperationalError."""
    for attempt in range(_DB_RETRY_ATTEMPTS):
        try:
            return fn(*args, **kwargs)
        except sqlite3.OperationalError as e:
            if "database is locked" in str(e) and attempt < _DB_RETRY_ATTEMPTS - 1:
                delay = _DB_RETRY_BASE_DELAY * (2 ** attempt)
                logger.warning("database is locked (attempt %d/%d), retrying in %.1fs",
                               attempt + 1, _DB_RETRY_ATTEMPTS, delay)
                _time.sleep(delay)
            else:
                raise


def secure_connect(db_path, **kwargs) -> sqlite3.Connection:
    """Create a SQLite connection with owner-only file permissions (0o600).

    Pre-creates the DB file with restricted permissions before connecting,
    and tightens existing files that are group/world accessible.
    """
    db_path_str = str(db_path)
    if db_path_str == ":memory:":
        return sqlite3.connect(db_path_str, **kwargs)

    path_obj = Path(db_path_str)
    if not path_obj.exists():
        fd = os.open(db_path_str, os.O_CREAT | os.O_WRONLY, 0o600)
        os.close(fd)
    else:
        current_mode = path_obj.stat().st_mode
        if current_mode & (stat.S_IRWXG | stat.S_IRWXO):
            os.chmod(db_path_str, 0o600)

    return sqlite3.connect(db_path_str, **kwargs)


class Rows:
    """Rows fetched by MemoryContext.execute(), read with the cursor API."""

    __slots__ = ("_rows",)

    def __init__(self, rows: List[tuple]):
        self._rows = rows

    def fetchone(self) -> Optional[tuple]:
        return self._rows[0] if self._rows else None

    def fetchall(self) -> List[tuple]:
        return list(self._rows)


class MemoryContext:
    """Owns the process's database connection and its lock."""

    def __init__(self, db_path=None):
        self.db_path = Path(db_path) if db_path else config.db_path()
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = threading.RLock()
        self._vec_loaded = False
        self._in_tx = False

    @property
    def conn(self) -> sqlite3.Connection:
        """The shared connection, opened on first access."""
        if self._conn is None:
            with self._lock:
                if self._conn is None:
                    self._conn = self._connect()
        return self._conn

    @property
    def vec_loaded(self) -> bool:
        """True when the sqlite-vec extension loaded into the connection."""
        self.conn  # opens lazily
        return self._vec_loaded

    @property
    def is_open(self) -> bool:
        return self._conn is not None

    def _connect(self) -> sqlite3.Connection:
        if str(self.db_path) != ":memory:":
            self.db_path.parent.mkdir(parents=True, exist_ok=True, mode=0o700)

        conn = secure_connect(self.db_path, timeout=30, check_same_thread=False)
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA synchronous=NORMAL")
        conn.execute("PRAGMA busy_timeout=30000")
        conn.execute("PRAGMA foreign_keys=ON")

        try:
            import sqlite_vec

            conn.enable_load_extension(True)
            sqlite_vec.load(conn)
            conn.enable_load_extension(False)
            self._vec_loaded = True
        except (ImportError, AttributeError, sqlite3.Error) as e:
            logger.warning("sqlite-vec not available, vector search disabled: %s", e)
            self._vec_loaded = False

        logger.debug("Opened database %s (vec=%s)", self.db_path, self._vec_loaded)
        return conn

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Run a block as one atomic unit: commit on success, roll back on error.

        Re-entrant: a nested transaction() joins the outer one and only the
        outermost block commits.
        """
        with self._lock:
            conn = self.conn
            outermost = not self._in_tx
            if not outermost:
                yield conn
                return
            self._in_tx = True
            try:
                yield conn
            except BaseException:
                conn.rollback()
                raise
            else:
                _retry_on_locked(conn.commit)
            finally:
                self._in_tx = False

    def execute(self, sql: str, params=()) -> "Rows":
        """Run a read statement on the shared connection.

        Holds the lock until every row is fetched. A transaction() on another
        thread keeps the lock until it commits or rolls back, so readers only
        see committed rows.
        """
        with self._lock:
            cursor = _retry_on_locked(self.conn.execute, sql, params)
            return Rows(cursor.fetchall())

    def close(self) -> None:
        """Close the connection. The context reopens lazily if used again."""
        with self._lock:
            if self._conn is None:
                return
            try:
                self._conn.execute("PRAGMA wal_checkpoint(PASSIVE)")
            except sqlite3.Error as e:
                logger.debug("WAL checkpoint on close failed: %s", e)
            try:
                self._conn.close()
            except sqlite3.Error as e:
                logger.debug("Database close failed: %s", e)
            self._conn = None
            self._vec_loaded = False


# ---------------------------------------------------------------------------
# Process-scoped default context
# ---------------------------------------------------------------------------

_context_instance: Optional[MemoryContext] = None
_context_lock = threading.Lock()


def get_context() -> MemoryContext:
    """Get or create the process-wide MemoryContext (thread-safe)."""
    global _context_instance
    if _context_instance is not None:
        return _context_instance
    with _context_lock:
        if _context_instance is None:
            _context_instance = MemoryContext()
    return _context_instance


def reset_context() -> None:
    """Close and drop the process-wide context (test isolation hook)."""
    global _context_instance
    with _context_lock:
        if _context_instance is not None:
            _context_instance.close()
        _context_instance = None
