"""opsrecall test configuration."""
import json
import os
import sys
from datetime import datetime, timezone
from pathlib import Path

import pytest

# Ensure opsrecall package is importable
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

_ENV_VARS = (
    "OPSRECALL_HOME",
    "OPSRECALL_DB_PATH",
    "OPSRECALL_KNOWLEDGE_DIR",
    "OPSRECALL_EPISODE_RETENTION_DAYS",
    "OPSRECALL_RATE_LIMIT_GLOBAL",
    "OPSRECALL_RATE_LIMIT_WRITE",
)


def _now_iso():
    return datetime.now(timezone.utc).isoformat()


def write_knowledge(directory: Path) -> Path:
    """Write a small knowledge base covering every source file."""
    directory.mkdir(parents=True, exist_ok=True)
    now = _now_iso()
    files = {
        "patterns.json": {"patterns": [
            {"id": 1, "name": "Retry with backoff",
             "description": "Wrap flaky network calls in exponential backoff",
             "example": "retry(fetch, attempts=3)", "date": now},
            {"id": 2, "name": "Feature flags",
             "description": "Ship dark behind a flag and ramp gradually",
             "example": "if flags.enabled('search'):", "date": now},
        ]},
        "lessons.json": {"lessons": [
            {"id": 1, "situation": "A schema migration locked the production database",
             "learning": "Run migrations in small batches during low traffic", "date": now},
            {"id": 2, "situation": "Sprint review ran long",
             "learning": "Timebox demos to ten minutes", "date": now},
        ]},
        "decisions.json": {"decisions": [
            {"id": 1, "title": "Chose SQLite over Postgres", "context": "single node deployment",
             "rationale": "zero operations overhead", "alternatives": "Postgres, DuckDB", "date": now},
        ]},
        "deferred.json": {"items": [
            {"id": 1, "title": "Add OAuth login", "reason": "security review pending",
             "effort": "large", "date": now},
        ]},
    }
    for name, payload in files.items():
        (directory / name).write_text(json.dumps(payload), encoding="utf-8")
    return directory


@pytest.fixture
def tmp_home(tmp_path):
    """Create a temporary OPSRECALL_HOME for testing."""
    saved = {var: os.environ.pop(var, None) for var in _ENV_VARS}
    home = tmp_path / ".opsrecall"
    home.mkdir()
    os.environ["OPSRECALL_HOME"] = str(home)
    yield home
    for var, value in saved.items():
        if value is None:
            os.environ.pop(var, None)
        else:
            os.environ[var] = value


@pytest.fixture
def knowledge_dir(tmp_home):
    """Knowledge base at the default location under OPSRECALL_HOME."""
    return write_knowledge(tmp_home / "knowledge")


@pytest.fixture(autouse=True)
def _reset_engine():
    """Drop the process-scoped engine and context after every test."""
    yield
    from opsrecall.bridge import reset_engine
    reset_engine()


@pytest.fixture
def ctx(tmp_home):
    """Fresh MemoryContext on a temporary database."""
    from opsrecall.context import MemoryContext
    c = MemoryContext(tmp_home / "test.db")
    yield c
    c.close()


@pytest.fixture
def vec_ctx(ctx):
    """MemoryContext with sqlite-vec loaded; skips where the extension cannot load."""
    if not ctx.vec_loaded:
        pytest.skip("sqlite-vec extension could not be loaded")
    return ctx


@pytest.fixture
def graph(ctx):
    from opsrecall.graph_store import GraphStore
    g = GraphStore(ctx)
    g.initialize()
    return g


@pytest.fixture
def episodes(ctx):
    from opsrecall.episodic import EpisodicLog
    log = EpisodicLog(ctx)
    log.initialize()
    return log


@pytest.fixture
def knowledge(ctx, knowledge_dir):
    from opsrecall.knowledge_index import KnowledgeIndex
    index = KnowledgeIndex(ctx, knowledge_dir)
    index.initialize()
    return index
