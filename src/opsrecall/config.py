"""opsrecall configuration -- environment-driven paths and limits.

Everything is resolved lazily so tests can point OPSRECALL_HOME at a
temporary directory after import.
"""

import logging
import os
import sys
from pathlib import Path

EPISODE_RETENTION_DAYS_DEFAULT = 90
DB_FILENAME = "knowledge.db"


def opsrecall_home() -> Path:
    """Resolve OPSRECALL_HOME lazily so tests can override via env var."""
    return Path(os.environ.get("OPSRECALL_HOME", str(Path.home() / ".opsrecall")))


def db_path() -> Path:
    """Path of the single database file holding every store."""
    override = os.environ.get("OPSRECALL_DB_PATH")
    if override:
        return Path(override)
    return opsrecall_home() / DB_FILENAME


def knowledge_dir() -> Path:
    """Directory containing patterns.json, lessons.json, decisions.json, deferred.json."""
    override = os.environ.get("OPSRECALL_KNOWLEDGE_DIR")
    if override:
        return Path(override)
    return opsrecall_home() / "knowledge"


def episode_retention_days() -> int:
    raw = os.environ.get("OPSRECALL_EPISODE_RETENTION_DAYS", str(EPISODE_RETENTION_DAYS_DEFAULT))
    try:
        return max(1, int(raw))
    except ValueError:
        return EPISODE_RETENTION_DAYS_DEFAULT


def env_int(name: str, default: int) -> int:
    """Read an integer env var, falling back to *default* on garbage."""
    try:
        return int(os.environ.get(name, str(default)))
    except ValueError:
        return default


def configure_logging(level=None) -> None:
    """Configure stderr logging for entry points (CLI, MCP server).

    stdout is reserved for command output and the MCP stdio transport.
    """
    level_name = level or os.environ.get("OPSRECALL_LOG_LEVEL", "WARNING")
    numeric = logging.getLevelName(str(level_name).upper())
    if not isinstance(numeric, int):
        numeric = logging.WARNING
    logging.basicConfig(
        level=numeric,
        stream=sys.stderr,
        format="%(asctime)s %(levelname)-5s %(name)s: %(message)s",
    )
