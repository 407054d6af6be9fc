"""SQLite database schema and initialization for notetriage.

This module defines the database schema with 5 tables:
- notes: Note read model (title, content, updated_at)
- note_inferences: Append-only baseline classification lineage
- llm_inference_results: LLM re-classification results and review status
- promotion_notifications: Suggestions to promote scratch notes
- agent_state: Key-value state persistence

Usage:
    from notetriage.db.models import init_database

    # Initialize database (creates tables if not exist)
    await init_database("data/notetriage.db")
"""

import stat
from pathlib import Path

import aiosqlite

from notetriage.core.errors import DatabaseError
from notetriage.core.logging import get_logger

logger = get_logger(__name__)

# Bump together with a migration in init_database
SCHEMA_VERSION = 1

REQUIRED_TABLES = (
    "notes",
    "note_inferences",
    "llm_inference_results",
    "promotion_notifications",
    "agent_state",
)


SCHEMA_SQL = """
-- WAL is sticky: set once, every later connection inherits it.
PRAGMA journal_mode=WAL;

-- Notes owned by the host application (read model)
CREATE TABLE IF NOT EXISTS notes (
    id TEXT PRIMARY KEY,
    title TEXT NOT NULL DEFAULT '',
    content TEXT NOT NULL DEFAULT '',
    updated_at DATETIME
);

CREATE INDEX IF NOT EXISTS idx_notes_updated_at ON notes(updated_at);

-- Baseline lineage: rows are appended, never updated. Latest row wins.
CREATE TABLE IF NOT EXISTS note_inferences (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    note_id TEXT NOT NULL REFERENCES notes(id) ON DELETE CASCADE,
    type TEXT NOT NULL,                     -- decision | learning | scratch | emotion | log
    intent TEXT NOT NULL DEFAULT 'unknown',
    confidence REAL NOT NULL,
    confidence_detail_json TEXT,            -- {"structural", "experiential", "temporal"}
    decay_profile TEXT NOT NULL DEFAULT 'exploratory',
    reasoning TEXT,
    model TEXT NOT NULL,                    -- 'rule-v1', 'llm-<model>', 'user-override'
    created_at DATETIME NOT NULL
);

-- Composite index for baseline lookups (latest row per note)
CREATE INDEX IF NOT EXISTS idx_note_inferences_note_created
    ON note_inferences(note_id, created_at DESC, id DESC);

-- LLM re-classification results
CREATE TABLE IF NOT EXISTS llm_inference_results (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    note_id TEXT NOT NULL REFERENCES notes(id) ON DELETE CASCADE,
    type TEXT NOT NULL,
    intent TEXT NOT NULL DEFAULT 'unknown',
    confidence REAL NOT NULL,
    confidence_detail_json TEXT,            -- {"structural", "semantic", "reasoning"}
    decay_profile TEXT NOT NULL DEFAULT 'exploratory',
    reasoning TEXT,

    -- Request metadata
    model TEXT NOT NULL,
    prompt_tokens INTEGER DEFAULT 0,
    completion_tokens INTEGER DEFAULT 0,
    context_truncated INTEGER DEFAULT 0,
    fallback_used INTEGER DEFAULT 0,
    inference_version TEXT,
    seed INTEGER,

    -- Review workflow
    status TEXT NOT NULL DEFAULT 'pending', -- 'pending', 'auto_applied', 'auto_applied_notified',
                                            -- 'approved', 'overridden', 'error'
    resolved_at DATETIME,
    user_override_type TEXT,
    user_override_reason TEXT,

    -- Error rows only
    error_code TEXT,
    error_message TEXT,

    created_at DATETIME NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_llm_results_status ON llm_inference_results(status, created_at);
CREATE INDEX IF NOT EXISTS idx_llm_results_note ON llm_inference_results(note_id, status);
CREATE INDEX IF NOT EXISTS idx_llm_results_few_shot
    ON llm_inference_results(type, status, confidence);

-- Promotion suggestions for scratch notes
CREATE TABLE IF NOT EXISTS promotion_notifications (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    note_id TEXT NOT NULL REFERENCES notes(id) ON DELETE CASCADE,
    trigger_type TEXT NOT NULL,             -- 'confidence_rise'
    source TEXT NOT NULL DEFAULT 'realtime', -- 'realtime', 'batch'
    suggested_type TEXT NOT NULL,           -- 'decision', 'learning'
    reason TEXT,
    reason_detail_json TEXT,                -- {"confidence_delta", "previous_confidence", "structural"}
    confidence REAL,
    status TEXT NOT NULL DEFAULT 'pending', -- 'pending', 'dismissed', 'promoted'
    created_at DATETIME NOT NULL,
    resolved_at DATETIME
);

CREATE INDEX IF NOT EXISTS idx_promotions_note_trigger
    ON promotion_notifications(note_id, trigger_type, status);
CREATE INDEX IF NOT EXISTS idx_promotions_status ON promotion_notifications(status, created_at);

-- Agent runtime state (key-value store)
CREATE TABLE IF NOT EXISTS agent_state (
    key TEXT PRIMARY KEY,
    value TEXT,
    updated_at DATETIME DEFAULT CURRENT_TIMESTAMP
);
"""


_OWNER_ONLY = stat.S_IRUSR | stat.S_IWUSR


def _restrict_permissions(db_path: Path) -> None:
    # Notes are personal data: owner read/write on the db and its WAL sidecars
    for path in (db_path, Path(f"{db_path}-wal"), Path(f"{db_path}-shm")):
        if path.exists():
            path.chmod(_OWNER_ONLY)


async def init_database(db_path: str | Path) -> None:
    """Create the notetriage schema at db_path. Safe to run repeatedly.

    Raises:
        DatabaseError: If SQLite refuses to open or migrate the file
    """
    db_path = Path(db_path)
    db_path.parent.mkdir(parents=True, exist_ok=True)

    try:
        async with aiosqlite.connect(db_path) as db:
            cursor = await db.execute("PRAGMA journal_mode=WAL")
            row = await cursor.fetchone()
            if row and str(row[0]).lower() != "wal":
                logger.warning("db_wal_unavailable", journal_mode=row[0], db_path=str(db_path))

            await db.executescript(SCHEMA_SQL)
            await db.commit()
    except aiosqlite.Error as e:
        logger.error("db_init_failed", db_path=str(db_path), error=str(e))
        raise DatabaseError(
            f"Cannot initialize notetriage database at {db_path}: {e}. "
            "Is the directory writable and the file a valid SQLite database?"
        ) from e

    _restrict_permissions(db_path)
    logger.info("db_initialized", db_path=str(db_path), schema_version=SCHEMA_VERSION)


async def verify_schema(db_path: str | Path) -> bool:
    """True when every table notetriage needs is present."""
    try:
        async with aiosqlite.connect(db_path) as db:
            cursor = await db.execute("SELECT name FROM sqlite_master WHERE type = 'table'")
            present = {name for (name,) in await cursor.fetchall()}
    except aiosqlite.Error as e:
        logger.error("db_schema_check_failed", db_path=str(db_path), error=str(e))
        return False

    missing = sorted(set(REQUIRED_TABLES) - present)
    if missing:
        logger.warning("db_tables_missing", missing=missing, db_path=str(db_path))
        return False
    return True
