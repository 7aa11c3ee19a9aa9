"""Database schema and migration logic for coop_memory SQLite storage.

Contains:
- Schema DDL constants (SCHEMA, VECTOR_SCHEMA)
- Schema version tracking (SCHEMA_VERSION)
- Table allowlist (ALLOWED_TABLES, validate_table_name)
- Database initialization (init_db)
- Schema migration (migrate_schema)
- Vector index setup (init_vector_schema)
"""

import logging
import re
import sqlite3
from typing import Optional

logger = logging.getLogger(__name__)

# Schema version for migrations
SCHEMA_VERSION = 3  # v3: people aliases, unique session summaries, embedding store

# Allowed table names for SQL queries (security: prevents SQL injection via table names)
ALLOWED_TABLES = frozenset(
    {
        "observations",
        "observations_fts",
        "observations_vec",
        "observation_history",
        "observation_archive",
        "observation_embeddings",
        "session_summaries",
        "people",
        "schema_version",
    }
)


def validate_table_name(table: str) -> str:
    """Validate table name against allowlist to prevent SQL injection.

    Raises:
        ValueError: If table name is not in allowlist
    """
    if table not in ALLOWED_TABLES:
        raise ValueError(f"Invalid table name: {table}")
    return table


SCHEMA = """
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS observations (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    agent_id TEXT NOT NULL,
    session_key TEXT,
    store TEXT NOT NULL,
    type TEXT NOT NULL,
    title TEXT NOT NULL,
    narrative TEXT,
    facts TEXT NOT NULL DEFAULT '[]',
    tags TEXT NOT NULL DEFAULT '[]',
    source TEXT,
    related_files TEXT NOT NULL DEFAULT '[]',
    related_people TEXT NOT NULL DEFAULT '[]',
    hash TEXT NOT NULL,
    mention_count INTEGER NOT NULL DEFAULT 1,
    token_count INTEGER,
    created_at INTEGER NOT NULL,
    updated_at INTEGER NOT NULL,
    expires_at INTEGER,
    min_trust TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_obs_agent ON observations(agent_id);
CREATE INDEX IF NOT EXISTS idx_obs_store ON observations(store);
CREATE INDEX IF NOT EXISTS idx_obs_type ON observations(type);
CREATE INDEX IF NOT EXISTS idx_obs_created ON observations(created_at DESC);
CREATE INDEX IF NOT EXISTS idx_obs_updated ON observations(updated_at DESC);
CREATE INDEX IF NOT EXISTS idx_obs_trust ON observations(min_trust);
CREATE INDEX IF NOT EXISTS idx_obs_hash ON observations(agent_id, hash);
CREATE INDEX IF NOT EXISTS idx_obs_session ON observations(agent_id, session_key);

-- Full-text shadow index (external content, kept current by triggers)
CREATE VIRTUAL TABLE IF NOT EXISTS observations_fts USING fts5(
    title,
    narrative,
    facts,
    tags,
    content='observations',
    content_rowid='id'
);

CREATE TRIGGER IF NOT EXISTS observations_ai AFTER INSERT ON observations BEGIN
    INSERT INTO observations_fts(rowid, title, narrative, facts, tags)
    VALUES (new.id, new.title, COALESCE(new.narrative, ''), new.facts, new.tags);
END;

CREATE TRIGGER IF NOT EXISTS observations_ad AFTER DELETE ON observations BEGIN
    INSERT INTO observations_fts(observations_fts, rowid, title, narrative, facts, tags)
    VALUES ('delete', old.id, old.title, COALESCE(old.narrative, ''), old.facts, old.tags);
END;

CREATE TRIGGER IF NOT EXISTS observations_au AFTER UPDATE ON observations BEGIN
    INSERT INTO observations_fts(observations_fts, rowid, title, narrative, facts, tags)
    VALUES ('delete', old.id, old.title, COALESCE(old.narrative, ''), old.facts, old.tags);
    INSERT INTO observations_fts(rowid, title, narrative, facts, tags)
    VALUES (new.id, new.title, COALESCE(new.narrative, ''), new.facts, new.tags);
END;

-- Append-only revision log. No foreign key: history outlives the row.
CREATE TABLE IF NOT EXISTS observation_history (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    observation_id INTEGER NOT NULL,
    agent_id TEXT,
    old_title TEXT,
    old_facts TEXT,
    new_title TEXT,
    new_facts TEXT,
    event TEXT NOT NULL,
    created_at INTEGER NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_history_obs ON observation_history(observation_id);

CREATE TABLE IF NOT EXISTS observation_archive (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    original_observation_id INTEGER NOT NULL,
    agent_id TEXT NOT NULL,
    session_key TEXT,
    store TEXT NOT NULL,
    type TEXT NOT NULL,
    title TEXT NOT NULL,
    narrative TEXT,
    facts TEXT NOT NULL DEFAULT '[]',
    tags TEXT NOT NULL DEFAULT '[]',
    source TEXT,
    related_files TEXT NOT NULL DEFAULT '[]',
    related_people TEXT NOT NULL DEFAULT '[]',
    hash TEXT NOT NULL,
    mention_count INTEGER NOT NULL DEFAULT 1,
    token_count INTEGER,
    created_at INTEGER NOT NULL,
    updated_at INTEGER NOT NULL,
    expires_at INTEGER,
    min_trust TEXT NOT NULL,
    archive_reason TEXT NOT NULL,
    archived_at INTEGER NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_archive_agent ON observation_archive(agent_id, archived_at);

-- Durable copy of every embedding; observations_vec is rebuilt from it.
CREATE TABLE IF NOT EXISTS observation_embeddings (
    observation_id INTEGER PRIMARY KEY
        REFERENCES observations(id) ON DELETE CASCADE,
    embedding BLOB NOT NULL,
    dimensions INTEGER NOT NULL,
    updated_at INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS session_summaries (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    agent_id TEXT NOT NULL,
    session_key TEXT NOT NULL,
    request TEXT,
    outcome TEXT,
    decisions TEXT,
    open_items TEXT,
    observation_count INTEGER,
    created_at INTEGER NOT NULL,
    UNIQUE(agent_id, session_key)
);

CREATE TABLE IF NOT EXISTS people (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    agent_id TEXT NOT NULL,
    name TEXT NOT NULL,
    store TEXT NOT NULL,
    facts TEXT,
    aliases TEXT NOT NULL DEFAULT '[]',
    last_mentioned INTEGER,
    mention_count INTEGER DEFAULT 0,
    UNIQUE(agent_id, name)
);
"""

# Virtual table for vector search (created when sqlite-vec is available)
VECTOR_SCHEMA = """
CREATE VIRTUAL TABLE IF NOT EXISTS observations_vec USING vec0(
    embedding float[{dim}]
);
"""

_VEC_DIM_RE = re.compile(r"float\[(\d+)\]", re.IGNORECASE)


def init_db(conn: sqlite3.Connection) -> None:
    """Create tables if absent and bring an existing database up to date.

    The connection is expected to be in autocommit mode; executescript()
    manages its own statements.
    """
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA synchronous=NORMAL")
    conn.execute("PRAGMA foreign_keys=ON")

    # Migrations run before the full schema so new indexes see new columns
    migrate_schema(conn)

    conn.executescript(SCHEMA)

    row = conn.execute("SELECT version FROM schema_version LIMIT 1").fetchone()
    if row is None:
        conn.execute("INSERT INTO schema_version (version) VALUES (?)", (SCHEMA_VERSION,))
    elif row[0] != SCHEMA_VERSION:
        conn.execute("UPDATE schema_version SET version = ?", (SCHEMA_VERSION,))
        logger.info(f"Schema upgraded from v{row[0]} to v{SCHEMA_VERSION}")


def migrate_schema(conn: sqlite3.Connection) -> None:
    """Run schema migrations for existing databases."""
    tables = conn.execute("SELECT name FROM sqlite_master WHERE type='table'").fetchall()
    table_names = {t[0] for t in tables}

    if "observations" not in table_names:
        # Fresh database, no migration needed
        return

    def get_columns(table: str) -> set:
        validate_table_name(table)
        return {row[1] for row in conn.execute(f"PRAGMA table_info({table})").fetchall()}

    if "people" in table_names and "aliases" not in get_columns("people"):
        conn.execute("ALTER TABLE people ADD COLUMN aliases TEXT NOT NULL DEFAULT '[]'")
        logger.info("Added aliases column to people")

    if "observation_history" in table_names and "agent_id" not in get_columns(
        "observation_history"
    ):
        conn.execute("ALTER TABLE observation_history ADD COLUMN agent_id TEXT")
        conn.execute("""
            UPDATE observation_history SET agent_id = (
                SELECT agent_id FROM observations o
                WHERE o.id = observation_history.observation_id
            )
        """)
        logger.info("Added agent_id column to observation_history")

    if "session_summaries" in table_names:
        # Older databases allowed several summaries per session; keep the newest.
        removed = conn.execute("""
            DELETE FROM session_summaries
            WHERE id NOT IN (
                SELECT MAX(id) FROM session_summaries GROUP BY agent_id, session_key
            )
        """).rowcount
        if removed:
            logger.info(f"Removed {removed} superseded session summaries")
        conn.execute("""
            CREATE UNIQUE INDEX IF NOT EXISTS idx_session_summaries_key
            ON session_summaries(agent_id, session_key)
        """)


def existing_vector_dimension(conn: sqlite3.Connection) -> Optional[int]:
    """Dimension of an existing observations_vec table, or None if absent."""
    row = conn.execute(
        "SELECT sql FROM sqlite_master WHERE type='table' AND name='observations_vec'"
    ).fetchone()
    if row is None or not row[0]:
        return None
    match = _VEC_DIM_RE.search(row[0])
    return int(match.group(1)) if match else None


def init_vector_schema(conn: sqlite3.Connection, dimension: Optional[int]) -> bool:
    """Create the vec0 index for ``dimension``. Returns False on any failure.

    sqlite-vec must already be loaded into ``conn``. An existing index with a
    different dimension is dropped and recreated empty; the caller repopulates
    it from observation_embeddings.
    """
    if not dimension or dimension <= 0:
        return False

    try:
        current = existing_vector_dimension(conn)
        if current is not None and current != dimension:
            logger.warning(
                f"observations_vec has dimension {current}, embedder has {dimension}; recreating"
            )
            conn.execute("DROP TABLE observations_vec")
        conn.executescript(VECTOR_SCHEMA.format(dim=int(dimension)))
        return True
    except sqlite3.Error as e:
        logger.warning(f"Could not create vector table, using FTS-only retrieval: {e}")
        return False
