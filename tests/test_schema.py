"""Tests for coop_memory.storage.schema: DDL, triggers and migrations."""

import sqlite3

import pytest

from coop_memory.storage import SQLiteMemory
from coop_memory.storage.schema import (
    ALLOWED_TABLES,
    SCHEMA_VERSION,
    existing_vector_dimension,
    init_db,
    init_vector_schema,
    validate_table_name,
)
from coop_memory.types import MemoryQuery


def _tables(conn):
    return {r[0] for r in conn.execute("SELECT name FROM sqlite_master WHERE type='table'")}


def _columns(conn, table):
    return {r[1] for r in conn.execute(f"PRAGMA table_info({table})")}


@pytest.fixture
def raw_conn(db_path):
    conn = sqlite3.connect(str(db_path), isolation_level=None)
    yield conn
    conn.close()


class TestInitDb:
    def test_creates_tables(self, raw_conn):
        init_db(raw_conn)
        expected = ALLOWED_TABLES - {"observations_vec"}
        assert expected <= _tables(raw_conn)

    def test_records_version(self, raw_conn):
        init_db(raw_conn)
        row = raw_conn.execute("SELECT version FROM schema_version").fetchone()
        assert row[0] == SCHEMA_VERSION

    def test_idempotent(self, raw_conn):
        init_db(raw_conn)
        init_db(raw_conn)
        assert raw_conn.execute("SELECT COUNT(*) FROM schema_version").fetchone()[0] == 1

    def test_wal_and_foreign_keys(self, raw_conn):
        init_db(raw_conn)
        assert raw_conn.execute("PRAGMA journal_mode").fetchone()[0] == "wal"
        assert raw_conn.execute("PRAGMA foreign_keys").fetchone()[0] == 1


class TestTableAllowlist:
    def test_known_table(self):
        assert validate_table_name("observations") == "observations"

    def test_unknown_table(self):
        with pytest.raises(ValueError):
            validate_table_name("observations; DROP TABLE people")


class TestFtsSync:
    def test_update_reindexes(self, memory, make_obs):
        obs_id = memory.write(make_obs("original wording")).id
        with memory._connect() as conn:
            conn.execute("UPDATE observations SET title = 'rewritten text' WHERE id = ?", (obs_id,))
        assert memory.search(MemoryQuery(text="original")) == []
        assert [r.id for r in memory.search(MemoryQuery(text="rewritten"))] == [obs_id]

    def test_delete_unindexes(self, memory, make_obs):
        obs_id = memory.write(make_obs("short lived")).id
        with memory._connect() as conn:
            conn.execute("DELETE FROM observations WHERE id = ?", (obs_id,))
            rows = conn.execute(
                "SELECT rowid FROM observations_fts WHERE observations_fts MATCH 'lived'"
            ).fetchall()
        assert rows == []


class TestVectorSchema:
    def test_no_dimension(self, raw_conn):
        assert init_vector_schema(raw_conn, None) is False
        assert init_vector_schema(raw_conn, 0) is False

    def test_without_extension_fails_softly(self, raw_conn):
        init_db(raw_conn)
        assert init_vector_schema(raw_conn, 8) is False
        assert existing_vector_dimension(raw_conn) is None


class TestMigrations:
    @pytest.fixture
    def legacy_db(self, db_path, raw_conn):
        """A database shaped like the previous schema version."""
        init_db(raw_conn)
        raw_conn.executescript("""
            DROP TABLE people;
            CREATE TABLE people (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                agent_id TEXT NOT NULL,
                name TEXT NOT NULL,
                store TEXT NOT NULL,
                facts TEXT,
                last_mentioned INTEGER,
                mention_count INTEGER DEFAULT 0,
                UNIQUE(agent_id, name)
            );
            DROP TABLE observation_history;
            CREATE TABLE observation_history (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                observation_id INTEGER NOT NULL,
                old_title TEXT,
                old_facts TEXT,
                new_title TEXT,
                new_facts TEXT,
                event TEXT NOT NULL,
                created_at INTEGER NOT NULL
            );
            DROP TABLE session_summaries;
            CREATE TABLE session_summaries (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                agent_id TEXT NOT NULL,
                session_key TEXT NOT NULL,
                request TEXT,
                outcome TEXT,
                decisions TEXT,
                open_items TEXT,
                observation_count INTEGER,
                created_at INTEGER NOT NULL
            );
            UPDATE schema_version SET version = 2;
        """)
        raw_conn.execute(
            """INSERT INTO observations (agent_id, store, type, title, hash, created_at,
                                         updated_at, min_trust)
               VALUES ('test-agent', 'shared', 'note', 'legacy', 'h', 1, 1, 'inner')"""
        )
        raw_conn.execute(
            """INSERT INTO observation_history (observation_id, new_title, event, created_at)
               VALUES (1, 'legacy', 'ADD', 1)"""
        )
        raw_conn.execute(
            """INSERT INTO people (agent_id, name, store, facts)
               VALUES ('test-agent', 'Ada', 'shared', '{}')"""
        )
        for outcome in ("first", "second"):
            raw_conn.execute(
                """INSERT INTO session_summaries (agent_id, session_key, outcome, created_at)
                   VALUES ('test-agent', 's1', ?, 1)""",
                (outcome,),
            )
        return db_path

    def test_people_aliases_added(self, legacy_db):
        with SQLiteMemory(legacy_db, agent_id="test-agent") as mem:
            assert mem.add_person_alias("Ada", "Countess") is True
            assert mem.people("countess")[0].name == "Ada"

    def test_history_agent_backfilled(self, legacy_db):
        with SQLiteMemory(legacy_db, agent_id="test-agent") as mem:
            assert [e.event for e in mem.history(1)] == ["ADD"]

    def test_session_summaries_deduplicated(self, legacy_db):
        with SQLiteMemory(legacy_db, agent_id="test-agent") as mem:
            summaries = mem.recent_session_summaries()
            assert [s.outcome for s in summaries] == ["second"]

    def test_version_bumped(self, legacy_db):
        with SQLiteMemory(legacy_db, agent_id="test-agent") as mem:
            with mem._connect() as conn:
                version = conn.execute("SELECT version FROM schema_version").fetchone()[0]
                assert version == SCHEMA_VERSION
                assert "aliases" in _columns(conn, "people")
                assert "agent_id" in _columns(conn, "observation_history")
