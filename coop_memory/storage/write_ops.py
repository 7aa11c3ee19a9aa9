"""Write-side SQL for SQLiteMemory.

Every function here runs on a connection the caller already holds inside
a transaction; none of them commit. Covers observation insert, exact-dup
bumps, reconciliation updates, archival, revision history, people and
session summaries.
"""

import json
import logging
import sqlite3
from typing import Callable, List, Optional

from ..trust import min_trust_for_store, trust_to_str
from ..types import (
    ArchivedObservation,
    NewObservation,
    Observation,
    ObservationHistoryEntry,
    Person,
    ReconcileObservation,
    SessionSummary,
)
from .codec import (
    dict_from_json,
    dt_from_ms,
    escape_like_pattern,
    from_json,
    ms_from_dt,
    normalize_file_path,
    observation_hash,
    observation_token_count,
    to_json,
)

logger = logging.getLogger(__name__)

# History event labels
EVENT_ADD = "ADD"
EVENT_DUP = "DUP"
EVENT_UPDATE = "UPDATE"
EVENT_DELETE = "DELETE"
EVENT_NONE = "NONE"
EVENT_COMPRESS = "COMPRESS"

PEOPLE_LIMIT = 20


def token_count_for(obs: NewObservation) -> int:
    if obs.token_count is not None:
        return obs.token_count
    return observation_token_count(obs.title, obs.narrative, obs.facts)


# === History ===


def record_history(
    conn: sqlite3.Connection,
    agent_id: str,
    observation_id: int,
    event: str,
    now: int,
    old_title: Optional[str] = None,
    old_facts: Optional[List[str]] = None,
    new_title: Optional[str] = None,
    new_facts: Optional[List[str]] = None,
) -> None:
    conn.execute(
        """INSERT INTO observation_history (
               observation_id, agent_id, old_title, old_facts,
               new_title, new_facts, event, created_at
           ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
        (
            observation_id,
            agent_id,
            old_title,
            to_json(old_facts) if old_facts is not None else None,
            new_title,
            to_json(new_facts) if new_facts is not None else None,
            event,
            now,
        ),
    )


def history(
    conn: sqlite3.Connection, agent_id: str, observation_id: int
) -> List[ObservationHistoryEntry]:
    rows = conn.execute(
        """SELECT observation_id, old_title, old_facts, new_title, new_facts, event, created_at
           FROM observation_history
           WHERE observation_id = ? AND agent_id = ?
           ORDER BY created_at ASC, id ASC""",
        (observation_id, agent_id),
    ).fetchall()
    return [
        ObservationHistoryEntry(
            observation_id=row["observation_id"],
            old_title=row["old_title"],
            old_facts=from_json(row["old_facts"]) if row["old_facts"] is not None else None,
            new_title=row["new_title"],
            new_facts=from_json(row["new_facts"]) if row["new_facts"] is not None else None,
            event=row["event"],
            created_at=dt_from_ms(row["created_at"]),
        )
        for row in rows
    ]


# === Observations ===


def find_exact_dup(
    conn: sqlite3.Connection, agent_id: str, content_hash: str, now: int
) -> Optional[sqlite3.Row]:
    """Live row with the same content hash for this agent, if any."""
    return conn.execute(
        """SELECT id, title, facts, mention_count FROM observations
           WHERE agent_id = ? AND hash = ?
             AND (expires_at IS NULL OR expires_at > ?)
           ORDER BY id ASC
           LIMIT 1""",
        (agent_id, content_hash, now),
    ).fetchone()


def bump_mentions(
    conn: sqlite3.Connection, agent_id: str, observation_id: int, event: str, now: int
) -> bool:
    """Increment mention_count, advance updated_at and log ``event``."""
    row = conn.execute(
        "SELECT title, facts FROM observations WHERE id = ? AND agent_id = ?",
        (observation_id, agent_id),
    ).fetchone()
    if row is None:
        return False
    conn.execute(
        """UPDATE observations
           SET mention_count = mention_count + 1, updated_at = ?
           WHERE id = ?""",
        (now, observation_id),
    )
    facts = from_json(row["facts"])
    record_history(
        conn,
        agent_id,
        observation_id,
        event,
        now,
        old_title=row["title"],
        old_facts=facts,
        new_title=row["title"],
        new_facts=facts,
    )
    return True


def insert_observation(
    conn: sqlite3.Connection,
    agent_id: str,
    obs: NewObservation,
    now: int,
    content_hash: Optional[str] = None,
    mention_count: int = 1,
) -> int:
    """Insert a new row, log ADD and update the people table. Returns the id."""
    content_hash = content_hash or observation_hash(obs.title, obs.facts)
    files = [p for p in (normalize_file_path(f) for f in obs.related_files) if p]
    cursor = conn.execute(
        """INSERT INTO observations (
               agent_id, session_key, store, type, title, narrative, facts, tags,
               source, related_files, related_people, hash, mention_count,
               token_count, created_at, updated_at, expires_at, min_trust
           ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
        (
            agent_id,
            obs.session_key,
            obs.store,
            obs.obs_type,
            obs.title,
            obs.narrative,
            to_json(obs.facts),
            to_json(obs.tags),
            obs.source,
            to_json(files),
            to_json(obs.related_people),
            content_hash,
            mention_count,
            token_count_for(obs),
            now,
            now,
            ms_from_dt(obs.expires_at) if obs.expires_at is not None else None,
            trust_to_str(min_trust_for_store(obs.store)),
        ),
    )
    obs_id = cursor.lastrowid
    record_history(conn, agent_id, obs_id, EVENT_ADD, now, new_title=obs.title, new_facts=obs.facts)
    upsert_people(conn, agent_id, obs.related_people, obs.store, now)
    return obs_id


def update_observation(
    conn: sqlite3.Connection,
    agent_id: str,
    existing: Observation,
    merged: ReconcileObservation,
    now: int,
) -> None:
    """Replace an observation's content with a merged payload.

    The store tier (and so min_trust) and created_at never change; the hash
    and token count are recomputed and the mention count goes up by one.
    """
    files = [p for p in (normalize_file_path(f) for f in merged.related_files) if p]
    conn.execute(
        """UPDATE observations
           SET type = ?, title = ?, narrative = ?, facts = ?, tags = ?,
               related_files = ?, related_people = ?, hash = ?, token_count = ?,
               mention_count = mention_count + 1, updated_at = ?
           WHERE id = ? AND agent_id = ?""",
        (
            merged.obs_type or existing.obs_type,
            merged.title,
            merged.narrative,
            to_json(merged.facts),
            to_json(merged.tags),
            to_json(files),
            to_json(merged.related_people),
            observation_hash(merged.title, merged.facts),
            observation_token_count(merged.title, merged.narrative, merged.facts),
            now,
            existing.id,
            agent_id,
        ),
    )
    record_history(
        conn,
        agent_id,
        existing.id,
        EVENT_UPDATE,
        now,
        old_title=existing.title,
        old_facts=existing.facts,
        new_title=merged.title,
        new_facts=merged.facts,
    )
    new_people = [p for p in merged.related_people if p not in existing.related_people]
    upsert_people(conn, agent_id, new_people, existing.store, now)


def archive_observation(
    conn: sqlite3.Connection,
    agent_id: str,
    observation_id: int,
    reason: str,
    now: int,
    remove_vector: Optional[Callable[[int], None]] = None,
) -> bool:
    """Snapshot a row into observation_archive, then delete it.

    The FTS row goes with the delete trigger, the stored embedding with the
    foreign-key cascade; ``remove_vector`` drops the sqlite-vec row.
    """
    cursor = conn.execute(
        """INSERT INTO observation_archive (
               original_observation_id, agent_id, session_key, store, type, title,
               narrative, facts, tags, source, related_files, related_people, hash,
               mention_count, token_count, created_at, updated_at, expires_at,
               min_trust, archive_reason, archived_at
           )
           SELECT id, agent_id, session_key, store, type, title,
                  narrative, facts, tags, source, related_files, related_people, hash,
                  mention_count, token_count, created_at, updated_at, expires_at,
                  min_trust, ?, ?
           FROM observations
           WHERE id = ? AND agent_id = ?""",
        (reason, now, observation_id, agent_id),
    )
    if cursor.rowcount == 0:
        return False
    conn.execute("DELETE FROM observations WHERE id = ?", (observation_id,))
    if remove_vector is not None:
        remove_vector(observation_id)
    return True


def archived(conn: sqlite3.Connection, agent_id: str, limit: int) -> List[ArchivedObservation]:
    rows = conn.execute(
        """SELECT id, original_observation_id, title, store, type, facts,
                  mention_count, archive_reason, archived_at
           FROM observation_archive
           WHERE agent_id = ?
           ORDER BY archived_at DESC, id DESC
           LIMIT ?""",
        (agent_id, max(limit, 1)),
    ).fetchall()
    return [
        ArchivedObservation(
            id=row["id"],
            original_observation_id=row["original_observation_id"],
            title=row["title"],
            store=row["store"],
            obs_type=row["type"],
            facts=from_json(row["facts"]),
            archive_reason=row["archive_reason"],
            archived_at=dt_from_ms(row["archived_at"]),
            mention_count=row["mention_count"] or 1,
        )
        for row in rows
    ]


# === People ===


def upsert_people(
    conn: sqlite3.Connection, agent_id: str, names: List[str], store: str, now: int
) -> None:
    for name in names:
        name = name.strip()
        if not name:
            continue
        conn.execute(
            """INSERT INTO people (agent_id, name, store, facts, last_mentioned, mention_count)
               VALUES (?, ?, ?, '{}', ?, 1)
               ON CONFLICT(agent_id, name) DO UPDATE SET
                   store = excluded.store,
                   last_mentioned = excluded.last_mentioned,
                   mention_count = people.mention_count + 1""",
            (agent_id, name, store, now),
        )


def people(conn: sqlite3.Connection, agent_id: str, query: str) -> List[Person]:
    """People whose name or any alias contains ``query`` (case-insensitive)."""
    needle = f"%{escape_like_pattern(query.strip())}%"
    rows = conn.execute(
        """SELECT name, store, facts, aliases, last_mentioned, mention_count
           FROM people
           WHERE agent_id = ?
             AND (name LIKE ? ESCAPE '\\' OR EXISTS (
                 SELECT 1 FROM json_each(people.aliases) a WHERE a.value LIKE ? ESCAPE '\\'
             ))
           ORDER BY mention_count DESC, COALESCE(last_mentioned, 0) DESC
           LIMIT ?""",
        (agent_id, needle, needle, PEOPLE_LIMIT),
    ).fetchall()
    return [
        Person(
            name=row["name"],
            store=row["store"],
            facts=dict_from_json(row["facts"]),
            aliases=from_json(row["aliases"]),
            last_mentioned=dt_from_ms(row["last_mentioned"]),
            mention_count=row["mention_count"] or 0,
        )
        for row in rows
    ]


def add_person_alias(conn: sqlite3.Connection, agent_id: str, name: str, alias: str) -> bool:
    """Attach ``alias`` to a known person. Returns False for unknown people."""
    alias = alias.strip()
    row = conn.execute(
        "SELECT id, aliases FROM people WHERE agent_id = ? AND name = ?",
        (agent_id, name),
    ).fetchone()
    if row is None or not alias:
        return False

    aliases = from_json(row["aliases"])
    if alias.lower() == name.lower() or alias.lower() in {a.lower() for a in aliases}:
        return True
    aliases.append(alias)
    conn.execute("UPDATE people SET aliases = ? WHERE id = ?", (to_json(aliases), row["id"]))
    return True


# === Session summaries ===


def summarize_session(
    conn: sqlite3.Connection, agent_id: str, session_key: str, now: int
) -> SessionSummary:
    """Deterministic summary of a session's observations, upserted per session.

    The first title is the request, the last the outcome; decision and task
    observations feed ``decisions`` and ``open_items``.
    """
    rows = conn.execute(
        """SELECT title, type FROM observations
           WHERE agent_id = ? AND session_key = ?
           ORDER BY created_at ASC, id ASC""",
        (agent_id, session_key),
    ).fetchall()

    titles = [row["title"] for row in rows]
    decisions = [row["title"] for row in rows if row["type"] == "decision"]
    open_items = [row["title"] for row in rows if row["type"] == "task"]

    summary = SessionSummary(
        session_key=session_key,
        request=titles[0] if titles else "",
        outcome=titles[-1] if titles else "",
        decisions=decisions,
        open_items=open_items,
        observation_count=len(titles),
        created_at=dt_from_ms(now),
    )

    conn.execute(
        """INSERT INTO session_summaries (
               agent_id, session_key, request, outcome, decisions, open_items,
               observation_count, created_at
           ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
           ON CONFLICT(agent_id, session_key) DO UPDATE SET
               request = excluded.request,
               outcome = excluded.outcome,
               decisions = excluded.decisions,
               open_items = excluded.open_items,
               observation_count = excluded.observation_count,
               created_at = excluded.created_at""",
        (
            agent_id,
            session_key,
            summary.request,
            summary.outcome,
            json.dumps(decisions),
            json.dumps(open_items),
            summary.observation_count,
            now,
        ),
    )
    return summary


def recent_session_summaries(
    conn: sqlite3.Connection, agent_id: str, limit: int
) -> List[SessionSummary]:
    rows = conn.execute(
        """SELECT session_key, request, outcome, decisions, open_items,
                  observation_count, created_at
           FROM session_summaries
           WHERE agent_id = ?
           ORDER BY created_at DESC, id DESC
           LIMIT ?""",
        (agent_id, max(limit, 1)),
    ).fetchall()
    return [
        SessionSummary(
            session_key=row["session_key"],
            request=row["request"] or "",
            outcome=row["outcome"] or "",
            decisions=from_json(row["decisions"]),
            open_items=from_json(row["open_items"]),
            observation_count=row["observation_count"] or 0,
            created_at=dt_from_ms(row["created_at"]),
        )
        for row in rows
    ]
