"""Maintenance stages for SQLiteMemory.

Three stages, each bounded by ``max_rows_per_run``:

1. compress: clusters of stale observations sharing store, type and
   normalised title collapse into one summary row; the originals expire.
2. archive: rows older than the archive cutoff (or expired before it)
   move to observation_archive.
3. cleanup: archive rows older than the retention cutoff are deleted.

Plus the sqlite-vec index rebuild from stored embeddings.
"""

import logging
import sqlite3
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from ..types import MaintenanceConfig
from .codec import (
    DAY_MS,
    from_json,
    observation_hash,
    observation_token_count,
    to_json,
)
from .write_ops import EVENT_ADD, EVENT_COMPRESS, archive_observation, record_history

logger = logging.getLogger(__name__)

COMPRESSED_TAG = "compressed"
MAINTENANCE_SOURCE = "maintenance"

ARCHIVE_REASON_AGE = "age"
ARCHIVE_REASON_EXPIRED = "expired"


@dataclass
class CompressionStats:
    scanned: int = 0
    compressed: int = 0
    summaries: int = 0
    # (id, title, facts) of every summary row written, for embedding
    summary_rows: List[Tuple[int, str, List[str]]] = field(default_factory=list)


def normalize_title(title: str) -> str:
    return " ".join(title.split()).lower()


def union_sorted(items: Iterable[str]) -> List[str]:
    return sorted({item.strip() for item in items if item and item.strip()})


def compress_stale_observations(
    conn: sqlite3.Connection, agent_id: str, config: MaintenanceConfig, now: int
) -> CompressionStats:
    stale_cutoff = now - config.compress_after_days * DAY_MS
    min_size = max(config.compression_min_cluster_size, 1)
    fetch_limit = config.max_rows_per_run * min_size

    rows = conn.execute(
        """SELECT id, session_key, store, type, title, facts, tags,
                  related_files, related_people, mention_count, min_trust
           FROM observations
           WHERE agent_id = ?
             AND created_at <= ?
             AND (expires_at IS NULL OR expires_at > ?)
           ORDER BY store ASC, type ASC, lower(title) ASC, created_at ASC
           LIMIT ?""",
        (agent_id, stale_cutoff, now, fetch_limit),
    ).fetchall()

    stats = CompressionStats(scanned=len(rows))
    if not rows:
        return stats

    clusters: Dict[Tuple[str, str, str], List[sqlite3.Row]] = {}
    for row in rows:
        key = (row["store"], row["type"], normalize_title(row["title"]))
        clusters.setdefault(key, []).append(row)

    for key in sorted(clusters):
        cluster = clusters[key]
        if len(cluster) < min_size:
            continue
        if stats.compressed + len(cluster) > config.max_rows_per_run:
            continue

        first = cluster[0]
        title = f"{first['title']} (compressed {len(cluster)})"
        narrative = (
            f"Deterministic summary from {len(cluster)} observations in the "
            f"'{first['store']}' / '{first['type']}' cluster."
        )
        facts = union_sorted(f for row in cluster for f in from_json(row["facts"]))
        tags = union_sorted(
            [t for row in cluster for t in from_json(row["tags"])] + [COMPRESSED_TAG]
        )
        files = union_sorted(f for row in cluster for f in from_json(row["related_files"]))
        people = union_sorted(p for row in cluster for p in from_json(row["related_people"]))
        mention_count = max(sum(row["mention_count"] or 0 for row in cluster), 1)

        cursor = conn.execute(
            """INSERT INTO observations (
                   agent_id, session_key, store, type, title, narrative, facts, tags,
                   source, related_files, related_people, hash, mention_count,
                   token_count, created_at, updated_at, expires_at, min_trust
               ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, NULL, ?)""",
            (
                agent_id,
                first["session_key"],
                first["store"],
                first["type"],
                title,
                narrative,
                to_json(facts),
                to_json(tags),
                MAINTENANCE_SOURCE,
                to_json(files),
                to_json(people),
                observation_hash(title, facts),
                mention_count,
                observation_token_count(title, narrative, facts),
                now,
                now,
                first["min_trust"],
            ),
        )
        summary_id = cursor.lastrowid
        record_history(conn, agent_id, summary_id, EVENT_ADD, now, new_title=title, new_facts=facts)

        for row in cluster:
            conn.execute(
                "UPDATE observations SET expires_at = ?, updated_at = ? "
                "WHERE id = ? AND agent_id = ?",
                (now, now, row["id"], agent_id),
            )
            record_history(
                conn,
                agent_id,
                row["id"],
                EVENT_COMPRESS,
                now,
                old_title=row["title"],
                old_facts=from_json(row["facts"]),
                new_title=title,
                new_facts=facts,
            )

        stats.compressed += len(cluster)
        stats.summaries += 1
        stats.summary_rows.append((summary_id, title, facts))

    return stats


def archive_observations(
    conn: sqlite3.Connection,
    agent_id: str,
    config: MaintenanceConfig,
    now: int,
    remove_vector: Optional[Callable[[int], None]] = None,
) -> int:
    """Move aged or long-expired rows to the archive. Returns the count."""
    cutoff = now - config.archive_after_days * DAY_MS
    rows = conn.execute(
        """SELECT id, expires_at FROM observations
           WHERE agent_id = ?
             AND (created_at <= ? OR (expires_at IS NOT NULL AND expires_at <= ?))
           ORDER BY COALESCE(expires_at, created_at) ASC
           LIMIT ?""",
        (agent_id, cutoff, cutoff, config.max_rows_per_run),
    ).fetchall()

    archived = 0
    for row in rows:
        expired = row["expires_at"] is not None and row["expires_at"] <= cutoff
        reason = ARCHIVE_REASON_EXPIRED if expired else ARCHIVE_REASON_AGE
        if archive_observation(conn, agent_id, row["id"], reason, now, remove_vector):
            archived += 1
    return archived


def cleanup_archive(
    conn: sqlite3.Connection, agent_id: str, config: MaintenanceConfig, now: int
) -> int:
    """Delete archive rows past retention. Returns the count."""
    cutoff = now - config.delete_archive_after_days * DAY_MS
    ids = [
        row[0]
        for row in conn.execute(
            """SELECT id FROM observation_archive
               WHERE agent_id = ? AND archived_at <= ?
               ORDER BY archived_at ASC
               LIMIT ?""",
            (agent_id, cutoff, config.max_rows_per_run),
        ).fetchall()
    ]
    deleted = 0
    for archive_id in ids:
        deleted += conn.execute(
            "DELETE FROM observation_archive WHERE id = ? AND agent_id = ?",
            (archive_id, agent_id),
        ).rowcount
    return deleted


def rebuild_vector_index(conn: sqlite3.Connection, dimension: int, now: int) -> int:
    """Repopulate observations_vec from observation_embeddings.

    Only live rows whose stored embedding matches ``dimension`` are indexed.
    sqlite3 errors propagate.
    """
    conn.execute("DELETE FROM observations_vec")
    rows = conn.execute(
        """SELECT e.observation_id, e.embedding
           FROM observation_embeddings e
           JOIN observations o ON o.id = e.observation_id
           WHERE e.dimensions = ?
             AND (o.expires_at IS NULL OR o.expires_at > ?)
           ORDER BY e.observation_id""",
        (dimension, now),
    ).fetchall()
    for row in rows:
        conn.execute(
            "INSERT INTO observations_vec(rowid, embedding) VALUES (?, ?)",
            (row[0], row[1]),
        )
    return len(rows)
