"""Query implementation for SQLiteMemory.

Contains candidate retrieval (FTS5, recency scan, sqlite-vec KNN, file
lookup), the hybrid scoring function, result assembly under a token
budget, and the timeline/get accessors. The coordinator that embeds the
query and holds the connection lock lives on SQLiteMemory.

All functions receive the open connection and the agent id explicitly so
they can be tested on their own.
"""

import logging
import math
import sqlite3
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from ..trust import trust_from_str
from ..types import MemoryQuery, Observation, ObservationIndex
from .codec import DAY_MS, dt_from_ms, escape_like_pattern, from_json, fts_query, ms_from_dt
from .embeddings import pack_embedding

logger = logging.getLogger(__name__)

DEFAULT_LIMIT = 10
OVERFETCH_FACTOR = 5

_NOT_EXPIRED = "(expires_at IS NULL OR expires_at > ?)"

INDEX_COLUMNS = """
    id, title, type, store, created_at, updated_at,
    token_count, mention_count, related_people
"""

OBSERVATION_COLUMNS = """
    id, agent_id, session_key, store, type, title, narrative, facts, tags,
    source, related_files, related_people, hash, mention_count, token_count,
    created_at, updated_at, expires_at, min_trust
"""


@dataclass
class Candidate:
    """A retrieved row before scoring. Timestamps are epoch milliseconds."""

    id: int
    title: str
    obs_type: str
    store: str
    created_at: int
    updated_at: int
    token_count: int
    mention_count: int
    related_people: List[str] = field(default_factory=list)
    # bm25 value; None when the row was not found by the lexical search
    lexical_raw: Optional[float] = None
    similarity: Optional[float] = None


# === Row conversion ===


def row_to_candidate(row: sqlite3.Row, lexical_raw: Optional[float] = None) -> Candidate:
    return Candidate(
        id=row["id"],
        title=row["title"],
        obs_type=row["type"],
        store=row["store"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        token_count=row["token_count"] or 0,
        mention_count=row["mention_count"] or 0,
        related_people=from_json(row["related_people"]),
        lexical_raw=lexical_raw,
    )


def row_to_observation(row: sqlite3.Row) -> Observation:
    return Observation(
        id=row["id"],
        agent_id=row["agent_id"],
        title=row["title"],
        narrative=row["narrative"] or "",
        facts=from_json(row["facts"]),
        store=row["store"],
        obs_type=row["type"],
        tags=from_json(row["tags"]),
        related_files=from_json(row["related_files"]),
        related_people=from_json(row["related_people"]),
        source=row["source"] or "",
        session_key=row["session_key"],
        hash=row["hash"],
        mention_count=row["mention_count"] or 0,
        token_count=row["token_count"] or 0,
        created_at=dt_from_ms(row["created_at"]),
        updated_at=dt_from_ms(row["updated_at"]),
        expires_at=dt_from_ms(row["expires_at"]),
        min_trust=trust_from_str(row["min_trust"]),
    )


def to_index(candidate: Candidate, score: float) -> ObservationIndex:
    return ObservationIndex(
        id=candidate.id,
        title=candidate.title,
        obs_type=candidate.obs_type,
        store=candidate.store,
        created_at=dt_from_ms(candidate.created_at),
        token_count=candidate.token_count,
        mention_count=candidate.mention_count,
        score=score,
        related_people=list(candidate.related_people),
    )


# === Filters ===


def _placeholders(count: int) -> str:
    return ",".join("?" for _ in range(count))


def build_filters(
    query: MemoryQuery, stores: Sequence[str], prefix: str = ""
) -> Tuple[str, list]:
    """SQL fragment (starting with `` AND``) for store/type/time filters."""
    sql = ""
    params: list = []
    if stores:
        sql += f" AND {prefix}store IN ({_placeholders(len(stores))})"
        params.extend(stores)
    if query.types:
        sql += f" AND {prefix}type IN ({_placeholders(len(query.types))})"
        params.extend(query.types)
    if query.after is not None:
        sql += f" AND {prefix}created_at >= ?"
        params.append(ms_from_dt(query.after))
    if query.before is not None:
        sql += f" AND {prefix}created_at <= ?"
        params.append(ms_from_dt(query.before))
    return sql, params


# === Candidate retrieval ===


def search_lexical(
    conn: sqlite3.Connection,
    agent_id: str,
    query: MemoryQuery,
    stores: Sequence[str],
    now: int,
    fetch_limit: int,
) -> List[Candidate]:
    """FTS5 search ordered by bm25 (best first)."""
    match = fts_query(query.text or "")
    if not match:
        return []

    filters, filter_params = build_filters(query, stores, prefix="o.")
    rows = conn.execute(
        f"""SELECT o.id, o.title, o.type, o.store, o.created_at, o.updated_at,
                   o.token_count, o.mention_count, o.related_people,
                   bm25(observations_fts) AS fts_score
            FROM observations_fts
            JOIN observations o ON o.id = observations_fts.rowid
            WHERE o.agent_id = ?
              AND (o.expires_at IS NULL OR o.expires_at > ?)
              AND observations_fts MATCH ?{filters}
            ORDER BY fts_score
            LIMIT ?""",
        [agent_id, now, match] + filter_params + [fetch_limit],
    ).fetchall()
    return [row_to_candidate(row, lexical_raw=row["fts_score"] or 0.0) for row in rows]


def search_recent(
    conn: sqlite3.Connection,
    agent_id: str,
    query: MemoryQuery,
    stores: Sequence[str],
    now: int,
    fetch_limit: int,
) -> List[Candidate]:
    """Plain recency scan for queries without text."""
    filters, filter_params = build_filters(query, stores)
    rows = conn.execute(
        f"""SELECT {INDEX_COLUMNS}
            FROM observations
            WHERE agent_id = ? AND {_NOT_EXPIRED}{filters}
            ORDER BY updated_at DESC
            LIMIT ?""",
        [agent_id, now] + filter_params + [fetch_limit],
    ).fetchall()
    return [row_to_candidate(row) for row in rows]


def search_vector(
    conn: sqlite3.Connection,
    agent_id: str,
    query: MemoryQuery,
    stores: Sequence[str],
    embedding: List[float],
    now: int,
    fetch_limit: int,
) -> List[Candidate]:
    """Nearest neighbours from observations_vec, filtered like the other paths.

    Similarity is ``1 / (1 + distance)``. sqlite3 errors propagate so the
    caller can switch vector retrieval off.
    """
    knn = conn.execute(
        """SELECT rowid, distance FROM observations_vec
           WHERE embedding MATCH ? AND k = ?
           ORDER BY distance""",
        (pack_embedding(embedding), fetch_limit),
    ).fetchall()
    if not knn:
        return []

    similarity: Dict[int, float] = {
        row[0]: 1.0 / (1.0 + max(row[1] or 0.0, 0.0)) for row in knn
    }
    ids = list(similarity)
    filters, filter_params = build_filters(query, stores)
    rows = conn.execute(
        f"""SELECT {INDEX_COLUMNS}
            FROM observations
            WHERE id IN ({_placeholders(len(ids))})
              AND agent_id = ? AND {_NOT_EXPIRED}{filters}""",
        ids + [agent_id, now] + filter_params,
    ).fetchall()

    by_id = {row["id"]: row_to_candidate(row) for row in rows}
    out = []
    for obs_id in ids:
        candidate = by_id.get(obs_id)
        if candidate is not None:
            candidate.similarity = similarity[obs_id]
            out.append(candidate)
    return out


def merge_vector_candidates(
    lexical: List[Candidate], vector: List[Candidate]
) -> List[Candidate]:
    """Merge KNN rows into the lexical set, deduplicated by id.

    Rows found by both keep their lexical position and gain a similarity;
    vector-only rows are appended in distance order.
    """
    by_id = {c.id: c for c in lexical}
    merged = list(lexical)
    for candidate in vector:
        existing = by_id.get(candidate.id)
        if existing is not None:
            existing.similarity = candidate.similarity
        else:
            by_id[candidate.id] = candidate
            merged.append(candidate)
    return merged


def search_by_file(
    conn: sqlite3.Connection,
    agent_id: str,
    path: str,
    prefix_match: bool,
    stores: Sequence[str],
    now: int,
    limit: int,
) -> List[Candidate]:
    """Observations whose related_files contain ``path`` (or a path under it)."""
    if prefix_match:
        file_clause = "f.value LIKE ? ESCAPE '\\'"
        file_param = escape_like_pattern(path) + "%"
    else:
        file_clause = "f.value = ?"
        file_param = path

    store_clause = ""
    if stores:
        store_clause = f" AND o.store IN ({_placeholders(len(stores))})"

    rows = conn.execute(
        f"""SELECT DISTINCT o.id, o.title, o.type, o.store, o.created_at, o.updated_at,
                   o.token_count, o.mention_count, o.related_people
            FROM observations o, json_each(o.related_files) AS f
            WHERE o.agent_id = ?
              AND (o.expires_at IS NULL OR o.expires_at > ?)
              AND {file_clause}{store_clause}
            ORDER BY o.updated_at DESC
            LIMIT ?""",
        [agent_id, now, file_param] + list(stores) + [max(limit, 1)],
    ).fetchall()
    return [row_to_candidate(row) for row in rows]


# === Scoring ===


def score_row(candidate: Candidate, now: int, has_text_query: bool) -> float:
    """Composite relevance score.

    With a text query: 0.45 lexical + 0.25 vector + 0.15 recency + 0.15
    mentions. Without one: 0.7 recency + 0.3 mentions.
    """
    recency_days = max(now - candidate.updated_at, 0) / DAY_MS
    recency_score = 1.0 / (1.0 + recency_days)
    mention_score = math.log(1 + candidate.mention_count) / math.log(11)

    if has_text_query:
        if candidate.lexical_raw is None:
            lexical_score = 0.0
        else:
            lexical_score = 1.0 / (1.0 + abs(candidate.lexical_raw))
        vector_score = min(max(candidate.similarity or 0.0, 0.0), 1.0)
        return (
            0.45 * lexical_score
            + 0.25 * vector_score
            + 0.15 * recency_score
            + 0.15 * mention_score
        )
    return 0.7 * recency_score + 0.3 * mention_score


def filter_people(candidates: List[Candidate], people: Iterable[str]) -> List[Candidate]:
    """Keep candidates that mention at least one of ``people`` (case-insensitive)."""
    wanted = {p.lower() for p in people}
    if not wanted:
        return candidates
    return [c for c in candidates if any(p.lower() in wanted for p in c.related_people)]


def rank_candidates(
    candidates: List[Candidate],
    now: int,
    has_text_query: bool,
    limit: int,
    max_tokens: Optional[int] = None,
) -> List[ObservationIndex]:
    """Score, sort and cut to ``limit`` rows and the ``max_tokens`` budget.

    The sort is stable, so equal scores keep retrieval order. The budget is
    never applied to the first row.
    """
    scored = [(score_row(c, now, has_text_query), c) for c in candidates]
    scored.sort(key=lambda pair: pair[0], reverse=True)

    out: List[ObservationIndex] = []
    total_tokens = 0
    for score, candidate in scored:
        if len(out) >= limit:
            break
        if max_tokens is not None and out and total_tokens + candidate.token_count > max_tokens:
            break
        total_tokens += candidate.token_count
        out.append(to_index(candidate, score))
    return out


# === Timeline / Get ===


def timeline(
    conn: sqlite3.Connection,
    agent_id: str,
    anchor_id: int,
    before: int,
    after: int,
    stores: Optional[Sequence[str]],
    now: int,
) -> List[ObservationIndex]:
    """Rows around ``anchor_id`` in ascending created_at order.

    Neighbours are strictly older or strictly newer than the anchor; rows
    sharing its created_at are left out.

    ``stores=None`` means no store restriction; an empty list means the
    caller may see nothing.
    """
    if stores is not None and not stores:
        return []

    store_clause = ""
    store_params: list = []
    if stores is not None:
        store_clause = f" AND store IN ({_placeholders(len(stores))})"
        store_params = list(stores)

    anchor = conn.execute(
        f"""SELECT {INDEX_COLUMNS} FROM observations
            WHERE id = ? AND agent_id = ? AND {_NOT_EXPIRED}{store_clause}""",
        [anchor_id, agent_id, now] + store_params,
    ).fetchone()
    if anchor is None:
        return []

    created = anchor["created_at"]
    older = conn.execute(
        f"""SELECT {INDEX_COLUMNS} FROM observations
            WHERE agent_id = ?
              AND created_at < ?
              AND {_NOT_EXPIRED}{store_clause}
            ORDER BY created_at DESC
            LIMIT ?""",
        [agent_id, created, now] + store_params + [max(before, 0)],
    ).fetchall()
    newer = conn.execute(
        f"""SELECT {INDEX_COLUMNS} FROM observations
            WHERE agent_id = ?
              AND created_at > ?
              AND {_NOT_EXPIRED}{store_clause}
            ORDER BY created_at ASC
            LIMIT ?""",
        [agent_id, created, now] + store_params + [max(after, 0)],
    ).fetchall()

    rows = list(reversed(older)) + [anchor] + list(newer)
    return [to_index(row_to_candidate(row), 0.0) for row in rows]


def load_observations(
    conn: sqlite3.Connection,
    agent_id: str,
    ids: Sequence[int],
    stores: Optional[Sequence[str]],
    now: int,
) -> Dict[int, Observation]:
    """Live, visible observations for ``ids`` keyed by id."""
    if not ids or (stores is not None and not stores):
        return {}

    unique_ids = list(dict.fromkeys(ids))
    sql = f"""SELECT {OBSERVATION_COLUMNS} FROM observations
              WHERE id IN ({_placeholders(len(unique_ids))})
                AND agent_id = ? AND {_NOT_EXPIRED}"""
    params: list = unique_ids + [agent_id, now]
    if stores is not None:
        sql += f" AND store IN ({_placeholders(len(stores))})"
        params.extend(stores)

    return {row["id"]: row_to_observation(row) for row in conn.execute(sql, params).fetchall()}


def get(
    conn: sqlite3.Connection,
    agent_id: str,
    ids: Sequence[int],
    stores: Optional[Sequence[str]],
    now: int,
) -> List[Observation]:
    """Full bodies in input order; unresolved ids are silently dropped."""
    by_id = load_observations(conn, agent_id, ids, stores, now)
    out = []
    for obs_id in ids:
        obs = by_id.pop(obs_id, None)
        if obs is not None:
            out.append(obs)
    return out
