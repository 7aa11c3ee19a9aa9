"""SQLite memory engine for coop_memory.

Local storage with:
- SQLite for observations, revision history, archive, people and session summaries
- FTS5 for lexical retrieval
- sqlite-vec for vector search (optional, needs an embedding provider)

One persistent connection per engine, guarded by a lock. Every public call
takes the lock for its own statements and releases it before returning;
embedding and reconciliation calls happen outside it.
"""

import contextlib
import logging
import sqlite3
import threading
import time
from pathlib import Path
from typing import List, Optional, Sequence, Tuple, Union

from ..config import MemorySettings
from ..logging_config import (
    log_maintenance,
    log_reconcile,
    log_search,
    log_write,
    setup_coop_logging,
)
from ..protocols import (
    DimensionMismatchError,
    EmbeddingProvider,
    Reconciler,
    StorageError,
)
from ..reconcile import build_reconcile_request, decision_label, validate_decision
from ..trust import TrustLevel, accessible_stores, gate_stores
from ..types import (
    AddDecision,
    Added,
    ArchivedObservation,
    DeleteDecision,
    Deleted,
    ExactDup,
    MaintenanceConfig,
    MaintenanceReport,
    MemoryQuery,
    NewObservation,
    NoneDecision,
    Observation,
    ObservationHistoryEntry,
    ObservationIndex,
    Person,
    ReconcileDecision,
    SessionSummary,
    Skipped,
    UpdateDecision,
    Updated,
    WriteOutcome,
    embedding_text,
)
from . import maintenance, search_impl, write_ops
from .codec import normalize_file_path, now_ms, observation_hash
from .embeddings import HashEmbedder, OpenAIEmbedder, pack_embedding
from .schema import init_db, init_vector_schema

logger = logging.getLogger(__name__)

DEFAULT_RECONCILE_CANDIDATES = 5
ARCHIVE_REASON_SUPERSEDED = "superseded"


class SQLiteMemory:
    """Structured, trust-gated observation store for one agent.

    Args:
        db_path: Database file, or ``":memory:"``.
        agent_id: Tenant partition; nothing crosses agents.
        embedder: Optional embedding provider. Without one (or without
            sqlite-vec) retrieval is lexical only.
        reconciler: Optional reasoner consulted when a write has
            near-duplicates.
        reconcile_candidates: How many near-duplicates the reasoner sees.
        log_dir: Directory for the memory-events log. Without one no
            event lines are written.
    """

    def __init__(
        self,
        db_path: Union[str, Path],
        agent_id: str = "coop",
        embedder: Optional[EmbeddingProvider] = None,
        reconciler: Optional[Reconciler] = None,
        reconcile_candidates: int = DEFAULT_RECONCILE_CANDIDATES,
        log_dir: Optional[Union[str, Path]] = None,
    ):
        if not agent_id or not agent_id.strip():
            raise ValueError("Agent ID cannot be empty")

        self.agent_id = agent_id
        self._embedder = embedder
        self._reconciler = reconciler
        self.reconcile_candidates = max(reconcile_candidates, 1)
        self.log_dir = Path(log_dir).expanduser() if log_dir is not None else None
        self._lock = threading.RLock()
        self._closed = False

        if str(db_path) == ":memory:":
            self.db_path: Union[str, Path] = ":memory:"
        else:
            self.db_path = Path(db_path).expanduser()
            self.db_path.parent.mkdir(parents=True, exist_ok=True)

        try:
            self._conn = sqlite3.connect(
                str(self.db_path), check_same_thread=False, isolation_level=None
            )
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA busy_timeout=5000")
            init_db(self._conn)
        except sqlite3.Error as e:
            raise StorageError(f"Could not open memory database {self.db_path}: {e}") from e

        self._vector_search_enabled = False
        self._vector_search_enabled = self._init_vector_index()
        if embedder is not None and not self._vector_search_enabled:
            logger.warning("Vector index unavailable, memory search will use FTS only")
        logger.info(
            f"Opened memory database {self.db_path} for agent={agent_id} "
            f"(vector={self._vector_search_enabled}, reconciler={reconciler is not None})"
        )

    def __repr__(self) -> str:
        return (
            f"SQLiteMemory(agent_id={self.agent_id!r}, db_path={str(self.db_path)!r}, "
            f"has_embedder={self._embedder is not None}, "
            f"has_reconciler={self._reconciler is not None}, "
            f"vector_search_enabled={self._vector_search_enabled})"
        )

    def __enter__(self) -> "SQLiteMemory":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def close(self) -> None:
        with self._lock:
            if not self._closed:
                self._conn.close()
                self._closed = True

    # === Connection handling ===

    def _check_open(self) -> None:
        if self._closed:
            raise StorageError("Memory database is closed")

    @contextlib.contextmanager
    def _connect(self):
        """Hold the connection lock for a read."""
        with self._lock:
            self._check_open()
            try:
                yield self._conn
            except sqlite3.Error as e:
                raise StorageError(f"Memory query failed: {e}") from e

    @contextlib.contextmanager
    def _transaction(self):
        """Hold the lock inside BEGIN IMMEDIATE; commit on success, roll back on error."""
        with self._lock:
            self._check_open()
            try:
                self._conn.execute("BEGIN IMMEDIATE")
            except sqlite3.Error as e:
                raise StorageError(f"Could not begin transaction: {e}") from e
            try:
                yield self._conn
                self._conn.execute("COMMIT")
            except Exception as e:
                logger.debug(f"Transaction failed, rolling back: {e}")
                if self._conn.in_transaction:
                    self._conn.execute("ROLLBACK")
                if isinstance(e, sqlite3.Error):
                    raise StorageError(f"Memory write failed: {e}") from e
                raise

    # === Vector index ===

    @property
    def vector_search_enabled(self) -> bool:
        return self._vector_search_enabled

    @property
    def embedder(self) -> Optional[EmbeddingProvider]:
        return self._embedder

    def _load_vec(self) -> bool:
        """Load sqlite-vec into the connection."""
        try:
            import sqlite_vec

            self._conn.enable_load_extension(True)
            sqlite_vec.load(self._conn)
            self._conn.enable_load_extension(False)
            return True
        except ImportError:
            logger.warning("sqlite-vec package not installed")
            return False
        except (AttributeError, OSError, sqlite3.Error) as e:
            logger.warning(f"Could not load sqlite-vec: {e}")
            return False

    def _init_vector_index(self) -> bool:
        if self._embedder is None:
            return False
        if not self._load_vec():
            return False

        dimension = self._embedder.dimension
        with self._lock:
            if not init_vector_schema(self._conn, dimension):
                return False
            try:
                indexed = self._conn.execute("SELECT COUNT(*) FROM observations_vec").fetchone()[0]
                stored = self._conn.execute(
                    "SELECT COUNT(*) FROM observation_embeddings WHERE dimensions = ?",
                    (dimension,),
                ).fetchone()[0]
            except sqlite3.Error as e:
                logger.warning(f"Vector index check failed: {e}")
                return False

        self._vector_search_enabled = True
        if stored and not indexed:
            logger.info(f"Populating vector index from {stored} stored embeddings")
            self.rebuild_index()
        return self._vector_search_enabled

    def _disable_vector_search(self, error: Exception, context: str) -> None:
        if self._vector_search_enabled:
            self._vector_search_enabled = False
            logger.warning(
                f"sqlite-vec path disabled ({context}), using FTS-only retrieval: {error}"
            )

    def _remove_vector_row(self, conn: sqlite3.Connection, observation_id: int) -> None:
        if not self._vector_search_enabled:
            return
        try:
            conn.execute("DELETE FROM observations_vec WHERE rowid = ?", (observation_id,))
        except sqlite3.Error as e:
            self._disable_vector_search(e, "embedding_delete")

    def _drop_embedding(self, conn: sqlite3.Connection, observation_id: int) -> None:
        conn.execute(
            "DELETE FROM observation_embeddings WHERE observation_id = ?", (observation_id,)
        )
        self._remove_vector_row(conn, observation_id)

    def _embed(self, text: str, reason: str) -> Optional[List[float]]:
        if self._embedder is None or not text:
            return None
        logger.debug(f"Embedding request ({reason}), {len(text)} chars")
        try:
            embedding = list(self._embedder.embed(text))
        except Exception as e:  # provider failures never fail a memory call
            logger.warning(f"Embedding failed ({reason}): {e}")
            return None
        logger.debug(f"Embedding complete ({reason}), {len(embedding)} dimensions")
        return embedding

    def _persist_embedding(self, observation_id: int, embedding: List[float]) -> bool:
        """Store an embedding and mirror it into the vector index.

        Raises:
            DimensionMismatchError: embedding length differs from the provider's dimension
        """
        expected = self._embedder.dimension
        if len(embedding) != expected:
            raise DimensionMismatchError(expected, len(embedding))

        blob = pack_embedding(embedding)
        now = now_ms()
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT 1 FROM observations WHERE id = ?", (observation_id,)
            ).fetchone()
            if row is None:
                return False
            conn.execute(
                """INSERT INTO observation_embeddings
                       (observation_id, embedding, dimensions, updated_at)
                   VALUES (?, ?, ?, ?)
                   ON CONFLICT(observation_id) DO UPDATE SET
                       embedding = excluded.embedding,
                       dimensions = excluded.dimensions,
                       updated_at = excluded.updated_at""",
                (observation_id, blob, len(embedding), now),
            )
            if self._vector_search_enabled:
                # vec0 has no upsert
                try:
                    conn.execute("DELETE FROM observations_vec WHERE rowid = ?", (observation_id,))
                    conn.execute(
                        "INSERT INTO observations_vec(rowid, embedding) VALUES (?, ?)",
                        (observation_id, blob),
                    )
                except sqlite3.Error as e:
                    self._disable_vector_search(e, "embedding_upsert")
        return True

    def _index_observation(
        self, observation_id: int, title: str, facts: List[str], reason: str
    ) -> None:
        """Embed and store an observation's vector. Failures only log."""
        embedding = self._embed(embedding_text(title, facts), reason)
        if embedding is None:
            return
        try:
            self._persist_embedding(observation_id, embedding)
        except (DimensionMismatchError, StorageError) as e:
            logger.warning(f"Embedding for observation {observation_id} not stored: {e}")

    def rebuild_index(self) -> int:
        """Repopulate observations_vec from stored embeddings. Returns rows indexed."""
        if self._embedder is None or not self._vector_search_enabled:
            logger.info("Vector index disabled, nothing to rebuild")
            return 0
        try:
            with self._transaction() as conn:
                count = maintenance.rebuild_vector_index(conn, self._embedder.dimension, now_ms())
        except StorageError as e:
            self._disable_vector_search(e, "rebuild_index")
            return 0
        logger.info(f"Rebuilt vector index with {count} rows")
        return count

    # === Search ===

    def search(self, query: MemoryQuery) -> List[ObservationIndex]:
        """Hybrid search, gated to the stores ``query.trust`` may see."""
        stores = gate_stores(query.stores, query.trust)
        if not stores:
            logger.debug(f"No visible stores for trust={TrustLevel(query.trust).value}")
            return []

        limit = query.limit if query.limit > 0 else search_impl.DEFAULT_LIMIT
        fetch_limit = max(limit, 1) * search_impl.OVERFETCH_FACTOR
        has_text = query.has_text

        query_embedding = query.embedding
        if query_embedding is None and has_text and self._vector_search_enabled:
            query_embedding = self._embed(query.text.strip(), "search_query")
        if (
            query_embedding is not None
            and self._embedder is not None
            and len(query_embedding) != self._embedder.dimension
        ):
            logger.warning(
                f"Query embedding has {len(query_embedding)} dimensions, "
                f"expected {self._embedder.dimension}; skipping vector retrieval"
            )
            query_embedding = None

        now = now_ms()
        with self._connect() as conn:
            if has_text:
                candidates = search_impl.search_lexical(
                    conn, self.agent_id, query, stores, now, fetch_limit
                )
            else:
                candidates = search_impl.search_recent(
                    conn, self.agent_id, query, stores, now, fetch_limit
                )

            used_vector = False
            if query_embedding is not None and self._vector_search_enabled:
                try:
                    vector = search_impl.search_vector(
                        conn, self.agent_id, query, stores, query_embedding, now, fetch_limit
                    )
                    used_vector = True
                except sqlite3.Error as e:
                    self._disable_vector_search(e, "vector_query")
                    vector = []
                candidates = search_impl.merge_vector_candidates(candidates, vector)

        candidates = search_impl.filter_people(candidates, query.people)
        results = search_impl.rank_candidates(
            candidates, now, has_text, limit, query.max_tokens
        )
        logger.debug(f"Memory search complete: {len(results)} results")
        log_search(self.agent_id, query.text, len(results), used_vector, log_dir=self.log_dir)
        return results

    def search_by_file(
        self,
        path: str,
        prefix_match: bool = False,
        limit: int = 10,
        trust: TrustLevel = TrustLevel.FULL,
    ) -> List[ObservationIndex]:
        """Observations that reference ``path`` (or anything under it)."""
        normalized = normalize_file_path(path)
        stores = accessible_stores(trust)
        if not normalized or not stores:
            return []
        now = now_ms()
        with self._connect() as conn:
            candidates = search_impl.search_by_file(
                conn, self.agent_id, normalized, prefix_match, stores, now, limit
            )
        return [
            search_impl.to_index(c, search_impl.score_row(c, now, False)) for c in candidates
        ]

    def timeline(
        self,
        anchor_id: int,
        before: int = 3,
        after: int = 3,
        trust: Optional[TrustLevel] = None,
    ) -> List[ObservationIndex]:
        stores = accessible_stores(trust) if trust is not None else None
        with self._connect() as conn:
            return search_impl.timeline(
                conn, self.agent_id, anchor_id, before, after, stores, now_ms()
            )

    def get(self, ids: Sequence[int], trust: Optional[TrustLevel] = None) -> List[Observation]:
        stores = accessible_stores(trust) if trust is not None else None
        with self._connect() as conn:
            return search_impl.get(conn, self.agent_id, list(ids), stores, now_ms())

    # === Write path ===

    def write(self, obs: NewObservation) -> WriteOutcome:
        """Persist an observation, suppressing exact duplicates.

        With a reconciler configured, near-duplicates are offered to it and
        its decision is applied. Reconciler errors propagate.
        """
        content_hash = observation_hash(obs.title, obs.facts)
        if self._reconciler is None:
            outcome = self._insert_new(obs, content_hash)
        else:
            outcome = self._write_reconciled(obs, content_hash)

        outcome_id = getattr(outcome, "id", None)
        logger.debug(f"Memory write {type(outcome).__name__} id={outcome_id} store={obs.store}")
        log_write(
            self.agent_id, type(outcome).__name__, outcome_id, obs.title, log_dir=self.log_dir
        )
        return outcome

    def _insert_new(self, obs: NewObservation, content_hash: str) -> WriteOutcome:
        """Dup check and insert in one transaction, then embed."""
        now = now_ms()
        with self._transaction() as conn:
            dup = write_ops.find_exact_dup(conn, self.agent_id, content_hash, now)
            if dup is not None:
                write_ops.bump_mentions(conn, self.agent_id, dup["id"], write_ops.EVENT_DUP, now)
                return ExactDup()
            obs_id = write_ops.insert_observation(conn, self.agent_id, obs, now, content_hash)
        self._index_observation(obs_id, obs.title, obs.facts, "write")
        return Added(obs_id)

    def _write_reconciled(self, obs: NewObservation, content_hash: str) -> WriteOutcome:
        now = now_ms()
        with self._transaction() as conn:
            dup = write_ops.find_exact_dup(conn, self.agent_id, content_hash, now)
            if dup is not None:
                write_ops.bump_mentions(conn, self.agent_id, dup["id"], write_ops.EVENT_DUP, now)
                return ExactDup()

        candidates = self._find_candidates(obs)
        if not candidates:
            return self._insert_new(obs, content_hash)

        request = build_reconcile_request(obs, candidates)
        decision = self._reconciler.reconcile(request)
        log_reconcile(
            self.agent_id, decision_label(decision), len(candidates), log_dir=self.log_dir
        )
        return self.apply_decision(obs, [c for c, _ in candidates], decision)

    def _find_candidates(self, obs: NewObservation) -> List[Tuple[Observation, float]]:
        """Top near-duplicates in the incoming store, best first."""
        text = " ".join([obs.title] + list(obs.facts)).strip()
        if not text:
            return []
        hits = self.search(
            MemoryQuery(text=text, stores=[obs.store], limit=self.reconcile_candidates)
        )
        if not hits:
            return []
        scores = {hit.id: hit.score for hit in hits}
        return [(o, scores[o.id]) for o in self.get([hit.id for hit in hits])]

    def apply_decision(
        self,
        incoming: NewObservation,
        candidates: Sequence[Observation],
        decision: ReconcileDecision,
    ) -> WriteOutcome:
        """Apply a reconciliation decision about ``incoming``.

        ``candidates`` must be in the order the reasoner saw them.

        Raises:
            ValidationError: the decision does not fit ``candidates``
        """
        validate_decision(decision, len(candidates))
        content_hash = observation_hash(incoming.title, incoming.facts)

        if isinstance(decision, AddDecision):
            logger.info("Reconciliation: ADD")
            return self._insert_new(incoming, content_hash)

        target = candidates[decision.candidate_index]
        now = now_ms()

        if isinstance(decision, UpdateDecision):
            with self._transaction() as conn:
                current = search_impl.load_observations(
                    conn, self.agent_id, [target.id], None, now
                ).get(target.id)
                if current is not None:
                    write_ops.update_observation(
                        conn, self.agent_id, current, decision.merged, now
                    )
                    # the old vector describes pre-merge content
                    self._drop_embedding(conn, target.id)
            if current is None:
                logger.warning(f"Update target {target.id} is gone, inserting incoming instead")
                return self._insert_new(incoming, content_hash)
            logger.info(f"Reconciliation: UPDATE observation {target.id}")
            self._index_observation(
                target.id, decision.merged.title, decision.merged.facts, "reconcile_update"
            )
            return Updated(target.id)

        if isinstance(decision, DeleteDecision):
            new_id = None
            with self._transaction() as conn:
                archived = write_ops.archive_observation(
                    conn,
                    self.agent_id,
                    target.id,
                    ARCHIVE_REASON_SUPERSEDED,
                    now,
                    remove_vector=lambda obs_id: self._remove_vector_row(conn, obs_id),
                )
                if archived:
                    write_ops.record_history(
                        conn,
                        self.agent_id,
                        target.id,
                        write_ops.EVENT_DELETE,
                        now,
                        old_title=target.title,
                        old_facts=target.facts,
                        new_title=incoming.title,
                        new_facts=incoming.facts,
                    )
                dup = write_ops.find_exact_dup(conn, self.agent_id, content_hash, now)
                if dup is None:
                    new_id = write_ops.insert_observation(
                        conn, self.agent_id, incoming, now, content_hash
                    )
                else:
                    write_ops.bump_mentions(
                        conn, self.agent_id, dup["id"], write_ops.EVENT_DUP, now
                    )
            logger.info(f"Reconciliation: DELETE observation {target.id}, replacement={new_id}")
            if new_id is not None:
                self._index_observation(new_id, incoming.title, incoming.facts, "reconcile_delete")
            return Deleted(target.id)

        if isinstance(decision, NoneDecision):
            with self._transaction() as conn:
                bumped = write_ops.bump_mentions(
                    conn, self.agent_id, target.id, write_ops.EVENT_NONE, now
                )
            if not bumped:
                logger.warning(f"NONE target {target.id} is gone, nothing to bump")
            logger.info(f"Reconciliation: NONE for observation {target.id}")
            return Skipped()

        raise TypeError(f"Unknown reconciliation decision: {decision!r}")

    # === People, sessions, history ===

    def people(self, query: str = "") -> List[Person]:
        with self._connect() as conn:
            return write_ops.people(conn, self.agent_id, query)

    def add_person_alias(self, name: str, alias: str) -> bool:
        with self._transaction() as conn:
            return write_ops.add_person_alias(conn, self.agent_id, name, alias)

    def summarize_session(self, session_key: str) -> SessionSummary:
        with self._transaction() as conn:
            return write_ops.summarize_session(conn, self.agent_id, session_key, now_ms())

    def recent_session_summaries(self, limit: int = 5) -> List[SessionSummary]:
        with self._connect() as conn:
            return write_ops.recent_session_summaries(conn, self.agent_id, limit)

    def history(self, observation_id: int) -> List[ObservationHistoryEntry]:
        with self._connect() as conn:
            return write_ops.history(conn, self.agent_id, observation_id)

    def archived(self, limit: int = 50) -> List[ArchivedObservation]:
        with self._connect() as conn:
            return write_ops.archived(conn, self.agent_id, limit)

    # === Maintenance ===

    def run_maintenance(self, config: Optional[MaintenanceConfig] = None) -> MaintenanceReport:
        """Compress, archive and clean up, each stage in its own transaction."""
        config = config or MaintenanceConfig()
        started = time.monotonic()
        logger.info(
            f"Memory maintenance started (archive_after_days={config.archive_after_days}, "
            f"delete_archive_after_days={config.delete_archive_after_days}, "
            f"compress_after_days={config.compress_after_days}, "
            f"compression_min_cluster_size={config.compression_min_cluster_size}, "
            f"max_rows_per_run={config.max_rows_per_run})"
        )
        now = now_ms()

        with self._transaction() as conn:
            compression = maintenance.compress_stale_observations(
                conn, self.agent_id, config, now
            )
        logger.info(
            f"Compression stage: scanned={compression.scanned}, "
            f"compressed={compression.compressed}, summaries={compression.summaries}"
        )
        for summary_id, title, facts in compression.summary_rows:
            self._index_observation(summary_id, title, facts, "maintenance_summary")

        with self._transaction() as conn:
            archived_rows = maintenance.archive_observations(
                conn,
                self.agent_id,
                config,
                now,
                remove_vector=lambda obs_id: self._remove_vector_row(conn, obs_id),
            )
        logger.info(f"Archive stage: archived={archived_rows}")

        with self._transaction() as conn:
            deleted = maintenance.cleanup_archive(conn, self.agent_id, config, now)
        logger.info(f"Archive cleanup stage: deleted={deleted}")

        report = MaintenanceReport(
            compressed_rows=compression.compressed,
            summary_rows=compression.summaries,
            archived_rows=archived_rows,
            archive_deleted_rows=deleted,
        )
        logger.info(
            f"Memory maintenance complete in {(time.monotonic() - started) * 1000:.0f}ms: {report}"
        )
        log_maintenance(
            self.agent_id,
            report.compressed_rows,
            report.summary_rows,
            report.archived_rows,
            report.archive_deleted_rows,
            log_dir=self.log_dir,
        )
        return report


def build_embedder(settings: MemorySettings) -> Optional[EmbeddingProvider]:
    """Embedding provider named by ``settings.embedding_provider``."""
    provider = settings.embedding_provider.strip().lower()
    if provider in ("", "none"):
        return None
    if provider == "hash":
        if settings.embedding_dimensions:
            return HashEmbedder(dim=settings.embedding_dimensions)
        return HashEmbedder()
    if provider == "openai":
        return OpenAIEmbedder(model=settings.embedding_model)
    raise ValueError(f"Unknown embedding provider: {settings.embedding_provider}")


def open_memory(
    settings: Optional[MemorySettings] = None,
    reconciler: Optional[Reconciler] = None,
) -> SQLiteMemory:
    """Build an engine from settings and configure the coop_memory logger."""
    if settings is None:
        from ..config import get_settings

        settings = get_settings()
    setup_coop_logging(
        agent_id=settings.agent_id, level=settings.log_level, log_dir=settings.log_dir
    )
    return SQLiteMemory(
        settings.db_path,
        agent_id=settings.agent_id,
        embedder=build_embedder(settings),
        reconciler=reconciler,
        reconcile_candidates=settings.reconcile_candidates,
        log_dir=settings.log_dir,
    )
