"""
Shared memory types for coop_memory.

All observation dataclasses live here. These are the shared vocabulary
between the storage engine, the reconciliation protocol and the gateway
that produces observations. Write outcomes and reconciliation decisions are
closed sum types: each variant is its own frozen dataclass and consumers
dispatch with ``isinstance``.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from .trust import STORE_SHARED, TrustLevel, min_trust_for_store

# === Shared Utility Functions ===


def utc_now() -> datetime:
    """Current time in UTC."""
    return datetime.now(timezone.utc)


def embedding_text(title: str, facts: List[str]) -> str:
    """Text sent to the embedding provider for an observation.

    Title first, then the facts joined with ``"; "``.
    """
    parts = [(title or "").strip()] + [f.strip() for f in facts if f]
    return "; ".join(p for p in parts if p)


# === Observations ===


@dataclass
class NewObservation:
    """A write request. The engine assigns id, hash, timestamps and mentions."""

    title: str
    narrative: str = ""
    facts: List[str] = field(default_factory=list)
    store: str = STORE_SHARED
    obs_type: str = "discovery"
    tags: List[str] = field(default_factory=list)
    related_files: List[str] = field(default_factory=list)
    related_people: List[str] = field(default_factory=list)
    source: str = "agent"
    session_key: Optional[str] = None
    token_count: Optional[int] = None
    expires_at: Optional[datetime] = None
    min_trust: Optional[TrustLevel] = None

    def __post_init__(self):
        # min_trust is always the value implied by the store tier.
        self.min_trust = min_trust_for_store(self.store)


@dataclass
class Observation:
    """A persisted observation (full body)."""

    id: int
    agent_id: str
    title: str
    narrative: str
    facts: List[str]
    store: str
    obs_type: str
    tags: List[str] = field(default_factory=list)
    related_files: List[str] = field(default_factory=list)
    related_people: List[str] = field(default_factory=list)
    source: str = ""
    session_key: Optional[str] = None
    hash: str = ""
    mention_count: int = 1
    token_count: int = 0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    min_trust: TrustLevel = TrustLevel.INNER


@dataclass
class ObservationIndex:
    """Compact search-result projection. Never persisted."""

    id: int
    title: str
    obs_type: str
    store: str
    created_at: datetime
    token_count: int
    mention_count: int
    score: float
    related_people: List[str] = field(default_factory=list)


@dataclass
class MemoryQuery:
    """Search request.

    ``max_tokens`` budgets the whole result set, not each row. ``trust`` is
    the caller's privilege; the engine narrows ``stores`` to what it allows.
    ``embedding`` overrides the query vector the engine would otherwise
    compute from ``text``.
    """

    text: Optional[str] = None
    stores: List[str] = field(default_factory=list)
    types: List[str] = field(default_factory=list)
    people: List[str] = field(default_factory=list)
    after: Optional[datetime] = None
    before: Optional[datetime] = None
    limit: int = 10
    max_tokens: Optional[int] = None
    trust: TrustLevel = TrustLevel.FULL
    embedding: Optional[List[float]] = None

    @property
    def has_text(self) -> bool:
        return bool(self.text and self.text.strip())


@dataclass
class ObservationHistoryEntry:
    observation_id: int
    old_title: Optional[str]
    old_facts: Optional[List[str]]
    new_title: Optional[str]
    new_facts: Optional[List[str]]
    event: str
    created_at: datetime


@dataclass
class ArchivedObservation:
    """Snapshot of an observation removed from the live tables."""

    id: int
    original_observation_id: int
    title: str
    store: str
    obs_type: str
    facts: List[str]
    archive_reason: str
    archived_at: datetime
    mention_count: int = 1


@dataclass
class Person:
    name: str
    store: str
    facts: Dict[str, Any] = field(default_factory=dict)
    aliases: List[str] = field(default_factory=list)
    last_mentioned: Optional[datetime] = None
    mention_count: int = 0


@dataclass
class SessionSummary:
    session_key: str
    request: str
    outcome: str
    decisions: List[str] = field(default_factory=list)
    open_items: List[str] = field(default_factory=list)
    observation_count: int = 0
    created_at: Optional[datetime] = None


# === Write Outcomes ===


@dataclass(frozen=True)
class Added:
    id: int


@dataclass(frozen=True)
class Updated:
    id: int


@dataclass(frozen=True)
class Deleted:
    id: int


@dataclass(frozen=True)
class Skipped:
    pass


@dataclass(frozen=True)
class ExactDup:
    pass


WriteOutcome = Union[Added, Updated, Deleted, Skipped, ExactDup]


# === Reconciliation ===


@dataclass
class ReconcileObservation:
    """Id-free projection of observation content shown to the reasoner."""

    store: str
    obs_type: str
    title: str
    narrative: str = ""
    facts: List[str] = field(default_factory=list)
    tags: List[str] = field(default_factory=list)
    related_files: List[str] = field(default_factory=list)
    related_people: List[str] = field(default_factory=list)

    @classmethod
    def from_new(cls, obs: NewObservation) -> "ReconcileObservation":
        return cls(
            store=obs.store,
            obs_type=obs.obs_type,
            title=obs.title,
            narrative=obs.narrative,
            facts=list(obs.facts),
            tags=list(obs.tags),
            related_files=list(obs.related_files),
            related_people=list(obs.related_people),
        )

    @classmethod
    def from_observation(cls, obs: Observation) -> "ReconcileObservation":
        return cls(
            store=obs.store,
            obs_type=obs.obs_type,
            title=obs.title,
            narrative=obs.narrative,
            facts=list(obs.facts),
            tags=list(obs.tags),
            related_files=list(obs.related_files),
            related_people=list(obs.related_people),
        )

    def is_empty(self) -> bool:
        return not (self.title.strip() or self.narrative.strip() or self.facts)


@dataclass
class ReconcileCandidate:
    """One near-duplicate offered to the reasoner, addressed by ``index``."""

    index: int
    score: float
    mention_count: int
    created_at: datetime
    observation: ReconcileObservation


@dataclass
class ReconcileRequest:
    incoming: ReconcileObservation
    candidates: List[ReconcileCandidate] = field(default_factory=list)


@dataclass(frozen=True)
class AddDecision:
    """No match: insert the incoming observation."""


@dataclass(frozen=True)
class UpdateDecision:
    """Replace the candidate's content with ``merged``."""

    candidate_index: int
    merged: ReconcileObservation


@dataclass(frozen=True)
class DeleteDecision:
    """The candidate is superseded or wrong."""

    candidate_index: int


@dataclass(frozen=True)
class NoneDecision:
    """The incoming observation adds nothing; bump the candidate's mentions."""

    candidate_index: int


ReconcileDecision = Union[AddDecision, UpdateDecision, DeleteDecision, NoneDecision]


# === Maintenance ===


@dataclass
class MaintenanceConfig:
    archive_after_days: int = 90
    delete_archive_after_days: int = 365
    compress_after_days: int = 30
    compression_min_cluster_size: int = 3
    max_rows_per_run: int = 200


@dataclass
class MaintenanceReport:
    compressed_rows: int = 0
    summary_rows: int = 0
    archived_rows: int = 0
    archive_deleted_rows: int = 0
