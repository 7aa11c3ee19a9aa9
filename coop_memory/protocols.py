"""
coop_memory Protocol Definitions
================================

Interface contracts between the memory engine and its collaborators.

Collaborators and their roles:
- EmbeddingProvider: turns text into fixed-dimension vectors. Optional; the
  engine runs lexical-only without one.
- Reconciler: decides how an incoming observation relates to existing
  near-duplicates (ADD / UPDATE / DELETE / NONE). Optional.
- InferenceService: the narrow text-in/text-out slice of a language model
  that a model-backed reconciler needs.
- Memory: what the gateway consumes. SQLiteMemory implements it.

Error handling philosophy:
- Storage failures raise StorageError, chained to the sqlite3 error.
- Malformed reconciliation payloads raise DecodeError.
- Decisions that break the protocol rules raise ValidationError.
- Embedding problems (provider errors, DimensionMismatchError) never fail a
  write; the engine logs them and keeps the textual row.
- Expired, deleted or foreign-agent rows are "not found", never an error.
"""

from __future__ import annotations

from typing import Optional, Protocol, Sequence, runtime_checkable

from coop_memory.trust import TrustLevel
from coop_memory.types import (
    ArchivedObservation,
    MaintenanceConfig,
    MaintenanceReport,
    MemoryQuery,
    NewObservation,
    Observation,
    ObservationHistoryEntry,
    ObservationIndex,
    Person,
    ReconcileDecision,
    ReconcileRequest,
    SessionSummary,
    WriteOutcome,
)

# =============================================================================
# ERRORS
# =============================================================================


class CoopMemoryError(Exception):
    """Base for all coop_memory errors."""

    pass


class StorageError(CoopMemoryError):
    """Raised when the underlying database connection or SQL fails."""

    pass


class DecodeError(CoopMemoryError, ValueError):
    """Raised when a reconciliation payload is not valid JSON of the expected shape."""

    pass


class ValidationError(CoopMemoryError, ValueError):
    """Raised when a reconciliation decision violates the protocol rules."""

    pass


class DimensionMismatchError(CoopMemoryError):
    """Raised when an embedding's length differs from the configured dimension."""

    def __init__(self, expected: int, actual: int):
        super().__init__(f"Embedding has {actual} dimensions, expected {expected}")
        self.expected = expected
        self.actual = actual


# =============================================================================
# COLLABORATORS
# =============================================================================


@runtime_checkable
class EmbeddingProvider(Protocol):
    """Turns text into a vector of ``dimension`` floats."""

    def embed(self, text: str) -> list[float]:
        ...

    def embed_batch(self, texts: list[str]) -> list[list[float]]:
        """Batch embed. Default implementations loop over embed()."""
        ...

    @property
    def dimension(self) -> int:
        ...


@runtime_checkable
class Reconciler(Protocol):
    """Returns exactly one decision for a reconciliation request."""

    def reconcile(self, request: ReconcileRequest) -> ReconcileDecision:
        ...


@runtime_checkable
class InferenceService(Protocol):
    """Narrow interface to a language model.

    Not a full chat client, just what the model-backed reconciler needs.
    """

    def infer(self, prompt: str, *, system: Optional[str] = None) -> str:
        """Generate text from a prompt. Returns the response string."""
        ...


# =============================================================================
# MEMORY INTERFACE
# =============================================================================


@runtime_checkable
class Memory(Protocol):
    """The memory operations the gateway consumes."""

    def search(self, query: MemoryQuery) -> list[ObservationIndex]:
        ...

    def search_by_file(
        self,
        path: str,
        prefix_match: bool = False,
        limit: int = 10,
        trust: TrustLevel = TrustLevel.FULL,
    ) -> list[ObservationIndex]:
        ...

    def timeline(
        self,
        anchor_id: int,
        before: int = 3,
        after: int = 3,
        trust: Optional[TrustLevel] = None,
    ) -> list[ObservationIndex]:
        ...

    def get(self, ids: Sequence[int], trust: Optional[TrustLevel] = None) -> list[Observation]:
        ...

    def write(self, obs: NewObservation) -> WriteOutcome:
        ...

    def people(self, query: str = "") -> list[Person]:
        ...

    def add_person_alias(self, name: str, alias: str) -> bool:
        ...

    def summarize_session(self, session_key: str) -> SessionSummary:
        ...

    def recent_session_summaries(self, limit: int = 5) -> list[SessionSummary]:
        ...

    def history(self, observation_id: int) -> list[ObservationHistoryEntry]:
        ...

    def archived(self, limit: int = 50) -> list[ArchivedObservation]:
        ...

    def run_maintenance(self, config: Optional[MaintenanceConfig] = None) -> MaintenanceReport:
        ...

    def rebuild_index(self) -> int:
        ...
