"""
coop_memory - Structured, trust-gated observation memory.

Observations stored in SQLite with full-text and optional vector retrieval,
duplicate suppression and model-assisted reconciliation.
"""

from .protocols import (
    CoopMemoryError,
    DecodeError,
    DimensionMismatchError,
    Memory,
    StorageError,
    ValidationError,
)
from .storage import SQLiteMemory, open_memory
from .trust import TrustLevel
from .types import MemoryQuery, NewObservation

try:
    from importlib.metadata import version

    __version__ = version("coop-memory")
except Exception:
    __version__ = "0.0.0"

__all__ = [
    "SQLiteMemory",
    "open_memory",
    "Memory",
    "MemoryQuery",
    "NewObservation",
    "TrustLevel",
    "CoopMemoryError",
    "StorageError",
    "DecodeError",
    "ValidationError",
    "DimensionMismatchError",
]
