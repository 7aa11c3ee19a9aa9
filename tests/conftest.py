"""
Pytest fixtures and test configuration for coop_memory tests.
"""

import logging
from collections import deque
from datetime import datetime, timedelta, timezone
from typing import List

import pytest

from coop_memory.config import get_settings
from coop_memory.storage import HashEmbedder, SQLiteMemory
from coop_memory.storage.codec import ms_from_dt
from coop_memory.types import NewObservation


class RecordingEmbedder:
    """Deterministic embedder that remembers every text it was asked for."""

    def __init__(self, dim: int = 64, fail: bool = False):
        self._inner = HashEmbedder(dim=dim)
        self.fail = fail
        self.texts: List[str] = []

    @property
    def dimension(self) -> int:
        return self._inner.dimension

    def embed(self, text: str) -> List[float]:
        self.texts.append(text)
        if self.fail:
            raise RuntimeError("embedding service unavailable")
        return self._inner.embed(text)

    def embed_batch(self, texts: List[str]) -> List[List[float]]:
        return [self.embed(t) for t in texts]


class QueueReconciler:
    """Reconciler that replays queued decisions and records each request."""

    def __init__(self, *decisions):
        self.decisions = deque(decisions)
        self.requests = []

    def reconcile(self, request):
        self.requests.append(request)
        return self.decisions.popleft()


@pytest.fixture(autouse=True)
def coop_home(tmp_path, monkeypatch):
    """Point the data directory (and so the event logs) at a temp dir."""
    home = tmp_path / "coop-home"
    monkeypatch.setenv("COOP_MEMORY_DATA_DIR", str(home))
    get_settings.cache_clear()
    yield home
    get_settings.cache_clear()


@pytest.fixture(autouse=True)
def clean_coop_logger():
    """Remove handlers added by setup_coop_logging between tests."""
    logger = logging.getLogger("coop_memory")
    handlers = list(logger.handlers)
    level = logger.level
    yield
    for handler in logger.handlers:
        if handler not in handlers:
            handler.close()
    logger.handlers[:] = handlers
    logger.setLevel(level)


@pytest.fixture
def db_path(tmp_path):
    return tmp_path / "memory.db"


@pytest.fixture
def memory(db_path):
    """Lexical-only engine (no embedder, no reconciler)."""
    mem = SQLiteMemory(db_path, agent_id="test-agent")
    yield mem
    mem.close()


@pytest.fixture
def embedder():
    return RecordingEmbedder()


@pytest.fixture
def embedded_memory(db_path, embedder):
    """Engine with a deterministic embedder; vector search depends on sqlite-vec."""
    mem = SQLiteMemory(db_path, agent_id="test-agent", embedder=embedder)
    yield mem
    mem.close()


@pytest.fixture
def make_obs():
    """Factory for NewObservation with short defaults."""

    def _make(title: str, facts=None, **kwargs) -> NewObservation:
        return NewObservation(title=title, facts=list(facts or []), **kwargs)

    return _make


@pytest.fixture
def age_observation():
    """Rewrite an observation's timestamps to ``days`` in the past."""

    def _age(mem: SQLiteMemory, obs_id: int, days: float, updated_days=None) -> None:
        now = datetime.now(timezone.utc)
        created = ms_from_dt(now - timedelta(days=days))
        updated = ms_from_dt(now - timedelta(days=days if updated_days is None else updated_days))
        with mem._connect() as conn:
            conn.execute(
                "UPDATE observations SET created_at = ?, updated_at = ? WHERE id = ?",
                (created, updated, obs_id),
            )

    return _age


@pytest.fixture
def failing_embedder():
    return RecordingEmbedder(fail=True)


@pytest.fixture
def reconciling_memory(db_path):
    """Open an engine whose reconciler replays the given decisions.

    Returns ``(memory, reconciler)``. Writes made before reconciliation is
    wanted can go through ``memory.apply_decision`` or a plain engine.
    """
    opened = []

    def _open(*decisions, embedder=None):
        reconciler = QueueReconciler(*decisions)
        mem = SQLiteMemory(
            db_path, agent_id="test-agent", embedder=embedder, reconciler=reconciler
        )
        opened.append(mem)
        return mem, reconciler

    yield _open
    for mem in opened:
        mem.close()
