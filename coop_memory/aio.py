"""Asynchronous facade over a blocking Memory.

Every engine call does SQLite (and possibly embedding or model) I/O, so
async callers must keep it off the event loop. AsyncMemory runs each call
on a worker thread with ``asyncio.to_thread``.
"""

import asyncio
from typing import List, Optional, Sequence

from .protocols import Memory
from .trust import TrustLevel
from .types import (
    ArchivedObservation,
    MaintenanceConfig,
    MaintenanceReport,
    MemoryQuery,
    NewObservation,
    Observation,
    ObservationHistoryEntry,
    ObservationIndex,
    Person,
    SessionSummary,
    WriteOutcome,
)


class AsyncMemory:
    """Coroutine versions of the Memory operations."""

    def __init__(self, memory: Memory):
        self._memory = memory

    @property
    def memory(self) -> Memory:
        return self._memory

    async def search(self, query: MemoryQuery) -> List[ObservationIndex]:
        return await asyncio.to_thread(self._memory.search, query)

    async def search_by_file(
        self,
        path: str,
        prefix_match: bool = False,
        limit: int = 10,
        trust: TrustLevel = TrustLevel.FULL,
    ) -> List[ObservationIndex]:
        return await asyncio.to_thread(
            self._memory.search_by_file, path, prefix_match, limit, trust
        )

    async def timeline(
        self,
        anchor_id: int,
        before: int = 3,
        after: int = 3,
        trust: Optional[TrustLevel] = None,
    ) -> List[ObservationIndex]:
        return await asyncio.to_thread(self._memory.timeline, anchor_id, before, after, trust)

    async def get(
        self, ids: Sequence[int], trust: Optional[TrustLevel] = None
    ) -> List[Observation]:
        return await asyncio.to_thread(self._memory.get, list(ids), trust)

    async def write(self, obs: NewObservation) -> WriteOutcome:
        return await asyncio.to_thread(self._memory.write, obs)

    async def people(self, query: str = "") -> List[Person]:
        return await asyncio.to_thread(self._memory.people, query)

    async def add_person_alias(self, name: str, alias: str) -> bool:
        return await asyncio.to_thread(self._memory.add_person_alias, name, alias)

    async def summarize_session(self, session_key: str) -> SessionSummary:
        return await asyncio.to_thread(self._memory.summarize_session, session_key)

    async def recent_session_summaries(self, limit: int = 5) -> List[SessionSummary]:
        return await asyncio.to_thread(self._memory.recent_session_summaries, limit)

    async def history(self, observation_id: int) -> List[ObservationHistoryEntry]:
        return await asyncio.to_thread(self._memory.history, observation_id)

    async def archived(self, limit: int = 50) -> List[ArchivedObservation]:
        return await asyncio.to_thread(self._memory.archived, limit)

    async def run_maintenance(
        self, config: Optional[MaintenanceConfig] = None
    ) -> MaintenanceReport:
        return await asyncio.to_thread(self._memory.run_maintenance, config)

    async def rebuild_index(self) -> int:
        return await asyncio.to_thread(self._memory.rebuild_index)
