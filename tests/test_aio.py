"""Tests for the AsyncMemory facade."""

import asyncio
import threading

from coop_memory.aio import AsyncMemory
from coop_memory.types import (
    Added,
    ExactDup,
    MaintenanceReport,
    MemoryQuery,
)


class TestAsyncMemory:
    def test_round_trip_through_worker_threads(self, memory, make_obs):
        amem = AsyncMemory(memory)

        async def scenario():
            first = await amem.write(make_obs("async note", ["x"], related_people=["Kim"]))
            second = await amem.write(make_obs("async note", ["x"]))
            results = await amem.search(MemoryQuery(text="async"))
            bodies = await amem.get([first.id])
            window = await amem.timeline(first.id)
            people = await amem.people("kim")
            history = await amem.history(first.id)
            return first, second, results, bodies, window, people, history

        first, second, results, bodies, window, people, history = asyncio.run(scenario())

        assert isinstance(first, Added)
        assert second == ExactDup()
        assert [r.mention_count for r in results] == [2]
        assert bodies[0].title == "async note"
        assert [r.id for r in window] == [first.id]
        assert [p.name for p in people] == ["Kim"]
        assert [e.event for e in history] == ["ADD", "DUP"]

    def test_calls_leave_the_event_loop_thread(self, memory):
        seen = []
        original = memory.people

        def recording_people(query=""):
            seen.append(threading.get_ident())
            return original(query)

        memory.people = recording_people
        amem = AsyncMemory(memory)

        async def scenario():
            await amem.people()
            return threading.get_ident()

        loop_thread = asyncio.run(scenario())
        assert seen and seen[0] != loop_thread

    def test_remaining_operations(self, memory, make_obs):
        amem = AsyncMemory(memory)

        async def scenario():
            await amem.write(
                make_obs(
                    "file note",
                    related_files=["a.py"],
                    session_key="s",
                    related_people=["Robert"],
                )
            )
            by_file = await amem.search_by_file("a.py")
            alias = await amem.add_person_alias("Robert", "Bob")
            summary = await amem.summarize_session("s")
            recent = await amem.recent_session_summaries()
            report = await amem.run_maintenance()
            archived = await amem.archived()
            rebuilt = await amem.rebuild_index()
            return by_file, alias, summary, recent, report, archived, rebuilt

        by_file, alias, summary, recent, report, archived, rebuilt = asyncio.run(scenario())

        assert len(by_file) == 1
        assert alias is True
        assert summary.observation_count == 1
        assert [s.session_key for s in recent] == ["s"]
        assert report == MaintenanceReport()
        assert archived == []
        assert rebuilt == 0

    def test_exposes_wrapped_memory(self, memory):
        assert AsyncMemory(memory).memory is memory
