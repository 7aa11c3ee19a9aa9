"""Tests for SQLiteMemory.run_maintenance: compression, archival and cleanup."""

from datetime import datetime, timedelta, timezone

import pytest

from coop_memory.storage import SQLiteMemory
from coop_memory.storage.codec import ms_from_dt
from coop_memory.storage.maintenance import normalize_title, union_sorted
from coop_memory.types import MaintenanceConfig, MaintenanceReport, MemoryQuery, embedding_text


def _days_ago_ms(days):
    return ms_from_dt(datetime.now(timezone.utc) - timedelta(days=days))


@pytest.fixture
def stale_cluster(memory, make_obs, age_observation):
    """Three 40-day-old observations whose titles differ only in case and spacing."""
    titles = ["Standup notes", "standup   Notes", "STANDUP NOTES"]
    ids = []
    for i, title in enumerate(titles):
        obs_id = memory.write(
            make_obs(
                title,
                [f"item {i}", "shared item"],
                obs_type="event",
                tags=[f"week-{i}"],
                related_people=["Dana"],
                related_files=[f"notes/{i}.md"],
            )
        ).id
        age_observation(memory, obs_id, days=40)
        ids.append(obs_id)
    return ids


class TestHelpers:
    def test_normalize_title(self):
        assert normalize_title("  Standup   NOTES ") == "standup notes"

    def test_union_sorted(self):
        assert union_sorted(["b", "a", " b ", "", "c"]) == ["a", "b", "c"]


class TestCompression:
    def test_cluster_collapses_into_summary(self, memory, stale_cluster):
        report = memory.run_maintenance(MaintenanceConfig())

        assert report.compressed_rows == 3
        assert report.summary_rows == 1
        assert memory.get(stale_cluster) == []

        results = memory.search(MemoryQuery(text="standup"))
        assert len(results) == 1
        summary = memory.get([results[0].id])[0]
        assert summary.title.endswith("(compressed 3)")
        assert summary.facts == ["item 0", "item 1", "item 2", "shared item"]
        assert "compressed" in summary.tags
        assert {"week-0", "week-1", "week-2"} <= set(summary.tags)
        assert summary.related_people == ["Dana"]
        assert summary.related_files == ["notes/0.md", "notes/1.md", "notes/2.md"]
        assert summary.mention_count == 3
        assert summary.source == "maintenance"
        assert summary.obs_type == "event"

    def test_originals_get_compress_history(self, memory, stale_cluster):
        memory.run_maintenance(MaintenanceConfig())
        for obs_id in stale_cluster:
            assert [e.event for e in memory.history(obs_id)] == ["ADD", "COMPRESS"]

    def test_small_cluster_untouched(self, memory, stale_cluster):
        report = memory.run_maintenance(MaintenanceConfig(compression_min_cluster_size=4))
        assert report.compressed_rows == 0
        assert len(memory.get(stale_cluster)) == 3

    def test_recent_rows_untouched(self, memory, make_obs):
        for i in range(3):
            memory.write(make_obs("daily log", [f"entry {i}"]))
        report = memory.run_maintenance(MaintenanceConfig())
        assert report.compressed_rows == 0

    def test_different_types_do_not_cluster(self, memory, make_obs, age_observation):
        for i, obs_type in enumerate(["event", "task", "decision"]):
            obs_id = memory.write(make_obs("same title", [str(i)], obs_type=obs_type)).id
            age_observation(memory, obs_id, days=40)
        assert memory.run_maintenance(MaintenanceConfig()).compressed_rows == 0

    def test_row_cap_respected(self, memory, stale_cluster):
        report = memory.run_maintenance(MaintenanceConfig(max_rows_per_run=2))
        assert report.compressed_rows == 0

    def test_summary_is_embedded(self, embedded_memory, embedder, make_obs, age_observation):
        for i in range(3):
            obs_id = embedded_memory.write(make_obs("retro", [f"point {i}"])).id
            age_observation(embedded_memory, obs_id, days=40)
        embedded_memory.run_maintenance(MaintenanceConfig())
        expected = embedding_text("retro (compressed 3)", ["point 0", "point 1", "point 2"])
        assert embedder.texts[-1] == expected


class TestArchival:
    def test_old_rows_archived(self, memory, make_obs, age_observation):
        old = memory.write(make_obs("ancient history", ["x"])).id
        keep = memory.write(make_obs("fresh news")).id
        age_observation(memory, old, days=100)

        report = memory.run_maintenance(MaintenanceConfig())

        assert report.archived_rows == 1
        assert memory.get([old]) == []
        assert [o.id for o in memory.get([keep])] == [keep]
        assert memory.search(MemoryQuery(text="ancient")) == []

        archived = memory.archived()
        assert archived[0].original_observation_id == old
        assert archived[0].archive_reason == "age"
        assert archived[0].facts == ["x"]

    def test_long_expired_rows_archived_as_expired(self, memory, make_obs):
        obs_id = memory.write(make_obs("temp")).id
        with memory._connect() as conn:
            conn.execute(
                "UPDATE observations SET expires_at = ? WHERE id = ?", (_days_ago_ms(100), obs_id)
            )
        memory.run_maintenance(MaintenanceConfig())
        assert memory.archived()[0].archive_reason == "expired"

    def test_recently_expired_rows_stay(self, memory, make_obs):
        obs_id = memory.write(make_obs("temp")).id
        with memory._connect() as conn:
            conn.execute(
                "UPDATE observations SET expires_at = ? WHERE id = ?", (_days_ago_ms(1), obs_id)
            )
        assert memory.run_maintenance(MaintenanceConfig()).archived_rows == 0

    def test_archive_row_cap(self, memory, make_obs, age_observation):
        for i in range(5):
            age_observation(memory, memory.write(make_obs(f"old {i}")).id, days=200)
        report = memory.run_maintenance(MaintenanceConfig(max_rows_per_run=2))
        assert report.archived_rows == 2

    def test_archived_limit(self, memory, make_obs, age_observation):
        for i in range(4):
            age_observation(memory, memory.write(make_obs(f"old {i}")).id, days=200)
        memory.run_maintenance(MaintenanceConfig())
        assert len(memory.archived(limit=3)) == 3


class TestArchiveCleanup:
    def test_expired_archive_rows_deleted(self, memory, make_obs, age_observation):
        age_observation(memory, memory.write(make_obs("very old")).id, days=100)
        memory.run_maintenance(MaintenanceConfig())
        with memory._connect() as conn:
            conn.execute("UPDATE observation_archive SET archived_at = ?", (_days_ago_ms(400),))

        report = memory.run_maintenance(MaintenanceConfig())

        assert report.archive_deleted_rows == 1
        assert memory.archived() == []

    def test_recent_archive_rows_kept(self, memory, make_obs, age_observation):
        age_observation(memory, memory.write(make_obs("very old")).id, days=100)
        memory.run_maintenance(MaintenanceConfig())
        assert memory.run_maintenance(MaintenanceConfig()).archive_deleted_rows == 0
        assert len(memory.archived()) == 1


class TestReport:
    def test_empty_database(self, memory):
        assert memory.run_maintenance() == MaintenanceReport()

    def test_maintenance_event_logged(self, db_path, tmp_path):
        log_dir = tmp_path / "events"
        with SQLiteMemory(db_path, agent_id="test-agent", log_dir=log_dir) as mem:
            mem.run_maintenance()
        logs = list(log_dir.glob("memory-events-*.log"))
        assert len(logs) == 1
        assert "| maintenance | agent=test-agent |" in logs[0].read_text()
