"""Tests for coop_memory.config settings and open_memory wiring."""

from pathlib import Path

import pytest
from pydantic import ValidationError as SettingsError

import coop_memory
from coop_memory.config import MemorySettings, get_coop_home, get_settings
from coop_memory.storage import HashEmbedder, SQLiteMemory, open_memory
from coop_memory.types import Added, MaintenanceConfig


class TestMemorySettings:
    def test_defaults(self, monkeypatch):
        monkeypatch.delenv("COOP_MEMORY_DATA_DIR", raising=False)
        settings = MemorySettings(_env_file=None)
        assert settings.data_dir == Path.home() / ".coop"
        assert settings.agent_id == "coop"
        assert settings.embedding_provider == "none"
        assert settings.reconcile_candidates == 5
        assert settings.maintenance_config() == MaintenanceConfig()

    def test_environment_overrides(self, monkeypatch, tmp_path):
        monkeypatch.setenv("COOP_MEMORY_DATA_DIR", str(tmp_path))
        monkeypatch.setenv("COOP_MEMORY_AGENT_ID", "scout")
        monkeypatch.setenv("COOP_MEMORY_ARCHIVE_AFTER_DAYS", "7")
        monkeypatch.setenv("COOP_MEMORY_EMBEDDING_DIMENSIONS", "128")

        settings = MemorySettings(_env_file=None)

        assert settings.agent_id == "scout"
        assert settings.db_path == tmp_path / "memory.db"
        assert settings.log_dir == tmp_path / "logs"
        assert settings.embedding_dimensions == 128
        assert settings.maintenance_config().archive_after_days == 7

    @pytest.mark.parametrize(
        "overrides",
        [{"reconcile_candidates": 0}, {"agent_id": ""}, {"embedding_dimensions": 0}],
    )
    def test_rejects_out_of_range_values(self, overrides):
        with pytest.raises(SettingsError):
            MemorySettings(_env_file=None, **overrides)

    def test_get_settings_cached(self):
        assert get_settings() is get_settings()

    def test_coop_home_rereads_environment(self, monkeypatch, tmp_path):
        monkeypatch.setenv("COOP_MEMORY_DATA_DIR", str(tmp_path / "one"))
        assert get_coop_home() == tmp_path / "one"
        monkeypatch.setenv("COOP_MEMORY_DATA_DIR", str(tmp_path / "two"))
        assert get_coop_home() == tmp_path / "two"


class TestOpenMemory:
    def test_from_environment(self, monkeypatch, coop_home, make_obs):
        monkeypatch.setenv("COOP_MEMORY_AGENT_ID", "scout")
        get_settings.cache_clear()

        with open_memory() as mem:
            assert isinstance(mem, SQLiteMemory)
            assert mem.agent_id == "scout"
            assert mem.embedder is None
            assert isinstance(mem.write(make_obs("configured")), Added)
        assert (coop_home / "memory.db").exists()
        assert list((coop_home / "logs").glob("local-*.log"))

    def test_explicit_settings_with_hash_embedder(self, tmp_path):
        settings = MemorySettings(
            _env_file=None,
            data_dir=tmp_path,
            db_filename="agent.db",
            embedding_provider="hash",
            embedding_dimensions=32,
            reconcile_candidates=3,
        )
        with open_memory(settings) as mem:
            assert isinstance(mem.embedder, HashEmbedder)
            assert mem.embedder.dimension == 32
            assert mem.reconcile_candidates == 3
        assert (tmp_path / "agent.db").exists()

    def test_logs_follow_configured_data_dir(self, tmp_path, coop_home, make_obs):
        configured = tmp_path / "configured"
        settings = MemorySettings(_env_file=None, data_dir=configured)

        with open_memory(settings) as mem:
            assert mem.log_dir == configured / "logs"
            mem.write(make_obs("where do logs go"))

        assert len(list((configured / "logs").glob("local-*.log"))) == 1
        events = list((configured / "logs").glob("memory-events-*.log"))
        assert len(events) == 1
        assert "| write | agent=coop | outcome=Added" in events[0].read_text()
        assert not (coop_home / "logs").exists()


class TestPackage:
    def test_version_string(self):
        assert isinstance(coop_memory.__version__, str)

    def test_public_exports(self):
        for name in coop_memory.__all__:
            assert hasattr(coop_memory, name)

    @pytest.mark.parametrize("name", ["StorageError", "DecodeError", "ValidationError"])
    def test_errors_share_base(self, name):
        assert issubclass(getattr(coop_memory, name), coop_memory.CoopMemoryError)
