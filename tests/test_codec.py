"""Tests for coop_memory.storage.codec helpers."""

from datetime import datetime, timezone

from coop_memory.storage.codec import (
    DAY_MS,
    dict_from_json,
    dt_from_ms,
    escape_like_pattern,
    estimate_tokens,
    from_json,
    fts_query,
    ms_from_dt,
    normalize_file_path,
    observation_hash,
    observation_token_count,
    to_json,
)
from coop_memory.types import embedding_text


class TestObservationHash:
    def test_deterministic(self):
        assert observation_hash("t", ["a", "b"]) == observation_hash("t", ["a", "b"])

    def test_title_change_changes_hash(self):
        assert observation_hash("t1", ["a"]) != observation_hash("t2", ["a"])

    def test_fact_change_changes_hash(self):
        assert observation_hash("t", ["a"]) != observation_hash("t", ["a", "b"])
        assert observation_hash("t", ["a"]) != observation_hash("t", ["A"])

    def test_fact_order_matters(self):
        assert observation_hash("t", ["a", "b"]) != observation_hash("t", ["b", "a"])

    def test_separator_prevents_boundary_collisions(self):
        assert observation_hash("ab", []) != observation_hash("a", ["b"])
        assert observation_hash("t", ["ab"]) != observation_hash("t", ["a", "b"])

    def test_hex_sha256(self):
        digest = observation_hash("t", [])
        assert len(digest) == 64
        int(digest, 16)


class TestListCodec:
    def test_encode(self):
        assert to_json(["a", "b"]) == '["a", "b"]'
        assert to_json(None) == "[]"

    def test_unicode_kept_readable(self):
        assert to_json(["café"]) == '["café"]'

    def test_decode(self):
        assert from_json('["x", "y"]') == ["x", "y"]

    def test_malformed_decodes_empty(self):
        assert from_json("not json") == []
        assert from_json('{"a": 1}') == []
        assert from_json("") == []
        assert from_json(None) == []

    def test_dict_column(self):
        assert dict_from_json('{"role": "lead"}') == {"role": "lead"}
        assert dict_from_json("[1]") == {}
        assert dict_from_json("{broken") == {}


class TestFtsQuery:
    def test_tokens_quoted_and_ored(self):
        assert fts_query("sqlite wal") == '"sqlite" OR "wal"'

    def test_operators_are_neutralised(self):
        assert fts_query('a AND "b"') == '"a" OR "AND" OR " b "'

    def test_blank(self):
        assert fts_query("   ") == ""


class TestPaths:
    def test_normalize(self):
        assert normalize_file_path("./src//app/main.py") == "src/app/main.py"
        assert normalize_file_path("src\\app\\main.py") == "src/app/main.py"
        assert normalize_file_path("src/app/") == "src/app"

    def test_empty(self):
        assert normalize_file_path("") == ""
        assert normalize_file_path(".") == ""

    def test_escape_like(self):
        assert escape_like_pattern("100%_done\\") == "100\\%\\_done\\\\"


class TestTime:
    def test_round_trip_ms(self):
        dt = datetime(2024, 5, 1, 12, 30, tzinfo=timezone.utc)
        assert dt_from_ms(ms_from_dt(dt)) == dt

    def test_naive_is_utc(self):
        naive = datetime(2024, 5, 1, 12, 30)
        aware = naive.replace(tzinfo=timezone.utc)
        assert ms_from_dt(naive) == ms_from_dt(aware)

    def test_day_constant(self):
        assert DAY_MS == 24 * 60 * 60 * 1000

    def test_none(self):
        assert dt_from_ms(None) is None


class TestTokens:
    def test_estimate_tokens(self):
        assert estimate_tokens("") == 0
        assert estimate_tokens("a" * 40, include_safety_margin=False) == 10
        assert estimate_tokens("a" * 40) == 13

    def test_observation_token_count(self):
        text = "title narrative a; b"
        assert observation_token_count("title", "narrative", ["a", "b"]) == estimate_tokens(text)


class TestEmbeddingText:
    def test_title_then_facts(self):
        text = embedding_text("Deploy", ["blue-green", "on friday"])
        assert text == "Deploy; blue-green; on friday"

    def test_skips_blanks(self):
        assert embedding_text("Deploy", ["", "  "]) == "Deploy"
