"""Tests for idempotent SQL builders."""

from __future__ import annotations

from src.wearables.sync.dedup import build_insert_query, build_upsert_query


class TestInsertQuery:
    def test_append_only_insert_ignores_duplicates(self) -> None:
        sql = build_insert_query("sync_logs", ["log_id", "device_id"], ["log_id"])
        assert sql == (
            "INSERT INTO sync_logs (log_id, device_id) VALUES ($1, $2) "
            "ON CONFLICT (log_id) DO NOTHING"
        )


class TestUpsertQuery:
    def test_updates_non_key_columns_by_default(self) -> None:
        sql = build_upsert_query(
            "correlation_analyses",
            ["user_id", "pair_name", "period_end", "correlation_score"],
            ["user_id", "pair_name", "period_end"],
        )
        assert "ON CONFLICT (user_id, pair_name, period_end)" in sql
        assert "DO UPDATE SET correlation_score = EXCLUDED.correlation_score" in sql
        assert "VALUES ($1, $2, $3, $4)" in sql

    def test_explicit_update_columns(self) -> None:
        sql = build_upsert_query("t", ["a", "b", "c"], ["a"], update_columns=["c"])
        assert sql.endswith("DO UPDATE SET c = EXCLUDED.c")

    def test_all_key_columns_falls_back_to_insert(self) -> None:
        sql = build_upsert_query("t", ["a", "b"], ["a", "b"])
        assert sql.endswith("DO NOTHING")
