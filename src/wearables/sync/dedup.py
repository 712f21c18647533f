"""Deduplication keys and idempotent SQL for wearable observation storage.

Dedup keys:
    - health_observations:   observation_id — deterministic per record version
    - health_observations:   (source_device_id, source_record_id) is not a
                             constraint; the conflict engine retires the
                             prior version of a vendor record in the same
                             transaction that appends the new one
    - correlation_analyses:  (user_id, pair_name, period_end) — UNIQUE constraint
"""

from __future__ import annotations

import logging

logger = logging.getLogger("nutrisync.wearables.sync.dedup")


def build_insert_query(table: str, columns: list[str], conflict_columns: list[str]) -> str:
    """Build an append-only INSERT that silently ignores rows already present.

    Args:
        table:            Target table name.
        columns:          All columns to insert.
        conflict_columns: Columns that define the UNIQUE constraint.

    Returns:
        Parameterized SQL string.
    """
    placeholders = ", ".join(f"${i + 1}" for i in range(len(columns)))
    return (
        f"INSERT INTO {table} ({', '.join(columns)}) "
        f"VALUES ({placeholders}) "
        f"ON CONFLICT ({', '.join(conflict_columns)}) DO NOTHING"
    )


def build_upsert_query(
    table: str,
    columns: list[str],
    conflict_columns: list[str],
    update_columns: list[str] | None = None,
) -> str:
    """Build a PostgreSQL INSERT ... ON CONFLICT DO UPDATE (upsert) query.

    Generates idempotent writes, safe to call multiple times with the same
    data.  On conflict, updates the non-key columns.

    Args:
        table:            Target table name.
        columns:          All columns to insert.
        conflict_columns: Columns that define the UNIQUE constraint.
        update_columns:   Columns to update on conflict (defaults to non-key columns).

    Returns:
        Parameterized SQL string.
    """
    if update_columns is None:
        update_columns = [c for c in columns if c not in conflict_columns]

    if not update_columns:
        return build_insert_query(table, columns, conflict_columns)

    placeholders = ", ".join(f"${i + 1}" for i in range(len(columns)))
    update_set = ", ".join(f"{col} = EXCLUDED.{col}" for col in update_columns)
    return (
        f"INSERT INTO {table} ({', '.join(columns)}) "
        f"VALUES ({placeholders}) "
        f"ON CONFLICT ({', '.join(conflict_columns)}) DO UPDATE SET {update_set}"
    )
