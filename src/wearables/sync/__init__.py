"""Wearable sync runtime for NutriSync.

Modules:
    locks               — Per-device asyncio lock map
    credentials         — Encrypted token custody and serialized refresh
    repository          — Persistence contract and in-memory implementation
    postgres_repository — asyncpg-backed repository
    dedup               — Idempotent INSERT builders
    orchestrator        — One sync job, end-to-end
    scheduler           — Per-device intervals, backoff, worker pool
    events              — Notification hook payloads
    service             — Facade used by the API layer
"""
