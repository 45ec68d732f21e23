"""Migration 002: per-cycle federation metrics."""

from __future__ import annotations

import aiosqlite


async def upgrade(db: aiosqlite.Connection) -> None:
    await db.execute("""
        CREATE TABLE IF NOT EXISTS federation_metrics (
            cycle_id TEXT NOT NULL,
            tenant_id TEXT NOT NULL,
            participants INTEGER NOT NULL,
            average_trust REAL NOT NULL,
            median_trust REAL NOT NULL,
            trust_std_deviation REAL NOT NULL,
            highest_tenant TEXT,
            highest_trust REAL,
            lowest_tenant TEXT,
            lowest_trust REAL,
            average_latency_ms REAL,
            aggregated_priorities TEXT,
            summary TEXT,
            network_health TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            PRIMARY KEY (cycle_id, tenant_id)
        )
    """)
