"""Migration 001: outcome counters, priorities, recovery and event logs."""

from __future__ import annotations

import aiosqlite


async def upgrade(db: aiosqlite.Connection) -> None:
    await db.execute("""
        CREATE TABLE IF NOT EXISTS optimization_log (
            id TEXT PRIMARY KEY,
            recommendation_id TEXT,
            route TEXT,
            status TEXT NOT NULL,
            rollback INTEGER DEFAULT 0,
            policy_status TEXT NOT NULL DEFAULT 'ALLOWED',
            created_at TEXT NOT NULL
        )
    """)
    await db.execute("""
        CREATE TABLE IF NOT EXISTS agent_priority (
            id TEXT PRIMARY KEY,
            agent TEXT NOT NULL UNIQUE,
            weight REAL NOT NULL,
            confidence REAL NOT NULL,
            rationale TEXT,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
    """)
    await db.execute("""
        CREATE TABLE IF NOT EXISTS recovery_log (
            id TEXT PRIMARY KEY,
            agent TEXT NOT NULL,
            action TEXT NOT NULL,
            reason TEXT,
            trust_score_before REAL,
            trust_score_after REAL,
            trace_id TEXT,
            created_at TEXT NOT NULL
        )
    """)
    await db.execute("""
        CREATE TABLE IF NOT EXISTS agent_event_log (
            id TEXT PRIMARY KEY,
            trace_id TEXT NOT NULL,
            event_type TEXT NOT NULL,
            source_agent TEXT NOT NULL,
            target_agent TEXT,
            priority INTEGER NOT NULL,
            summary TEXT,
            payload TEXT,
            recommendation_id TEXT,
            created_at TEXT NOT NULL
        )
    """)
    await db.execute(
        "CREATE INDEX IF NOT EXISTS idx_event_log_recommendation "
        "ON agent_event_log (recommendation_id, event_type)"
    )
