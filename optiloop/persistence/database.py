"""Durable store: outcome counters, priorities, recovery and event logs.

Backed by SQLite via aiosqlite. Every write is either an append or an
``INSERT ... ON CONFLICT DO UPDATE`` upsert, so independent loop instances
can share one store without locking each other out.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime

import aiosqlite
import orjson

from optiloop.exceptions import MigrationError
from optiloop.migrations.runner import apply_migrations
from optiloop.persistence.models import (
    EventLogRecord,
    FederationMetricsRecord,
    OutcomeCounts,
    OutcomeRecord,
    PolicyStatus,
    PriorityRecord,
    RecoveryRecord,
)
from optiloop.types import AgentRole, utcnow

_logger = logging.getLogger(__name__)


class Database:
    """Async durable store for everything the loop and federation persist."""

    def __init__(self, db_path: str) -> None:
        self._db_path = db_path
        self._db: aiosqlite.Connection | None = None
        self._lock = asyncio.Lock()

    async def initialize(self) -> None:
        """Open the shared connection and bring the schema up to date."""
        self._db = await aiosqlite.connect(self._db_path)
        self._db.row_factory = aiosqlite.Row
        try:
            applied = await apply_migrations(self._db)
        except MigrationError:
            await self.close()
            raise
        if applied:
            _logger.info("Database %s migrated: %s", self._db_path, applied)

    async def close(self) -> None:
        if self._db is not None:
            await self._db.close()
            self._db = None

    @property
    def conn(self) -> aiosqlite.Connection:
        if self._db is None:
            raise RuntimeError("Database not initialized; call initialize() first")
        return self._db

    # ── Recommendation outcomes (trust counters) ──────────────

    async def record_outcome(self, outcome: OutcomeRecord) -> OutcomeRecord:
        async with self._lock:
            await self.conn.execute(
                """INSERT INTO optimization_log
                   (id, recommendation_id, route, status, rollback,
                    policy_status, created_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?)""",
                (
                    outcome.id,
                    outcome.recommendation_id,
                    outcome.route,
                    outcome.status.value,
                    int(outcome.rollback),
                    outcome.policy_status.value,
                    outcome.created_at.isoformat(),
                ),
            )
            await self.conn.commit()
        return outcome

    async def count_outcomes(self) -> OutcomeCounts:
        cursor = await self.conn.execute(
            """SELECT
                 COUNT(*),
                 COALESCE(SUM(CASE WHEN status = 'APPLIED' THEN 1 ELSE 0 END), 0),
                 COALESCE(SUM(CASE WHEN rollback = 1 THEN 1 ELSE 0 END), 0),
                 COALESCE(SUM(CASE WHEN policy_status IN (?, ?) THEN 1 ELSE 0 END), 0)
               FROM optimization_log""",
            (PolicyStatus.BLOCKED.value, PolicyStatus.REVIEW.value),
        )
        row = await cursor.fetchone()
        return OutcomeCounts(
            total=row[0], applied=row[1], rollback=row[2], violations=row[3],
        )

    # ── Agent priorities ──────────────────────────────────────

    async def upsert_priorities(self, records: list[PriorityRecord]) -> list[PriorityRecord]:
        """Overwrite one row per agent; keeps the original row id on update."""
        now = utcnow()
        async with self._lock:
            for record in records:
                await self.conn.execute(
                    """INSERT INTO agent_priority
                       (id, agent, weight, confidence, rationale, created_at, updated_at)
                       VALUES (?, ?, ?, ?, ?, ?, ?)
                       ON CONFLICT(agent) DO UPDATE SET
                         weight = excluded.weight,
                         confidence = excluded.confidence,
                         rationale = excluded.rationale,
                         updated_at = excluded.updated_at""",
                    (
                        record.id,
                        record.agent.value,
                        record.weight,
                        record.confidence,
                        record.rationale,
                        now.isoformat(),
                        now.isoformat(),
                    ),
                )
            await self.conn.commit()

        stored = {p.agent: p for p in await self.list_priorities()}
        return [stored[r.agent] for r in records if r.agent in stored]

    async def list_priorities(self, limit: int = 0) -> list[PriorityRecord]:
        sql = "SELECT * FROM agent_priority ORDER BY updated_at DESC"
        params: tuple = ()
        if limit:
            sql += " LIMIT ?"
            params = (limit,)
        cursor = await self.conn.execute(sql, params)
        rows = await cursor.fetchall()
        return [
            PriorityRecord(
                id=row["id"],
                agent=AgentRole(row["agent"]),
                weight=row["weight"],
                confidence=row["confidence"],
                rationale=row["rationale"] or "",
                updated_at=datetime.fromisoformat(row["updated_at"]),
            )
            for row in rows
        ]

    # ── Recovery log (append-only) ────────────────────────────

    async def append_recovery(self, record: RecoveryRecord) -> RecoveryRecord:
        async with self._lock:
            await self.conn.execute(
                """INSERT INTO recovery_log
                   (id, agent, action, reason, trust_score_before,
                    trust_score_after, trace_id, created_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    record.id,
                    record.agent.value,
                    record.action,
                    record.reason,
                    record.trust_score_before,
                    record.trust_score_after,
                    record.trace_id,
                    record.created_at.isoformat(),
                ),
            )
            await self.conn.commit()
        return record

    async def list_recovery(self, limit: int = 20) -> list[RecoveryRecord]:
        cursor = await self.conn.execute(
            "SELECT * FROM recovery_log ORDER BY created_at DESC LIMIT ?", (limit,),
        )
        rows = await cursor.fetchall()
        return [
            RecoveryRecord(
                id=row["id"],
                agent=AgentRole(row["agent"]),
                action=row["action"],
                reason=row["reason"] or "",
                trust_score_before=row["trust_score_before"] or 0.0,
                trust_score_after=row["trust_score_after"] or 0.0,
                trace_id=row["trace_id"],
                created_at=datetime.fromisoformat(row["created_at"]),
            )
            for row in rows
        ]

    # ── Event audit log ───────────────────────────────────────

    async def append_event_log(self, record: EventLogRecord) -> EventLogRecord:
        async with self._lock:
            await self.conn.execute(
                """INSERT INTO agent_event_log
                   (id, trace_id, event_type, source_agent, target_agent,
                    priority, summary, payload, recommendation_id, created_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    record.id,
                    record.trace_id,
                    record.event_type,
                    record.source_agent,
                    record.target_agent,
                    record.priority,
                    record.summary,
                    orjson.dumps(record.payload).decode(),
                    record.recommendation_id,
                    record.created_at.isoformat(),
                ),
            )
            await self.conn.commit()
        return record

    async def latest_event_log(
        self, recommendation_id: str, event_type: str,
    ) -> EventLogRecord | None:
        cursor = await self.conn.execute(
            """SELECT * FROM agent_event_log
               WHERE recommendation_id = ? AND event_type = ?
               ORDER BY created_at DESC LIMIT 1""",
            (recommendation_id, event_type),
        )
        row = await cursor.fetchone()
        if row is None:
            return None
        return EventLogRecord(
            id=row["id"],
            trace_id=row["trace_id"],
            event_type=row["event_type"],
            source_agent=row["source_agent"],
            target_agent=row["target_agent"],
            priority=row["priority"],
            summary=row["summary"] or "",
            payload=orjson.loads(row["payload"]) if row["payload"] else {},
            recommendation_id=row["recommendation_id"],
            created_at=datetime.fromisoformat(row["created_at"]),
        )

    async def count_event_log(self) -> int:
        cursor = await self.conn.execute("SELECT COUNT(*) FROM agent_event_log")
        row = await cursor.fetchone()
        return row[0]

    # ── Federation metrics ────────────────────────────────────

    async def upsert_federation_metrics(
        self, record: FederationMetricsRecord,
    ) -> FederationMetricsRecord:
        async with self._lock:
            await self.conn.execute(
                """INSERT INTO federation_metrics
                   (cycle_id, tenant_id, participants, average_trust, median_trust,
                    trust_std_deviation, highest_tenant, highest_trust,
                    lowest_tenant, lowest_trust, average_latency_ms,
                    aggregated_priorities, summary, network_health, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                   ON CONFLICT(cycle_id, tenant_id) DO UPDATE SET
                     participants = excluded.participants,
                     average_trust = excluded.average_trust,
                     median_trust = excluded.median_trust,
                     trust_std_deviation = excluded.trust_std_deviation,
                     highest_tenant = excluded.highest_tenant,
                     highest_trust = excluded.highest_trust,
                     lowest_tenant = excluded.lowest_tenant,
                     lowest_trust = excluded.lowest_trust,
                     average_latency_ms = excluded.average_latency_ms,
                     aggregated_priorities = excluded.aggregated_priorities,
                     summary = excluded.summary,
                     network_health = excluded.network_health,
                     updated_at = excluded.updated_at""",
                (
                    record.cycle_id,
                    record.tenant_id,
                    record.participants,
                    record.average_trust,
                    record.median_trust,
                    record.trust_std_deviation,
                    record.highest_tenant,
                    record.highest_trust,
                    record.lowest_tenant,
                    record.lowest_trust,
                    record.average_latency_ms,
                    orjson.dumps(record.aggregated_priorities).decode(),
                    record.summary,
                    record.network_health,
                    record.updated_at.isoformat(),
                ),
            )
            await self.conn.commit()
        return record

    async def list_federation_metrics(self, limit: int = 20) -> list[FederationMetricsRecord]:
        cursor = await self.conn.execute(
            "SELECT * FROM federation_metrics ORDER BY updated_at DESC LIMIT ?", (limit,),
        )
        rows = await cursor.fetchall()
        return [
            FederationMetricsRecord(
                cycle_id=row["cycle_id"],
                tenant_id=row["tenant_id"],
                participants=row["participants"],
                average_trust=row["average_trust"],
                median_trust=row["median_trust"],
                trust_std_deviation=row["trust_std_deviation"],
                highest_tenant=row["highest_tenant"],
                highest_trust=row["highest_trust"],
                lowest_tenant=row["lowest_tenant"],
                lowest_trust=row["lowest_trust"],
                average_latency_ms=row["average_latency_ms"],
                aggregated_priorities=orjson.loads(row["aggregated_priorities"] or "[]"),
                summary=row["summary"] or "",
                network_health=row["network_health"],
                updated_at=datetime.fromisoformat(row["updated_at"]),
            )
            for row in rows
        ]

    async def reset(self) -> None:
        """Wipe every table. Tests only."""
        async with self._lock:
            for table in (
                "optimization_log", "agent_priority", "recovery_log",
                "agent_event_log", "federation_metrics",
            ):
                await self.conn.execute(f"DELETE FROM {table}")
            await self.conn.commit()

    def __repr__(self) -> str:
        return f"Database(path={self._db_path!r})"


