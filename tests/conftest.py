"""Shared test fixtures: temp-file database, in-memory stream, orchestrator."""

from __future__ import annotations

import tempfile
from pathlib import Path

import pytest
import pytest_asyncio

from optiloop.events.stream import MemoryStream
from optiloop.kernel.orchestrator import Orchestrator
from optiloop.persistence.database import Database
from optiloop.persistence.models import OutcomeRecord, OutcomeStatus, PolicyStatus


@pytest_asyncio.fixture
async def db():
    with tempfile.TemporaryDirectory() as tmp:
        database = Database(str(Path(tmp) / "optiloop.db"))
        await database.initialize()
        yield database
        await database.close()


@pytest.fixture
def stream():
    return MemoryStream(max_length=1000)


@pytest.fixture
def orchestrator(stream, db):
    return Orchestrator(stream, database=db, max_length=200)


@pytest.fixture
def record_outcomes(db):
    """Seed the trust counters: ``await record_outcomes(applied=8, rejected=2)``."""

    async def _record(
        applied: int = 0,
        rejected: int = 0,
        rollbacks: int = 0,
        blocked: int = 0,
    ) -> None:
        for i in range(applied):
            await db.record_outcome(OutcomeRecord(
                recommendation_id=f"rec-a{i}",
                route="/invoices",
                status=OutcomeStatus.APPLIED,
                rollback=i < rollbacks,
            ))
        for i in range(rejected):
            await db.record_outcome(OutcomeRecord(
                recommendation_id=f"rec-r{i}",
                route="/invoices",
                status=OutcomeStatus.REJECTED,
                policy_status=PolicyStatus.BLOCKED if i < blocked else PolicyStatus.ALLOWED,
            ))

    return _record
