"""Schema migrations for the durable store.

Each ``m_NNN_<name>.py`` module in this package defines
``async def upgrade(db: aiosqlite.Connection)``. ``Database.initialize``
runs whatever is pending on its own connection. An upgrade and its
``schema_version`` row are committed together or not at all, so a
failed migration leaves the store at the previous version.
"""

from __future__ import annotations

import importlib
import logging
from pathlib import Path
from typing import Awaitable, Callable, NamedTuple

import aiosqlite

from optiloop.exceptions import MigrationError
from optiloop.types import iso_now

_logger = logging.getLogger(__name__)

MIGRATIONS_DIR = Path(__file__).parent
MIGRATION_PREFIX = "m_"


class Migration(NamedTuple):
    version: int
    name: str
    upgrade: Callable[[aiosqlite.Connection], Awaitable[None]]


def discover_migrations() -> list[Migration]:
    """Every migration module in this package, ordered by version."""
    found: dict[int, Migration] = {}
    for path in sorted(MIGRATIONS_DIR.glob(f"{MIGRATION_PREFIX}*.py")):
        # m_002_federation_metrics -> (2, "federation_metrics")
        number, _, name = path.stem[len(MIGRATION_PREFIX):].partition("_")
        if not number.isdigit():
            continue
        version = int(number)
        if version in found:
            raise MigrationError(
                f"Duplicate migration version {version}: "
                f"'{found[version].name}' and '{name}'"
            )
        module = importlib.import_module(f"{__package__}.{path.stem}")
        found[version] = Migration(version, name or path.stem, module.upgrade)
    return [found[v] for v in sorted(found)]


async def get_schema_version(db: aiosqlite.Connection) -> int:
    await db.execute(
        "CREATE TABLE IF NOT EXISTS schema_version ("
        "version INTEGER PRIMARY KEY, "
        "name TEXT NOT NULL DEFAULT '', "
        "applied_at TEXT NOT NULL)"
    )
    await db.commit()

    cursor = await db.execute("SELECT MAX(version) FROM schema_version")
    row = await cursor.fetchone()
    return row[0] if row[0] is not None else 0


async def apply_migrations(
    db: aiosqlite.Connection, migrations: list[Migration] | None = None,
) -> list[int]:
    """Apply pending migrations in version order. Returns the versions applied."""
    current = await get_schema_version(db)
    pending = [
        m for m in (discover_migrations() if migrations is None else migrations)
        if m.version > current
    ]

    applied: list[int] = []
    for migration in pending:
        await db.execute("BEGIN")
        try:
            await migration.upgrade(db)
            await db.execute(
                "INSERT INTO schema_version (version, name, applied_at) VALUES (?, ?, ?)",
                (migration.version, migration.name, iso_now()),
            )
        except Exception as e:
            await db.rollback()
            raise MigrationError(
                f"Migration {migration.version:03d} ({migration.name}) failed: {e}"
            ) from e
        await db.commit()

        _logger.info("Applied migration %03d (%s)", migration.version, migration.name)
        applied.append(migration.version)

    return applied
