import logging
from pathlib import Path

import aiosqlite

from server.config import settings

logger = logging.getLogger(__name__)

MIGRATIONS_DIR = Path(__file__).parent / "migrations"

_db: aiosqlite.Connection | None = None


async def get_db() -> aiosqlite.Connection:
    if _db is None:
        raise RuntimeError("Database not initialized. Call init_db() first.")
    return _db


async def connect(database_path: str) -> aiosqlite.Connection:
    """Open a migrated connection. ``:memory:`` is accepted for tests and scratch use."""
    in_memory = database_path == ":memory:"
    if not in_memory:
        Path(database_path).parent.mkdir(parents=True, exist_ok=True)

    conn = await aiosqlite.connect(database_path)
    conn.row_factory = aiosqlite.Row
    if not in_memory:
        await conn.execute("PRAGMA journal_mode=WAL")
    await conn.execute("PRAGMA foreign_keys=ON")
    await conn.execute("PRAGMA busy_timeout=5000")

    await run_migrations(conn)
    return conn


async def init_db() -> None:
    global _db
    _db = await connect(settings.database_path)
    logger.info("Database initialized at %s", settings.database_path)


async def close_db() -> None:
    global _db
    if _db is not None:
        await _db.close()
        _db = None
        logger.info("Database connection closed")


async def _current_version(db: aiosqlite.Connection) -> int:
    try:
        async with db.execute("SELECT MAX(version) FROM schema_version") as cursor:
            row = await cursor.fetchone()
    except aiosqlite.OperationalError:
        # Fresh database: the first migration creates schema_version.
        return 0
    return row[0] if row and row[0] else 0


async def run_migrations(db: aiosqlite.Connection, migrations_dir: Path = MIGRATIONS_DIR) -> int:
    """Apply every ``NNN_*.sql`` newer than the recorded version; return the final version."""
    current_version = await _current_version(db)

    for mf in sorted(migrations_dir.glob("*.sql")):
        version = int(mf.stem.split("_")[0])
        if version <= current_version:
            continue
        logger.info("Applying migration %s", mf.name)
        await db.executescript(mf.read_text())
        await db.execute("INSERT OR IGNORE INTO schema_version (version) VALUES (?)", (version,))
        await db.commit()
        current_version = version

    logger.info("Migrations complete (at version %d)", current_version)
    return current_version
