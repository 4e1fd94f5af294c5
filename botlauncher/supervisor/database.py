"""Database initialization and connection helpers for the launcher."""

import logging
from pathlib import Path

import aiosqlite

from .migrations import run_migrations

logger = logging.getLogger("botlauncher.supervisor.database")


async def ensure_db_path(db_path: Path) -> Path:
    """Ensure the directory exists and return the DB path."""
    db_path.parent.mkdir(parents=True, exist_ok=True)
    return db_path


async def init_db(db_path: Path) -> None:
    """Initialize the database with required tables."""
    db_path = await ensure_db_path(db_path)
    logger.info("Initializing launcher database at %s", db_path)
    async with aiosqlite.connect(db_path) as db:
        await run_migrations(db)


async def get_db(db_path: Path):
    """Yield a connection with dict-style rows."""
    db_path = await ensure_db_path(db_path)
    async with aiosqlite.connect(db_path) as db:
        db.row_factory = aiosqlite.Row
        yield db
