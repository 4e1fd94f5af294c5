"""Database migrations for launcher tables."""

import logging

import aiosqlite

logger = logging.getLogger("botlauncher.supervisor.migrations")

MIGRATIONS: list[tuple[str, str]] = [
    (
        "20260301_create_instances",
        """
        CREATE TABLE IF NOT EXISTS instances (
            id TEXT PRIMARY KEY,
            name TEXT NOT NULL,
            path TEXT NOT NULL,
            type TEXT NOT NULL,
            port INTEGER,
            proxy TEXT,
            auto_start INTEGER NOT NULL DEFAULT 0,
            redis_mode TEXT NOT NULL DEFAULT 'shared',
            is_imported INTEGER NOT NULL DEFAULT 0,
            created_at TEXT NOT NULL
        )
        """,
    ),
    (
        "20260301_create_instances_name_index",
        """
        CREATE INDEX IF NOT EXISTS idx_instances_name ON instances(name)
        """,
    ),
    (
        "20260301_create_system_settings",
        """
        CREATE TABLE IF NOT EXISTS system_settings (
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL
        )
        """,
    ),
    (
        "20260301_seed_default_system_settings",
        """
        INSERT OR IGNORE INTO system_settings (key, value) VALUES
            ('redis_keep_alive', 'false')
        """,
    ),
]


async def run_migrations(db: aiosqlite.Connection) -> None:
    """Apply one-time database migrations in order."""
    logger.info("Running launcher DB migrations...")
    await db.execute(
        """
        CREATE TABLE IF NOT EXISTS schema_migrations (
            id TEXT PRIMARY KEY,
            applied_at TEXT DEFAULT CURRENT_TIMESTAMP
        )
        """
    )

    async with db.execute("SELECT id FROM schema_migrations") as cursor:
        rows = await cursor.fetchall()
    applied = {row[0] for row in rows}

    for migration_id, sql in MIGRATIONS:
        if migration_id in applied:
            logger.debug("Migration already applied: %s", migration_id)
            continue
        logger.info("Applying migration: %s", migration_id)
        await db.execute(sql)
        await db.execute(
            "INSERT INTO schema_migrations (id) VALUES (?)",
            (migration_id,),
        )

    await db.commit()
    logger.info("Launcher DB migrations complete.")
