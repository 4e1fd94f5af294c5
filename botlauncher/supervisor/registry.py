"""SQLite-backed store for instance records and launcher settings."""

from __future__ import annotations

import json
import logging
from datetime import datetime
from pathlib import Path

from .database import get_db, init_db
from .models import InstanceRecord, ProxyConfig

logger = logging.getLogger("botlauncher.supervisor.registry")

KEEP_ALIVE_SETTING = "redis_keep_alive"


def _record_from_row(row) -> InstanceRecord:
    proxy = None
    if row["proxy"]:
        try:
            proxy = ProxyConfig.model_validate(json.loads(row["proxy"]))
        except (ValueError, TypeError):
            logger.warning("Ignoring malformed proxy settings for instance %s", row["id"])
    return InstanceRecord(
        id=row["id"],
        name=row["name"],
        path=row["path"],
        type=row["type"],
        port=row["port"],
        proxy=proxy,
        auto_start=bool(row["auto_start"]),
        redis_mode=row["redis_mode"],
        is_imported=bool(row["is_imported"]),
        created_at=datetime.fromisoformat(row["created_at"]),
    )


def _record_params(record: InstanceRecord) -> tuple:
    proxy_json = json.dumps(record.proxy.model_dump()) if record.proxy else None
    return (
        record.id,
        record.name,
        record.path,
        record.type.value,
        record.port,
        proxy_json,
        int(record.auto_start),
        record.redis_mode.value,
        int(record.is_imported),
        record.created_at.isoformat(),
    )


_UPSERT_SQL = """
    INSERT INTO instances (
        id, name, path, type, port, proxy, auto_start, redis_mode, is_imported, created_at
    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
    ON CONFLICT(id) DO UPDATE SET
        name = excluded.name,
        path = excluded.path,
        type = excluded.type,
        port = excluded.port,
        proxy = excluded.proxy,
        auto_start = excluded.auto_start,
        redis_mode = excluded.redis_mode,
        is_imported = excluded.is_imported
"""


class InstanceRegistry:
    """Load and persist instance metadata; the supervisor only reads it."""

    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)

    async def initialize(self) -> None:
        await init_db(self.db_path)

    async def load_records(self) -> list[InstanceRecord]:
        rows = []
        async for db in get_db(self.db_path):
            async with db.execute("SELECT * FROM instances ORDER BY created_at ASC, id ASC") as cursor:
                rows = await cursor.fetchall()
        return [_record_from_row(row) for row in rows]

    async def get_record(self, instance_id: str) -> InstanceRecord | None:
        row = None
        async for db in get_db(self.db_path):
            async with db.execute("SELECT * FROM instances WHERE id = ?", (instance_id,)) as cursor:
                row = await cursor.fetchone()
        return _record_from_row(row) if row else None

    async def save_record(self, record: InstanceRecord) -> None:
        await self.save_records([record])

    async def save_records(self, records: list[InstanceRecord]) -> None:
        async for db in get_db(self.db_path):
            await db.executemany(_UPSERT_SQL, [_record_params(record) for record in records])
            await db.commit()

    async def delete_record(self, instance_id: str) -> None:
        async for db in get_db(self.db_path):
            await db.execute("DELETE FROM instances WHERE id = ?", (instance_id,))
            await db.commit()

    async def get_setting(self, key: str, default: str | None = None) -> str | None:
        row = None
        async for db in get_db(self.db_path):
            async with db.execute("SELECT value FROM system_settings WHERE key = ?", (key,)) as cursor:
                row = await cursor.fetchone()
        return row["value"] if row else default

    async def set_setting(self, key: str, value: str) -> None:
        async for db in get_db(self.db_path):
            await db.execute(
                """
                INSERT INTO system_settings (key, value)
                VALUES (?, ?)
                ON CONFLICT(key) DO UPDATE SET value = excluded.value
                """,
                (key, value),
            )
            await db.commit()

    async def get_keep_alive(self) -> bool:
        value = await self.get_setting(KEEP_ALIVE_SETTING, "false")
        return str(value).strip().lower() == "true"

    async def set_keep_alive(self, enabled: bool) -> None:
        await self.set_setting(KEEP_ALIVE_SETTING, "true" if enabled else "false")
