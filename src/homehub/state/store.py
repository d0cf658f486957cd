"""Local SQLite mirror of KV values, used when the KV service is unreachable."""

import asyncio
import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Any

import aiosqlite

logger = logging.getLogger(__name__)


class LocalStateStore:
    """Key/value cache persisted with SQLite."""

    def __init__(self, db_path: Path | str = "homehub_cache.db"):
        self.db_path = Path(db_path)
        self._db: aiosqlite.Connection | None = None
        self._lock = asyncio.Lock()

    async def initialize(self) -> None:
        """Initialize the database connection and schema."""
        self._db = await aiosqlite.connect(self.db_path)
        await self._db.execute("""
            CREATE TABLE IF NOT EXISTS kv_store (
                key TEXT PRIMARY KEY,
                value_json TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)
        await self._db.commit()
        logger.info(f"Initialized local cache at {self.db_path}")

    async def close(self) -> None:
        """Close the database connection."""
        if self._db:
            await self._db.close()
            self._db = None

    async def set(self, key: str, value: Any) -> None:
        if not self._db:
            return

        async with self._lock:
            await self._db.execute(
                """
                INSERT OR REPLACE INTO kv_store (key, value_json, updated_at)
                VALUES (?, ?, ?)
                """,
                (key, json.dumps(value), datetime.now().isoformat()),
            )
            await self._db.commit()

    async def get(self, key: str) -> Any | None:
        if not self._db:
            return None

        async with self._lock:
            cursor = await self._db.execute(
                "SELECT value_json FROM kv_store WHERE key = ?", (key,)
            )
            row = await cursor.fetchone()
            if row:
                return json.loads(row[0])
            return None

    async def get_updated_at(self, key: str) -> datetime | None:
        """When ``key`` was last written locally."""
        if not self._db:
            return None

        async with self._lock:
            cursor = await self._db.execute(
                "SELECT updated_at FROM kv_store WHERE key = ?", (key,)
            )
            row = await cursor.fetchone()
            return datetime.fromisoformat(row[0]) if row else None

    async def delete(self, key: str) -> None:
        if not self._db:
            return

        async with self._lock:
            await self._db.execute("DELETE FROM kv_store WHERE key = ?", (key,))
            await self._db.commit()
