"""Data-source lookup: which sources each work item has and when it was last processed.

The job engine only needs a handful of per-item facts; the host application
owns the real contact/campaign tables and either implements
``DataSourceLookup`` over them or mirrors the facts into the ``work_items``
table managed by ``SqliteSourceLookup``.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional, Protocol, Sequence

import aiosqlite

PRIMARY = "primary"
SECONDARY = "secondary"


@dataclass
class ItemSources:
    """Per-item facts consumed by the eligibility classifier and the processor."""

    item_id: str
    owner_id: str
    primary_source: Optional[str] = None      # e.g. company website URL
    secondary_source: Optional[str] = None    # e.g. profile URL, lower confidence
    last_processed_at: Optional[datetime] = None
    in_flight: bool = False

    @property
    def has_primary(self) -> bool:
        return bool(self.primary_source)

    @property
    def has_secondary(self) -> bool:
        return bool(self.secondary_source)

    @property
    def has_any_source(self) -> bool:
        return self.has_primary or self.has_secondary

    def source_type(self) -> Optional[str]:
        """Strategy key for this item; primary wins when both are present."""
        if self.has_primary:
            return PRIMARY
        if self.has_secondary:
            return SECONDARY
        return None


class DataSourceLookup(Protocol):
    async def get_sources(self, item_ids: Sequence[str], owner_id: str) -> Dict[str, ItemSources]:
        ...

    async def mark_in_flight(self, item_id: str, owner_id: str) -> None:
        ...

    async def mark_processed(self, item_id: str, owner_id: str, at: Optional[datetime] = None) -> None:
        ...

    async def mark_failed(self, item_id: str, owner_id: str) -> None:
        ...


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    ts = datetime.fromisoformat(value)
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


class SqliteSourceLookup:
    """``DataSourceLookup`` over a ``work_items`` table in SQLite."""

    def __init__(self, db_path: str = "bulk_jobs.db") -> None:
        self.db_path = db_path
        self._db: Optional[aiosqlite.Connection] = None
        self._lock = asyncio.Lock()

    async def initialize(self) -> None:
        async with self._lock:
            if self._db is not None:
                return
            db = await aiosqlite.connect(self.db_path)
            await db.execute("""
                CREATE TABLE IF NOT EXISTS work_items (
                    item_id TEXT PRIMARY KEY,
                    owner_id TEXT NOT NULL,
                    primary_source TEXT,
                    secondary_source TEXT,
                    last_processed_at TEXT,
                    in_flight INTEGER NOT NULL DEFAULT 0
                )
            """)
            await db.execute(
                "CREATE INDEX IF NOT EXISTS ix_work_items_owner ON work_items (owner_id)"
            )
            await db.commit()
            self._db = db

    async def close(self) -> None:
        if self._db:
            await self._db.close()
            self._db = None

    async def _conn(self) -> aiosqlite.Connection:
        if self._db is None:
            await self.initialize()
        return self._db

    async def upsert_item(self, item: ItemSources) -> None:
        """Register or refresh an item's source facts."""
        db = await self._conn()
        async with self._lock:
            await db.execute(
                """
                INSERT INTO work_items (item_id, owner_id, primary_source, secondary_source,
                                        last_processed_at, in_flight)
                VALUES (?,?,?,?,?,?)
                ON CONFLICT (item_id) DO UPDATE SET
                    owner_id = excluded.owner_id,
                    primary_source = excluded.primary_source,
                    secondary_source = excluded.secondary_source,
                    last_processed_at = excluded.last_processed_at,
                    in_flight = excluded.in_flight
                """,
                (
                    item.item_id,
                    item.owner_id,
                    item.primary_source,
                    item.secondary_source,
                    item.last_processed_at.isoformat() if item.last_processed_at else None,
                    int(item.in_flight),
                ),
            )
            await db.commit()

    async def upsert_items(self, items: Iterable[ItemSources]) -> None:
        for item in items:
            await self.upsert_item(item)

    async def get_sources(self, item_ids: Sequence[str], owner_id: str) -> Dict[str, ItemSources]:
        """Return facts for the owner's items; unknown or foreign ids are absent."""
        ids: List[str] = list(dict.fromkeys(item_ids))
        if not ids:
            return {}
        db = await self._conn()
        placeholders = ",".join("?" * len(ids))
        async with self._lock:
            async with db.execute(
                f"SELECT item_id, owner_id, primary_source, secondary_source, last_processed_at, in_flight "
                f"FROM work_items WHERE owner_id = ? AND item_id IN ({placeholders})",
                [owner_id, *ids],
            ) as cur:
                rows = await cur.fetchall()
        return {
            r[0]: ItemSources(
                item_id=r[0],
                owner_id=r[1],
                primary_source=r[2],
                secondary_source=r[3],
                last_processed_at=_parse_ts(r[4]),
                in_flight=bool(r[5]),
            )
            for r in rows
        }

    async def mark_in_flight(self, item_id: str, owner_id: str) -> None:
        await self._set(item_id, owner_id, "in_flight = 1")

    async def mark_processed(self, item_id: str, owner_id: str, at: Optional[datetime] = None) -> None:
        ts = (at or datetime.now(timezone.utc)).isoformat()
        await self._set(item_id, owner_id, "in_flight = 0, last_processed_at = ?", ts)

    async def mark_failed(self, item_id: str, owner_id: str) -> None:
        await self._set(item_id, owner_id, "in_flight = 0")

    async def _set(self, item_id: str, owner_id: str, assignments: str, *values) -> None:
        db = await self._conn()
        async with self._lock:
            await db.execute(
                f"UPDATE work_items SET {assignments} WHERE item_id = ? AND owner_id = ?",
                (*values, item_id, owner_id),
            )
            await db.commit()
