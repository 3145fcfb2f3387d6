"""
Machine Metrics Hub - Database Module

SQLite metrics store: raw samples, hourly and daily summaries, the machine
registry table and key/value configuration.
"""

import asyncio
import json
import sqlite3
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

import aiosqlite
import structlog

from db.migrations import run_migrations
from models import SAMPLE_FIELDS, Resolution, Sample, now_ms, summary_columns

logger = structlog.get_logger(__name__)

RAW_COLUMNS = ("machine_id", "timestamp") + SAMPLE_FIELDS
SUMMARY_COLUMNS = tuple(summary_columns())


class StoreNotConnected(RuntimeError):
    """Raised when the store is used before connect() or after close()."""


class MetricsStore:
    """
    Async SQLite store shared by every component.

    One connection, one writer: every statement goes through a single lock so
    readers never see a batch or a summary recomputation half applied.
    Range reads are half-open, [start, end), on the tier's time column.
    """

    def __init__(self, db_path: str):
        self.db_path = db_path
        self._db: Optional[aiosqlite.Connection] = None
        self._lock = asyncio.Lock()

    @property
    def is_connected(self) -> bool:
        return self._db is not None

    async def connect(self):
        """Open the connection and bring the schema up to date."""
        if self._db:
            return

        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        self._db = await aiosqlite.connect(self.db_path)
        self._db.row_factory = aiosqlite.Row
        await self._db.execute("PRAGMA journal_mode=WAL")
        await self._db.execute("PRAGMA synchronous=NORMAL")
        await run_migrations(self._db)
        logger.info("Metrics database initialized", path=self.db_path)

    async def close(self):
        if self._db:
            await self._db.close()
            self._db = None
            logger.info("Database connection closed")

    def _conn(self) -> aiosqlite.Connection:
        if not self._db:
            raise StoreNotConnected("Database not initialized")
        return self._db

    # === Samples ===

    async def insert_sample(self, sample: Sample):
        await self.insert_samples([sample])

    async def insert_samples(self, samples: Iterable[Sample]) -> int:
        """Insert a batch atomically: all rows persist or none do."""
        samples = list(samples)
        if not samples:
            return 0

        last_seen: Dict[str, int] = {}
        for sample in samples:
            last_seen[sample.machine_id] = max(last_seen.get(sample.machine_id, 0), sample.timestamp)

        placeholders = ", ".join("?" for _ in RAW_COLUMNS)
        db = self._conn()
        async with self._lock:
            try:
                await db.executemany(
                    f"INSERT INTO metrics_raw ({', '.join(RAW_COLUMNS)}) VALUES ({placeholders})",
                    [s.to_row() for s in samples]
                )
                await db.executemany(
                    """INSERT INTO machines (machine_id, display_name, last_seen)
                       VALUES (?, ?, ?)
                       ON CONFLICT(machine_id) DO UPDATE SET
                           last_seen = MAX(COALESCE(last_seen, 0), excluded.last_seen)""",
                    [(machine_id, machine_id, ts) for machine_id, ts in last_seen.items()]
                )
                await db.commit()
            except Exception:
                await db.rollback()
                raise

        return len(samples)

    # === Range reads ===

    async def read_range(
        self,
        resolution: Resolution,
        machine_id: str,
        start: int,
        end: int,
    ) -> List[Dict[str, Any]]:
        """Rows of one tier for one machine with time in [start, end), ascending."""
        resolution = Resolution(resolution)
        columns = RAW_COLUMNS if resolution is Resolution.RAW else SUMMARY_COLUMNS
        time_column = resolution.time_column
        order = "timestamp, id" if resolution is Resolution.RAW else "bucket_start"

        db = self._conn()
        async with self._lock:
            cursor = await db.execute(
                f"""SELECT {', '.join(columns)} FROM {resolution.table}
                    WHERE machine_id = ? AND {time_column} >= ? AND {time_column} < ?
                    ORDER BY {order}""",
                (machine_id, start, end)
            )
            rows = await cursor.fetchall()

        return [dict(row) for row in rows]

    # === Summaries ===

    async def upsert_summary(self, resolution: Resolution, summary: Dict[str, Any]):
        """Insert or replace the summary keyed by (machine_id, bucket_start)."""
        resolution = Resolution(resolution)
        if resolution is Resolution.RAW:
            raise ValueError("Raw samples are immutable; only summaries can be upserted")

        placeholders = ", ".join("?" for _ in SUMMARY_COLUMNS)
        db = self._conn()
        async with self._lock:
            try:
                await db.execute(
                    f"INSERT OR REPLACE INTO {resolution.table} ({', '.join(SUMMARY_COLUMNS)}) VALUES ({placeholders})",
                    tuple(summary.get(column) for column in SUMMARY_COLUMNS)
                )
                await db.commit()
            except Exception:
                await db.rollback()
                raise

    # === Retention ===

    async def delete_older_than(
        self,
        resolution: Resolution,
        cutoff: int,
        machine_id: Optional[str] = None,
    ) -> int:
        """Delete rows of one tier with time < cutoff. Returns rows removed."""
        resolution = Resolution(resolution)
        sql = f"DELETE FROM {resolution.table} WHERE {resolution.time_column} < ?"
        params: tuple = (cutoff,)
        if machine_id is not None:
            sql += " AND machine_id = ?"
            params = (cutoff, machine_id)

        db = self._conn()
        async with self._lock:
            try:
                cursor = await db.execute(sql, params)
                deleted = cursor.rowcount
                await db.commit()
            except Exception:
                await db.rollback()
                raise

        return deleted

    async def checkpoint(self):
        """Truncate the WAL after large deletions."""
        db = self._conn()
        async with self._lock:
            await db.execute("PRAGMA wal_checkpoint(TRUNCATE)")

    # === Machines ===

    async def upsert_machine(
        self,
        machine_id: str,
        hostname: Optional[str] = None,
        display_name: Optional[str] = None,
        ip_address: Optional[str] = None,
        last_seen: Optional[int] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ):
        """
        Create or update a machine.

        Identity fields left as None keep their stored value, metadata is
        replaced wholesale only when given, and last_seen never moves back.
        """
        params = {
            "machine_id": machine_id,
            "hostname": hostname,
            "display_name": display_name,
            "ip_address": ip_address,
            "last_seen": last_seen if last_seen is not None else now_ms(),
            "metadata": json.dumps(metadata) if metadata else None,
            "now": now_ms(),
        }

        db = self._conn()
        async with self._lock:
            try:
                await db.execute(
                    """INSERT INTO machines
                           (machine_id, hostname, display_name, ip_address, last_seen, metadata, updated_at)
                       VALUES
                           (:machine_id, :hostname, COALESCE(:display_name, :hostname, :machine_id),
                            :ip_address, :last_seen, :metadata, :now)
                       ON CONFLICT(machine_id) DO UPDATE SET
                           hostname = COALESCE(:hostname, hostname),
                           display_name = COALESCE(:display_name, display_name),
                           ip_address = COALESCE(:ip_address, ip_address),
                           last_seen = MAX(COALESCE(last_seen, 0), :last_seen),
                           metadata = COALESCE(:metadata, metadata),
                           updated_at = :now""",
                    params
                )
                await db.commit()
            except Exception:
                await db.rollback()
                raise

    async def get_machine(self, machine_id: str) -> Optional[Dict[str, Any]]:
        db = self._conn()
        async with self._lock:
            cursor = await db.execute("SELECT * FROM machines WHERE machine_id = ?", (machine_id,))
            row = await cursor.fetchone()
        return dict(row) if row else None

    async def list_machines(self) -> List[Dict[str, Any]]:
        """Every known machine, active or not."""
        db = self._conn()
        async with self._lock:
            cursor = await db.execute("SELECT * FROM machines ORDER BY machine_id")
            rows = await cursor.fetchall()
        return [dict(row) for row in rows]

    async def list_active_machines(self) -> List[Dict[str, Any]]:
        """Active machines, most recently seen first."""
        db = self._conn()
        async with self._lock:
            cursor = await db.execute(
                "SELECT * FROM machines WHERE is_active = 1 ORDER BY last_seen DESC, machine_id"
            )
            rows = await cursor.fetchall()
        return [dict(row) for row in rows]

    async def set_machine_active(self, machine_id: str, active: bool) -> bool:
        db = self._conn()
        async with self._lock:
            cursor = await db.execute(
                "UPDATE machines SET is_active = ?, updated_at = ? WHERE machine_id = ?",
                (1 if active else 0, now_ms(), machine_id)
            )
            await db.commit()
        return cursor.rowcount > 0

    # === Configuration ===

    async def get_config(self, key: str, default: Optional[str] = None) -> Optional[str]:
        db = self._conn()
        async with self._lock:
            cursor = await db.execute("SELECT value FROM db_metadata WHERE key = ?", (key,))
            row = await cursor.fetchone()
        return row[0] if row else default

    async def set_config(self, key: str, value: Any):
        db = self._conn()
        async with self._lock:
            await db.execute(
                "INSERT OR REPLACE INTO db_metadata (key, value, updated_at) VALUES (?, ?, ?)",
                (key, str(value), now_ms())
            )
            await db.commit()

    async def get_all_config(self) -> Dict[str, str]:
        db = self._conn()
        async with self._lock:
            cursor = await db.execute("SELECT key, value FROM db_metadata ORDER BY key")
            rows = await cursor.fetchall()
        return {row[0]: row[1] for row in rows}

    # === Statistics ===

    async def table_stats(self, machine_id: str) -> Dict[str, Dict[str, Any]]:
        """Row count, oldest time and estimated bytes per tier for one machine."""
        stats = {}
        db = self._conn()
        async with self._lock:
            for resolution in Resolution:
                table, column = resolution.table, resolution.time_column
                cursor = await db.execute(
                    f"SELECT COUNT(*), MIN({column}) FROM {table} WHERE machine_id = ?",
                    (machine_id,)
                )
                count, oldest = await cursor.fetchone()

                cursor = await db.execute(f"SELECT COUNT(*) FROM {table}")
                (table_rows,) = await cursor.fetchone()
                table_bytes = await self._table_bytes(db, table)

                estimated = None
                if table_bytes is not None:
                    estimated = int(table_bytes * count / table_rows) if table_rows else 0

                stats[resolution.value] = {
                    "count": count,
                    "oldest": oldest,
                    "estimated_bytes": estimated,
                }
        return stats

    async def _table_bytes(self, db: aiosqlite.Connection, table: str) -> Optional[int]:
        # dbstat is a compile-time option of SQLite
        try:
            cursor = await db.execute("SELECT SUM(pgsize) FROM dbstat WHERE name = ?", (table,))
        except sqlite3.OperationalError:
            return None
        row = await cursor.fetchone()
        return row[0] or 0

    async def database_size(self) -> int:
        db = self._conn()
        async with self._lock:
            cursor = await db.execute("PRAGMA page_count")
            (page_count,) = await cursor.fetchone()
            cursor = await db.execute("PRAGMA page_size")
            (page_size,) = await cursor.fetchone()
        return page_count * page_size
