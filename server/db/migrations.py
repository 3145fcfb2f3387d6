"""
Machine Metrics Hub - Database Migrations

Handles schema migrations and initial configuration values.
"""

import asyncio
import sys

import aiosqlite
import structlog

from models import GAUGE_FIELDS, RATE_FIELDS

logger = structlog.get_logger(__name__)

DEFAULT_RETENTION = {
    "retention_days_raw": "7",
    "retention_days_hourly": "90",
    "retention_days_daily": "0",
}


async def run_migrations(db: aiosqlite.Connection):
    """Run all pending migrations on an open connection."""
    await db.execute("""
        CREATE TABLE IF NOT EXISTS migrations (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            name TEXT UNIQUE NOT NULL,
            applied_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        )
    """)
    await db.commit()

    cursor = await db.execute("SELECT name FROM migrations")
    applied = {row[0] for row in await cursor.fetchall()}

    migrations = [
        ("001_initial_schema", migrate_001_initial_schema),
        ("002_machines", migrate_002_machines),
        ("003_default_metadata", migrate_003_default_metadata),
    ]

    for name, func in migrations:
        if name not in applied:
            await func(db)
            await db.execute("INSERT INTO migrations (name) VALUES (?)", (name,))
            await db.commit()
            logger.info("Migration applied", migration=name)


def _summary_table_sql(table: str) -> str:
    columns = []
    for name in GAUGE_FIELDS:
        columns.extend([f"{name}_avg REAL", f"{name}_min REAL", f"{name}_max REAL"])
    for prefix in RATE_FIELDS.values():
        columns.extend([f"{prefix}_avg REAL", f"{prefix}_total REAL"])
    body = ",\n            ".join(columns)
    return f"""
        CREATE TABLE IF NOT EXISTS {table} (
            machine_id TEXT NOT NULL,
            bucket_start INTEGER NOT NULL,
            sample_count INTEGER NOT NULL,
            {body},
            created_at INTEGER DEFAULT (CAST(strftime('%s', 'now') AS INTEGER) * 1000),
            PRIMARY KEY (machine_id, bucket_start)
        )
    """


async def migrate_001_initial_schema(db):
    """Metric tiers and key/value metadata."""
    await db.execute("""
        CREATE TABLE IF NOT EXISTS metrics_raw (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            machine_id TEXT NOT NULL,
            timestamp INTEGER NOT NULL,
            cpu_load REAL,
            cpu_temp REAL,
            ram_total REAL,
            ram_used REAL,
            ram_percent REAL,
            swap_total REAL,
            swap_used REAL,
            swap_percent REAL,
            gpu_utilization REAL,
            gpu_temp REAL,
            gpu_mem_used REAL,
            gpu_mem_total REAL,
            network_rx_sec REAL,
            network_tx_sec REAL,
            created_at INTEGER DEFAULT (CAST(strftime('%s', 'now') AS INTEGER) * 1000)
        )
    """)

    await db.execute(_summary_table_sql("metrics_hourly"))
    await db.execute(_summary_table_sql("metrics_daily"))

    await db.execute("""
        CREATE TABLE IF NOT EXISTS db_metadata (
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL,
            updated_at INTEGER DEFAULT (CAST(strftime('%s', 'now') AS INTEGER) * 1000)
        )
    """)

    await db.execute("CREATE INDEX IF NOT EXISTS idx_metrics_raw_machine ON metrics_raw(machine_id, timestamp)")
    await db.execute("CREATE INDEX IF NOT EXISTS idx_metrics_raw_timestamp ON metrics_raw(timestamp)")
    await db.execute("CREATE INDEX IF NOT EXISTS idx_metrics_hourly_start ON metrics_hourly(bucket_start)")
    await db.execute("CREATE INDEX IF NOT EXISTS idx_metrics_daily_start ON metrics_daily(bucket_start)")


async def migrate_002_machines(db):
    """Machine registry."""
    await db.execute("""
        CREATE TABLE IF NOT EXISTS machines (
            machine_id TEXT PRIMARY KEY,
            hostname TEXT,
            display_name TEXT,
            ip_address TEXT,
            last_seen INTEGER,
            is_active INTEGER NOT NULL DEFAULT 1,
            metadata TEXT,
            created_at INTEGER DEFAULT (CAST(strftime('%s', 'now') AS INTEGER) * 1000),
            updated_at INTEGER DEFAULT (CAST(strftime('%s', 'now') AS INTEGER) * 1000)
        )
    """)
    await db.execute("CREATE INDEX IF NOT EXISTS idx_machines_active ON machines(is_active, last_seen)")


async def migrate_003_default_metadata(db):
    """Schema version and default retention windows."""
    await db.execute(
        "INSERT OR IGNORE INTO db_metadata (key, value) VALUES ('schema_version', '1')"
    )
    for key, value in DEFAULT_RETENTION.items():
        await db.execute(
            "INSERT OR IGNORE INTO db_metadata (key, value) VALUES (?, ?)",
            (key, value)
        )


async def _migrate_file(db_path: str):
    async with aiosqlite.connect(db_path) as db:
        await run_migrations(db)


if __name__ == "__main__":
    db_path = sys.argv[1] if len(sys.argv) > 1 else "data/metrics.db"
    asyncio.run(_migrate_file(db_path))
