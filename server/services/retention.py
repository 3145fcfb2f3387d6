"""
Machine Metrics Hub - Retention Policy

Per-tier retention windows in days, stored as runtime configuration.
A window of 0 keeps that tier forever.
"""

from typing import Dict, Optional

import structlog

from db import MetricsStore
from db.migrations import DEFAULT_RETENTION
from models import DAY_MS, Resolution

logger = structlog.get_logger(__name__)


def retention_key(resolution: Resolution) -> str:
    return f"retention_days_{Resolution(resolution).value}"


class RetentionPolicy:
    """Reads and writes the retention windows kept in db_metadata."""

    def __init__(self, store: MetricsStore):
        self.store = store

    async def get_days(self, resolution: Resolution) -> int:
        key = retention_key(resolution)
        value = await self.store.get_config(key, DEFAULT_RETENTION[key])
        try:
            return max(0, int(value))
        except (TypeError, ValueError):
            logger.warning("Invalid retention value, using default", key=key, value=value)
            return int(DEFAULT_RETENTION[key])

    async def get_all(self) -> Dict[str, int]:
        return {resolution.value: await self.get_days(resolution) for resolution in Resolution}

    async def set_days(self, resolution: Resolution, days: int):
        if days < 0:
            raise ValueError("Retention days must be >= 0")
        await self.store.set_config(retention_key(resolution), int(days))
        logger.info("Retention updated", resolution=Resolution(resolution).value, days=days)

    async def cutoff(self, resolution: Resolution, now: int) -> Optional[int]:
        """Oldest timestamp to keep, or None when the tier is unlimited."""
        days = await self.get_days(resolution)
        if days <= 0:
            return None
        return now - days * DAY_MS
