"""
Machine Metrics Hub - Machine Registry

Tracks which machines report, when they were last heard from and their static
hardware/OS profile.
"""

import json
from typing import Any, Callable, Dict, List, Optional

import structlog

from db import MetricsStore
from models import now_ms

logger = structlog.get_logger(__name__)


def _decode(machine: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if machine is None:
        return None
    decoded = dict(machine)
    raw = decoded.get("metadata")
    try:
        decoded["metadata"] = json.loads(raw) if raw else None
    except ValueError:
        logger.warning("Stored machine metadata is not valid JSON", machine_id=decoded.get("machine_id"))
        decoded["metadata"] = None
    decoded["is_active"] = bool(decoded.get("is_active"))
    return decoded


class MachineRegistry:
    """Upsert-only registry. Staleness of last_seen is for readers to judge."""

    def __init__(self, store: MetricsStore, clock: Callable[[], int] = now_ms):
        self.store = store
        self.clock = clock

    async def register(
        self,
        machine_id: str,
        hostname: Optional[str] = None,
        display_name: Optional[str] = None,
        ip_address: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        last_seen: Optional[int] = None,
    ) -> Dict[str, Any]:
        """
        Create or update a machine.

        A non-empty metadata mapping replaces the stored profile; None or {}
        leaves it as it was.
        """
        if not machine_id:
            raise ValueError("machine_id is required")

        await self.store.upsert_machine(
            machine_id,
            hostname=hostname or None,
            display_name=display_name or None,
            ip_address=ip_address or None,
            last_seen=last_seen if last_seen is not None else self.clock(),
            metadata=metadata or None,
        )
        if metadata:
            logger.info("Machine metadata updated", machine_id=machine_id)
        return await self.get(machine_id)

    async def get(self, machine_id: str) -> Optional[Dict[str, Any]]:
        return _decode(await self.store.get_machine(machine_id))

    async def list_active(self) -> List[Dict[str, Any]]:
        """Active machines, most recently contacted first."""
        return [_decode(m) for m in await self.store.list_active_machines()]

    async def list_all(self) -> List[Dict[str, Any]]:
        return [_decode(m) for m in await self.store.list_machines()]

    async def set_active(self, machine_id: str, active: bool) -> bool:
        updated = await self.store.set_machine_active(machine_id, active)
        if updated:
            logger.info("Machine activity changed", machine_id=machine_id, active=active)
        return updated
