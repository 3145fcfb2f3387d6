"""
Machine Metrics Hub - Live Snapshots

Keeps the newest reading per machine as it arrives (before it is durable) and
pushes it to SSE subscribers on a fixed cadence, independent of the flush and
aggregation timers.
"""

import asyncio
import threading
from typing import Any, Callable, Dict, List, Optional

import structlog

from models import Sample, now_ms
from services.sse import SSEHub

logger = structlog.get_logger(__name__)


class LiveSnapshots:
    """Latest sample per machine. Safe to update from any thread."""

    def __init__(self, clock: Callable[[], int] = now_ms):
        self.clock = clock
        self._latest: Dict[str, Dict[str, Any]] = {}
        self._lock = threading.Lock()

    def update(self, sample: Sample):
        snapshot = sample.model_dump()
        snapshot["received_at"] = self.clock()
        with self._lock:
            current = self._latest.get(sample.machine_id)
            if current is None or current["timestamp"] <= sample.timestamp:
                self._latest[sample.machine_id] = snapshot

    def update_many(self, samples: List[Sample]):
        for sample in samples:
            self.update(sample)

    def get(self, machine_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            snapshot = self._latest.get(machine_id)
            return dict(snapshot) if snapshot else None

    def machines(self) -> List[str]:
        with self._lock:
            return sorted(self._latest)


class LiveBroadcaster:
    """Pushes each subscribed machine's snapshot every `interval` seconds."""

    def __init__(self, snapshots: LiveSnapshots, sse: SSEHub, interval: float = 2):
        self.snapshots = snapshots
        self.sse = sse
        self.interval = interval
        self._running = False
        self._task: Optional[asyncio.Task] = None

    async def start(self):
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._broadcast_loop())
        logger.info("Live broadcaster started", interval=self.interval)

    async def stop(self):
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Live broadcaster stopped")

    async def _broadcast_loop(self):
        while self._running:
            try:
                await self.broadcast_once()
            except Exception as e:
                logger.error("Error broadcasting live snapshots", error=str(e))
            await asyncio.sleep(self.interval)

    async def broadcast_once(self) -> int:
        """Send the latest snapshot of every watched machine."""
        sent = 0
        for machine_id in self.sse.watched_machines():
            snapshot = self.snapshots.get(machine_id)
            if snapshot:
                sent += self.sse.publish(machine_id, snapshot)
        return sent
