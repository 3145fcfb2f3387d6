"""
Machine Metrics Hub - SSE Subscriptions

Per-machine subscriber queues behind the live stream. Every subscriber watches
exactly one machine; a subscriber that stops reading loses frames instead of
holding up the others.
"""

import asyncio
import itertools
import json
from dataclasses import dataclass, field
from typing import Any, AsyncGenerator, Dict, List, Optional, Set

import structlog

logger = structlog.get_logger(__name__)

SUBSCRIBER_QUEUE_SIZE = 100
LIVE_EVENT = "live_update"


@dataclass
class Subscription:
    """One open stream watching one machine."""
    subscription_id: int
    machine_id: str
    queue: asyncio.Queue = field(default_factory=lambda: asyncio.Queue(maxsize=SUBSCRIBER_QUEUE_SIZE))
    dropped: int = 0


class SSEHub:
    """Fans live snapshots out to the streams watching each machine."""

    def __init__(self):
        self._subscriptions: Dict[int, Subscription] = {}
        self._by_machine: Dict[str, Set[int]] = {}
        self._ids = itertools.count(1)

    def subscribe(self, machine_id: str, initial: Optional[Any] = None) -> Subscription:
        """Open a subscription, optionally primed with a first frame."""
        sub = Subscription(subscription_id=next(self._ids), machine_id=machine_id)
        self._subscriptions[sub.subscription_id] = sub
        self._by_machine.setdefault(machine_id, set()).add(sub.subscription_id)
        if initial is not None:
            self._offer(sub, LIVE_EVENT, initial)

        logger.info("Live stream opened", machine_id=machine_id, subscription_id=sub.subscription_id)
        return sub

    def unsubscribe(self, sub: Subscription):
        if self._subscriptions.pop(sub.subscription_id, None) is None:
            return
        watchers = self._by_machine.get(sub.machine_id)
        if watchers is not None:
            watchers.discard(sub.subscription_id)
            if not watchers:
                del self._by_machine[sub.machine_id]
        logger.info(
            "Live stream closed",
            machine_id=sub.machine_id,
            subscription_id=sub.subscription_id,
            dropped=sub.dropped,
        )

    def publish(self, machine_id: str, data: Any, event: str = LIVE_EVENT) -> int:
        """Queue a frame for every subscriber of a machine. Returns deliveries."""
        delivered = 0
        for subscription_id in list(self._by_machine.get(machine_id, ())):
            sub = self._subscriptions.get(subscription_id)
            if sub is not None and self._offer(sub, event, data):
                delivered += 1
        return delivered

    def _offer(self, sub: Subscription, event: str, data: Any) -> bool:
        try:
            sub.queue.put_nowait({"event": event, "data": json.dumps(data)})
        except asyncio.QueueFull:
            sub.dropped += 1
            logger.warning("Live stream backlog full, frame dropped", subscription_id=sub.subscription_id)
            return False
        return True

    async def stream(self, sub: Subscription) -> AsyncGenerator[Dict[str, str], None]:
        """Events for EventSourceResponse until the client goes away."""
        try:
            while True:
                yield await sub.queue.get()
        finally:
            self.unsubscribe(sub)

    def watched_machines(self) -> List[str]:
        return sorted(self._by_machine)

    def subscriber_count_for(self, machine_id: str) -> int:
        return len(self._by_machine.get(machine_id, ()))

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)
