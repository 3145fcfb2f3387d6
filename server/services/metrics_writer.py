"""
Machine Metrics Hub - Metrics Writer

Buffers incoming samples in memory and writes them to the store in batches,
so bursty producers never wait on disk I/O. When the queue is full the oldest
sample is dropped: fresh data wins over completeness.
"""

import asyncio
import threading
import time
from collections import deque
from typing import Callable, Deque, List, Optional

import structlog

from db import MetricsStore
from models import Sample

logger = structlog.get_logger(__name__)


class MetricsWriter:
    """Bounded ingestion queue with timer-driven and eager batch flushes."""

    def __init__(
        self,
        store: MetricsStore,
        max_queue_size: int = 100,
        flush_interval: float = 10,
        flush_threshold: Optional[int] = None,
        on_evict: Optional[Callable[[Sample], None]] = None,
    ):
        if max_queue_size < 1:
            raise ValueError("max_queue_size must be at least 1")

        self.store = store
        self.max_queue_size = max_queue_size
        self.flush_interval = flush_interval
        self.flush_threshold = flush_threshold if flush_threshold is not None else max_queue_size // 2
        self.on_evict = on_evict

        self._queue: Deque[Sample] = deque()
        self._queue_lock = threading.Lock()
        self._flush_lock = asyncio.Lock()
        self._eager_pending = False
        self._eager_task: Optional[asyncio.Task] = None

        self._running = False
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._task: Optional[asyncio.Task] = None

        self.dropped_total = 0
        self.flushed_total = 0
        self.failed_flushes = 0

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self):
        """Start the periodic flush task."""
        if self._running:
            logger.warning("MetricsWriter already running")
            return

        self._running = True
        self._loop = asyncio.get_running_loop()
        self._task = asyncio.create_task(self._flush_loop())
        logger.info("MetricsWriter started", flush_interval=self.flush_interval)

    async def stop(self):
        """Stop the flush task and write whatever is still queued."""
        self._running = False

        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        if self.queue_size:
            try:
                await self.flush()
            except Exception as e:
                logger.error("Final flush failed", error=str(e), queued=self.queue_size)

        self._loop = None
        logger.info("MetricsWriter stopped")

    async def _flush_loop(self):
        while self._running:
            await asyncio.sleep(self.flush_interval)
            try:
                await self.flush()
            except Exception as e:
                logger.error("Failed to flush metrics batch", error=str(e))

    def enqueue(self, sample: Sample):
        """Queue one sample. Never blocks; safe from any thread."""
        evicted: List[Sample] = []
        with self._queue_lock:
            if len(self._queue) >= self.max_queue_size:
                evicted.append(self._queue.popleft())
                self.dropped_total += 1
            self._queue.append(sample)
            eager = len(self._queue) > self.flush_threshold and not self._eager_pending
            if eager and self._loop is not None:
                self._eager_pending = True
            else:
                eager = False

        self._report_evicted(evicted)
        if eager:
            self._loop.call_soon_threadsafe(self._start_eager_flush)

    def _report_evicted(self, evicted: List[Sample]):
        # Called without the queue lock held
        for dropped in evicted:
            logger.warning(
                "Metrics queue full, dropped oldest metric",
                machine_id=dropped.machine_id,
                timestamp=dropped.timestamp,
                dropped_total=self.dropped_total,
            )
            if self.on_evict:
                self.on_evict(dropped)

    def _start_eager_flush(self):
        self._eager_task = asyncio.ensure_future(self._eager_flush())

    async def _eager_flush(self):
        try:
            await self.flush()
        except Exception as e:
            logger.error("Eager flush failed", error=str(e))
        finally:
            self._eager_pending = False
            self._eager_task = None

    async def flush(self) -> int:
        """
        Drain the queue and write it as one transaction.

        On failure the batch goes back to the front of the queue, the capacity
        rule applies again, and the error is re-raised.
        """
        async with self._flush_lock:
            with self._queue_lock:
                batch: List[Sample] = list(self._queue)
                self._queue.clear()

            if not batch:
                return 0

            started = time.monotonic()
            try:
                await self.store.insert_samples(batch)
            except Exception:
                self.failed_flushes += 1
                self._requeue(batch)
                raise

            self.flushed_total += len(batch)
            logger.info(
                "Flushed metrics to database",
                count=len(batch),
                duration_ms=round((time.monotonic() - started) * 1000, 2),
            )
            return len(batch)

    def _requeue(self, batch: List[Sample]):
        evicted: List[Sample] = []
        with self._queue_lock:
            self._queue.extendleft(reversed(batch))
            while len(self._queue) > self.max_queue_size:
                evicted.append(self._queue.popleft())
                self.dropped_total += 1
        self._report_evicted(evicted)
        logger.warning("Requeued failed batch", count=len(batch), queued=self.queue_size)

    def snapshot(self) -> List[Sample]:
        """Copy of the queued samples, oldest first."""
        with self._queue_lock:
            return list(self._queue)

    @property
    def queue_size(self) -> int:
        with self._queue_lock:
            return len(self._queue)

    def get_stats(self) -> dict:
        return {
            "queue_size": self.queue_size,
            "max_queue_size": self.max_queue_size,
            "flush_interval_s": self.flush_interval,
            "flush_threshold": self.flush_threshold,
            "dropped_total": self.dropped_total,
            "flushed_total": self.flushed_total,
            "failed_flushes": self.failed_flushes,
            "is_running": self._running,
        }
