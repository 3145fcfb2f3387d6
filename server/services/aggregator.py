"""
Machine Metrics Hub - Metrics Aggregator

Background jobs that:
1. Roll raw samples into hourly summaries (every hour at :05 UTC)
2. Roll hourly summaries into daily summaries (every day at 00:10 UTC)
3. Delete data older than each tier's retention window (every day at 02:00 UTC)

Every job is idempotent: recomputing a bucket overwrites its summary. The
hourly and daily jobs keep a watermark of the last bucket completed for all
machines and replay any gap left by downtime, up to a catch-up limit.
"""

import asyncio
from typing import Any, Awaitable, Callable, Dict, List, Optional

import structlog

from db import MetricsStore
from models import DAY_MS, HOUR_MS, Resolution, floor_to, now_ms
from services.retention import RetentionPolicy
from services.rollup import fold_summaries, summarize_samples

logger = structlog.get_logger(__name__)

MINUTE_MS = 60 * 1000


def watermark_key(resolution: Resolution) -> str:
    return f"watermark_{Resolution(resolution).value}"


class MetricsAggregator:
    """Owns the hourly, daily and retention jobs as cancellable asyncio tasks."""

    def __init__(
        self,
        store: MetricsStore,
        retention: Optional[RetentionPolicy] = None,
        clock: Callable[[], int] = now_ms,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        hourly_offset_minutes: int = 5,
        daily_offset_minutes: int = 10,
        retention_hour: int = 2,
        max_catchup_hours: int = 168,
        startup_delay: float = 30,
    ):
        self.store = store
        self.retention = retention or RetentionPolicy(store)
        self.clock = clock
        self.sleep = sleep
        self.hourly_offset_minutes = hourly_offset_minutes
        self.daily_offset_minutes = daily_offset_minutes
        self.retention_hour = retention_hour
        self.max_catchup_hours = max(1, max_catchup_hours)
        self.startup_delay = startup_delay

        self._running = False
        self._tasks: Dict[str, asyncio.Task] = {}
        self._last_results: Dict[str, Dict[str, Any]] = {}

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self):
        """Start all aggregation jobs."""
        if self._running:
            return

        self._running = True
        self._tasks = {
            "hourly": asyncio.create_task(self._job_loop("hourly", self.next_hourly_run, self.run_hourly)),
            "daily": asyncio.create_task(self._job_loop("daily", self.next_daily_run, self.run_daily)),
            "retention": asyncio.create_task(self._job_loop("retention", self.next_retention_run, self.run_retention)),
            "catchup": asyncio.create_task(self._startup_catchup()),
        }

        logger.info(
            "Metrics aggregator started",
            hourly_at_minute=self.hourly_offset_minutes,
            daily_at_minute=self.daily_offset_minutes,
            retention_at_hour=self.retention_hour,
        )

    async def stop(self):
        """Stop all aggregation jobs."""
        self._running = False

        for name, task in self._tasks.items():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            logger.debug("Stopped aggregation job", job=name)

        self._tasks = {}
        logger.info("Metrics aggregator stopped")

    # === Timers ===

    def next_hourly_run(self, now: int) -> int:
        return self._next_after(now, HOUR_MS, self.hourly_offset_minutes * MINUTE_MS)

    def next_daily_run(self, now: int) -> int:
        return self._next_after(now, DAY_MS, self.daily_offset_minutes * MINUTE_MS)

    def next_retention_run(self, now: int) -> int:
        return self._next_after(now, DAY_MS, self.retention_hour * HOUR_MS)

    @staticmethod
    def _next_after(now: int, period: int, offset: int) -> int:
        candidate = floor_to(now, period) + offset
        if candidate <= now:
            candidate += period
        return candidate

    async def _job_loop(self, name: str, next_run: Callable[[int], int], run: Callable[..., Awaitable]):
        while self._running:
            now = self.clock()
            await self.sleep(max(0, next_run(now) - now) / 1000)
            try:
                await run()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                # Retried at the next firing
                logger.error("Aggregation job failed", job=name, error=str(e))

    async def _startup_catchup(self):
        await self.sleep(self.startup_delay)
        try:
            await self.run_hourly()
            await self.run_daily()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("Startup catch-up failed", error=str(e))

    # === Per-bucket computation ===

    async def aggregate_hour(self, machine_id: str, bucket_start: int) -> Optional[Dict[str, Any]]:
        """Summarise one machine's raw samples in [bucket_start, +1h)."""
        bucket_start = floor_to(bucket_start, HOUR_MS)
        rows = await self.store.read_range(Resolution.RAW, machine_id, bucket_start, bucket_start + HOUR_MS)
        summary = summarize_samples(machine_id, bucket_start, rows)
        if summary:
            await self.store.upsert_summary(Resolution.HOURLY, summary)
        return summary

    async def aggregate_day(self, machine_id: str, bucket_start: int) -> Optional[Dict[str, Any]]:
        """Fold one machine's hourly summaries in [bucket_start, +24h)."""
        bucket_start = floor_to(bucket_start, DAY_MS)
        rows = await self.store.read_range(Resolution.HOURLY, machine_id, bucket_start, bucket_start + DAY_MS)
        summary = fold_summaries(machine_id, bucket_start, rows)
        if summary:
            await self.store.upsert_summary(Resolution.DAILY, summary)
        return summary

    def _aggregate_fn(self, resolution: Resolution):
        if resolution is Resolution.HOURLY:
            return self.aggregate_hour
        if resolution is Resolution.DAILY:
            return self.aggregate_day
        raise ValueError(f"Cannot aggregate into {resolution.value} resolution")

    # === Scheduled jobs ===

    async def run_hourly(self, now: Optional[int] = None) -> Dict[str, Any]:
        """Aggregate the just-completed hour, plus any gap since the watermark."""
        return await self._run_rollup(Resolution.HOURLY, self.max_catchup_hours, now)

    async def run_daily(self, now: Optional[int] = None) -> Dict[str, Any]:
        """Aggregate the just-completed day, plus any gap since the watermark."""
        return await self._run_rollup(Resolution.DAILY, max(1, self.max_catchup_hours // 24), now)

    async def _run_rollup(self, resolution: Resolution, max_buckets: int, now: Optional[int]) -> Dict[str, Any]:
        now = self.clock() if now is None else now
        width = resolution.bucket_ms
        last_complete = floor_to(now, width) - width

        watermark = await self.store.get_config(watermark_key(resolution))
        first = last_complete
        if watermark is not None and int(watermark) < last_complete:
            first = max(int(watermark) + width, last_complete - (max_buckets - 1) * width)
            if first < last_complete:
                logger.info("Replaying missed buckets", resolution=resolution.value, buckets=(last_complete - first) // width + 1)

        machines = await self.store.list_machines()
        aggregate = self._aggregate_fn(resolution)

        result = {
            "resolution": resolution.value,
            "buckets": [],
            "machines": len(machines),
            "summaries": 0,
            "samples": 0,
            "errors": 0,
        }

        # First bucket with a failure; the watermark stays behind it
        held_at: Optional[int] = None

        for bucket_start in range(first, last_complete + width, width):
            failures = 0
            for machine in machines:
                machine_id = machine["machine_id"]
                try:
                    summary = await aggregate(machine_id, bucket_start)
                except Exception as e:
                    failures += 1
                    logger.error(
                        "Aggregation failed for machine",
                        resolution=resolution.value,
                        machine_id=machine_id,
                        bucket_start=bucket_start,
                        error=str(e),
                    )
                    continue

                if summary:
                    result["summaries"] += 1
                    result["samples"] += summary["sample_count"]

            result["buckets"].append(bucket_start)
            result["errors"] += failures
            if failures and held_at is None:
                held_at = bucket_start
            if held_at is None:
                await self.store.set_config(watermark_key(resolution), bucket_start)

        if held_at is not None:
            result["retry_from"] = held_at
        self._last_results[resolution.value] = {**result, "ran_at": now}
        logger.info(
            "Aggregation complete",
            resolution=resolution.value,
            buckets=len(result["buckets"]),
            summaries=result["summaries"],
            samples=result["samples"],
            errors=result["errors"],
        )
        return result

    async def run_retention(self, now: Optional[int] = None) -> Dict[str, int]:
        """Delete rows older than each tier's retention window, all machines."""
        now = self.clock() if now is None else now
        deleted = {}

        for resolution in Resolution:
            cutoff = await self.retention.cutoff(resolution, now)
            if cutoff is None:
                continue
            try:
                deleted[resolution.value] = await self.store.delete_older_than(resolution, cutoff)
            except Exception as e:
                logger.error("Retention sweep failed", resolution=resolution.value, error=str(e))
                continue

            if deleted[resolution.value]:
                logger.info(
                    "Deleted old metrics",
                    resolution=resolution.value,
                    deleted=deleted[resolution.value],
                    cutoff=cutoff,
                )

        if sum(deleted.values()) > 0:
            await self.store.checkpoint()

        self._last_results["retention"] = {"deleted": deleted, "ran_at": now}
        logger.info("Cleanup complete", deleted=deleted)
        return deleted

    # === Manual backfill ===

    async def aggregate_range(
        self,
        machine_id: str,
        start: int,
        end: int,
        resolution: Resolution = Resolution.HOURLY,
    ) -> List[Dict[str, Any]]:
        """Recompute every bucket of one machine that starts in [floor(start), end)."""
        resolution = Resolution(resolution)
        aggregate = self._aggregate_fn(resolution)
        width = resolution.bucket_ms
        if end <= start:
            raise ValueError("end must be after start")

        results = []
        for bucket_start in range(floor_to(start, width), end, width):
            summary = await aggregate(machine_id, bucket_start)
            if summary:
                results.append(summary)

        logger.info(
            "Manual aggregation complete",
            machine_id=machine_id,
            resolution=resolution.value,
            summaries=len(results),
        )
        return results

    async def get_status(self) -> Dict[str, Any]:
        now = self.clock()
        next_runs = {
            "hourly": self.next_hourly_run(now),
            "daily": self.next_daily_run(now),
            "retention": self.next_retention_run(now),
        }
        return {
            "running": self._running,
            "jobs": [
                {
                    "name": name,
                    "running": name in self._tasks and not self._tasks[name].done(),
                    "next_run": next_runs[name],
                    "last_result": self._last_results.get(name),
                }
                for name in ("hourly", "daily", "retention")
            ],
            "watermarks": {
                resolution.value: await self.store.get_config(watermark_key(resolution))
                for resolution in (Resolution.HOURLY, Resolution.DAILY)
            },
        }
