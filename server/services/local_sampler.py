"""
Machine Metrics Hub - Local Sampler

Samples the host running the hub with psutil, feeds the readings to the
metrics writer and publishes them as live snapshots. Remote machines push
their own samples through the ingestion API instead.
"""

import asyncio
import platform
import time
from typing import Any, Dict, Optional

import psutil
import structlog

from models import Sample, now_ms
from services.live import LiveSnapshots
from services.machine_registry import MachineRegistry
from services.metrics_writer import MetricsWriter

logger = structlog.get_logger(__name__)

TEMPERATURE_SENSORS = ("cpu_thermal", "coretemp", "cpu-thermal", "k10temp")


def read_cpu_temperature() -> Optional[float]:
    """First matching CPU sensor, or None where the platform has none."""
    try:
        temps = psutil.sensors_temperatures()
    except AttributeError:
        return None
    for key in TEMPERATURE_SENSORS:
        if temps.get(key):
            return temps[key][0].current
    return None


def system_profile() -> Dict[str, Any]:
    """Static hardware/OS description stored as machine metadata."""
    uname = platform.uname()
    freq = psutil.cpu_freq()
    return {
        "os": f"{uname.system} {uname.release}",
        "arch": uname.machine,
        "cpu": {
            "model": platform.processor() or uname.machine,
            "cores": psutil.cpu_count(logical=False),
            "threads": psutil.cpu_count(logical=True),
            "speed_ghz": round(freq.max / 1000, 2) if freq and freq.max else None,
        },
        "memory": {"total": psutil.virtual_memory().total},
        "gpu": [],
        "python": platform.python_version(),
    }


class LocalSampler:
    """Periodic psutil probe for this host."""

    def __init__(
        self,
        writer: MetricsWriter,
        snapshots: LiveSnapshots,
        registry: MachineRegistry,
        machine_id: str = "localhost",
        interval: float = 2,
    ):
        self.writer = writer
        self.snapshots = snapshots
        self.registry = registry
        self.machine_id = machine_id
        self.interval = interval

        self._running = False
        self._task: Optional[asyncio.Task] = None
        self._last_net: Optional[tuple] = None

    async def start(self):
        if self._running:
            return

        await self.registry.register(
            self.machine_id,
            hostname=platform.node(),
            display_name="Local Machine",
            metadata=system_profile(),
        )
        # Prime the CPU counter; the first non-blocking reading is meaningless
        psutil.cpu_percent(interval=None)

        self._running = True
        self._task = asyncio.create_task(self._sample_loop())
        logger.info("Local sampler started", machine_id=self.machine_id, interval=self.interval)

    async def stop(self):
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Local sampler stopped")

    async def _sample_loop(self):
        while self._running:
            try:
                sample = self.collect()
                self.writer.enqueue(sample)
                self.snapshots.update(sample)
            except Exception as e:
                logger.error("Error collecting local metrics", error=str(e))
            await asyncio.sleep(self.interval)

    def collect(self) -> Sample:
        mem = psutil.virtual_memory()
        swap = psutil.swap_memory()
        rx_sec, tx_sec = self._network_rates()

        return Sample(
            machine_id=self.machine_id,
            timestamp=now_ms(),
            cpu_load=psutil.cpu_percent(interval=None),
            cpu_temp=read_cpu_temperature(),
            ram_total=mem.total,
            ram_used=mem.used,
            ram_percent=mem.percent,
            swap_total=swap.total,
            swap_used=swap.used,
            swap_percent=swap.percent,
            network_rx_sec=rx_sec,
            network_tx_sec=tx_sec,
        )

    def _network_rates(self) -> tuple:
        """Bytes/s since the previous reading; None for the first one."""
        net = psutil.net_io_counters()
        now = time.monotonic()
        previous, self._last_net = self._last_net, (now, net.bytes_recv, net.bytes_sent)
        if previous is None:
            return None, None

        elapsed = now - previous[0]
        if elapsed <= 0:
            return None, None
        return (
            max(0.0, (net.bytes_recv - previous[1]) / elapsed),
            max(0.0, (net.bytes_sent - previous[2]) / elapsed),
        )
