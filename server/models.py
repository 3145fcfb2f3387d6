"""
Machine Metrics Hub - Shared Models

Sample payloads, resolution tiers and bucket arithmetic shared by the store,
the writer, the aggregator and the query planner. All timestamps are UTC epoch
milliseconds.
"""

import time
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

HOUR_MS = 60 * 60 * 1000
DAY_MS = 24 * HOUR_MS

# Gauge fields summarise to avg/min/max
GAUGE_FIELDS = (
    "cpu_load",
    "cpu_temp",
    "ram_total",
    "ram_used",
    "ram_percent",
    "swap_total",
    "swap_used",
    "swap_percent",
    "gpu_utilization",
    "gpu_temp",
    "gpu_mem_used",
    "gpu_mem_total",
)

# Rate fields summarise to avg/total, keyed by their summary column prefix
RATE_FIELDS = {
    "network_rx_sec": "network_rx",
    "network_tx_sec": "network_tx",
}

SAMPLE_FIELDS = GAUGE_FIELDS + tuple(RATE_FIELDS)


def summary_columns() -> list:
    """Column names of an hourly/daily summary row, in table order."""
    columns = ["machine_id", "bucket_start", "sample_count"]
    for name in GAUGE_FIELDS:
        columns.extend([f"{name}_avg", f"{name}_min", f"{name}_max"])
    for prefix in RATE_FIELDS.values():
        columns.extend([f"{prefix}_avg", f"{prefix}_total"])
    return columns


class Resolution(str, Enum):
    """Storage tier."""
    RAW = "raw"
    HOURLY = "hourly"
    DAILY = "daily"

    @classmethod
    def _missing_(cls, value):
        # "fine" is accepted as a synonym for the raw tier
        if isinstance(value, str) and value.lower() == "fine":
            return cls.RAW
        return None

    @property
    def table(self) -> str:
        return {
            Resolution.RAW: "metrics_raw",
            Resolution.HOURLY: "metrics_hourly",
            Resolution.DAILY: "metrics_daily",
        }[self]

    @property
    def time_column(self) -> str:
        return "timestamp" if self is Resolution.RAW else "bucket_start"

    @property
    def bucket_ms(self) -> Optional[int]:
        return {
            Resolution.RAW: None,
            Resolution.HOURLY: HOUR_MS,
            Resolution.DAILY: DAY_MS,
        }[self]


def now_ms() -> int:
    """Current wall clock as epoch milliseconds."""
    return int(time.time() * 1000)


def floor_to(ts: int, width: int) -> int:
    """Truncate a timestamp down to a bucket boundary."""
    return (ts // width) * width


def ceil_to(ts: int, width: int) -> int:
    """Round a timestamp up to a bucket boundary."""
    return -((-ts) // width) * width


class SamplePayload(BaseModel):
    """One telemetry reading as sent by a machine. Metrics may be null."""
    timestamp: int = Field(..., ge=0, description="Epoch milliseconds")
    cpu_load: Optional[float] = None
    cpu_temp: Optional[float] = None
    ram_total: Optional[float] = None
    ram_used: Optional[float] = None
    ram_percent: Optional[float] = None
    swap_total: Optional[float] = None
    swap_used: Optional[float] = None
    swap_percent: Optional[float] = None
    gpu_utilization: Optional[float] = None
    gpu_temp: Optional[float] = None
    gpu_mem_used: Optional[float] = None
    gpu_mem_total: Optional[float] = None
    network_rx_sec: Optional[float] = None
    network_tx_sec: Optional[float] = None


class Sample(SamplePayload):
    """A reading bound to the machine that produced it."""
    machine_id: str = Field(..., min_length=1)

    def to_row(self) -> tuple:
        """Values in `metrics_raw` insert order."""
        return (self.machine_id, self.timestamp) + tuple(
            getattr(self, name) for name in SAMPLE_FIELDS
        )
