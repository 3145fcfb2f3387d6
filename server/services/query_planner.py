"""
Machine Metrics Hub - Query Planner

Picks the tier that answers a range query, aligns summary queries to their
bucket grid and shapes rows into per-field time series.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Union

from db import MetricsStore
from models import (
    DAY_MS,
    GAUGE_FIELDS,
    HOUR_MS,
    RATE_FIELDS,
    Resolution,
    ceil_to,
    floor_to,
)

AUTO = "auto"

# Longest span each tier serves when the caller asks for "auto"
RAW_MAX_SPAN_MS = 24 * HOUR_MS
HOURLY_MAX_SPAN_MS = 90 * DAY_MS


class InvalidQueryError(ValueError):
    """Raised for an empty or inverted range, or an unknown resolution."""


@dataclass
class QueryResult:
    machine_id: str
    resolution: Resolution
    start: int
    end: int
    effective_start: int
    effective_end: int
    rows: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def count(self) -> int:
        return len(self.rows)

    @property
    def series(self) -> Dict[str, List[Dict[str, Any]]]:
        return shape_series(self.rows, self.resolution)

    def to_dict(self) -> dict:
        return {
            "machine_id": self.machine_id,
            "granularity": self.resolution.value,
            "start": self.start,
            "end": self.end,
            "effective_start": self.effective_start,
            "effective_end": self.effective_end,
            "count": self.count,
            "metrics": self.series,
        }


def parse_resolution(value: Union[str, Resolution, None]) -> Optional[Resolution]:
    """None for "auto", otherwise the requested tier."""
    if value is None or value == AUTO:
        return None
    try:
        return Resolution(value)
    except ValueError:
        raise InvalidQueryError(
            f"Invalid granularity: {value}. Must be auto, raw, hourly or daily"
        ) from None


def select_resolution(start: int, end: int) -> Resolution:
    """Coarsest tier that still keeps the precision a span of this size needs."""
    span = end - start
    if span <= RAW_MAX_SPAN_MS:
        return Resolution.RAW
    if span <= HOURLY_MAX_SPAN_MS:
        return Resolution.HOURLY
    return Resolution.DAILY


def align_range(resolution: Resolution, start: int, end: int) -> tuple:
    """
    Effective [start, end) for a tier. Summary tiers widen the range to whole
    buckets: start is truncated to its bucket and every overlapped bucket is kept.
    """
    width = resolution.bucket_ms
    if width is None:
        return start, end
    return floor_to(start, width), ceil_to(end, width)


def shape_series(rows: Sequence[Dict[str, Any]], resolution: Resolution) -> Dict[str, List[Dict[str, Any]]]:
    """Turn tier rows into {field: [point, ...]}. Pure."""
    resolution = Resolution(resolution)

    if resolution is Resolution.RAW:
        series = {name: [] for name in GAUGE_FIELDS}
        series.update({prefix: [] for prefix in RATE_FIELDS.values()})
        for row in rows:
            ts = row["timestamp"]
            for name in GAUGE_FIELDS:
                series[name].append({"timestamp": ts, "value": row.get(name)})
            for name, prefix in RATE_FIELDS.items():
                series[prefix].append({"timestamp": ts, "value": row.get(name)})
        return series

    series = {name: [] for name in GAUGE_FIELDS}
    series.update({prefix: [] for prefix in RATE_FIELDS.values()})
    series["sample_count"] = []
    for row in rows:
        ts = row["bucket_start"]
        for name in GAUGE_FIELDS:
            series[name].append({
                "timestamp": ts,
                "avg": row.get(f"{name}_avg"),
                "min": row.get(f"{name}_min"),
                "max": row.get(f"{name}_max"),
            })
        for prefix in RATE_FIELDS.values():
            series[prefix].append({
                "timestamp": ts,
                "avg": row.get(f"{prefix}_avg"),
                "total": row.get(f"{prefix}_total"),
            })
        series["sample_count"].append({"timestamp": ts, "value": row.get("sample_count")})
    return series


class QueryPlanner:
    """Answers range queries from whichever tier fits the span."""

    def __init__(self, store: MetricsStore):
        self.store = store

    def plan(self, start: int, end: int, resolution: Union[str, Resolution, None] = AUTO) -> tuple:
        """(tier, effective_start, effective_end) for a request."""
        if start is None or end is None:
            raise InvalidQueryError("Missing required parameters: start and end")
        if start >= end:
            raise InvalidQueryError("Start timestamp must be before end timestamp")

        chosen = parse_resolution(resolution) or select_resolution(start, end)
        effective_start, effective_end = align_range(chosen, start, end)
        return chosen, effective_start, effective_end

    async def query(
        self,
        machine_id: str,
        start: int,
        end: int,
        resolution: Union[str, Resolution, None] = AUTO,
    ) -> QueryResult:
        chosen, effective_start, effective_end = self.plan(start, end, resolution)
        rows = await self.store.read_range(chosen, machine_id, effective_start, effective_end)
        return QueryResult(
            machine_id=machine_id,
            resolution=chosen,
            start=start,
            end=end,
            effective_start=effective_start,
            effective_end=effective_end,
            rows=rows,
        )
