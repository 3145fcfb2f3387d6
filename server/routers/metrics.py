"""
Machine Metrics Hub - Metrics Router

Historical range queries, CSV export and period summaries.
"""

import csv
import io
import math
import statistics
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import Response

from db import RAW_COLUMNS, SUMMARY_COLUMNS
from models import DAY_MS, HOUR_MS, Resolution, now_ms
from services import InvalidQueryError, QueryPlanner
from services.query_planner import QueryResult
from .dependencies import get_planner

logger = structlog.get_logger(__name__)

router = APIRouter()

PERIODS = {
    "24h": 24 * HOUR_MS,
    "7d": 7 * DAY_MS,
    "30d": 30 * DAY_MS,
    "90d": 90 * DAY_MS,
}


def parse_timestamp(value: str) -> int:
    """Epoch milliseconds or an ISO-8601 string to epoch milliseconds."""
    value = value.strip()
    if value.lstrip("-").isdigit():
        return int(value)
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid timestamp format")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return int(parsed.timestamp() * 1000)


def _iso(ts: int) -> str:
    return datetime.fromtimestamp(ts / 1000, tz=timezone.utc).isoformat()


async def _run_query(planner: QueryPlanner, machine_id: str, start: int, end: int, granularity: str) -> QueryResult:
    try:
        return await planner.query(machine_id, start, end, granularity)
    except InvalidQueryError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.get("/range")
async def query_range(
    start: str = Query(..., description="Epoch ms or ISO timestamp"),
    end: str = Query(..., description="Epoch ms or ISO timestamp"),
    granularity: str = Query("auto", description="auto, raw, hourly or daily"),
    machine_id: str = Query("localhost"),
    planner: QueryPlanner = Depends(get_planner),
):
    """Query historical metrics with automatic or explicit resolution."""
    result = await _run_query(planner, machine_id, parse_timestamp(start), parse_timestamp(end), granularity)
    return result.to_dict()


@router.get("/export/csv")
async def export_csv(
    start: str = Query(...),
    end: str = Query(...),
    granularity: str = Query("auto"),
    machine_id: str = Query("localhost"),
    planner: QueryPlanner = Depends(get_planner),
):
    """Export the rows of a range query as CSV."""
    result = await _run_query(planner, machine_id, parse_timestamp(start), parse_timestamp(end), granularity)

    fields = RAW_COLUMNS if result.resolution is Resolution.RAW else SUMMARY_COLUMNS
    buffer = io.StringIO()
    writer = csv.DictWriter(buffer, fieldnames=list(fields), extrasaction="ignore")
    writer.writeheader()
    writer.writerows(result.rows)

    filename = f"metrics_{result.resolution.value}_{now_ms()}.csv"
    return Response(
        content=buffer.getvalue(),
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


def percentile(values: List[float], p: float) -> Optional[float]:
    """Nearest-rank percentile."""
    if not values:
        return None
    ordered = sorted(values)
    index = math.ceil(p / 100 * len(ordered)) - 1
    return ordered[max(0, index)]


def describe(values: List[float]) -> Optional[Dict[str, float]]:
    if not values:
        return None
    return {
        "avg": math.fsum(values) / len(values),
        "min": min(values),
        "max": max(values),
        "median": statistics.median(values),
        "p95": percentile(values, 95),
    }


def calculate_summary_stats(rows: List[Dict[str, Any]], resolution: Resolution) -> Dict[str, Any]:
    """Period statistics over raw values or over bucket averages."""

    def column(name: str) -> List[float]:
        key = name if resolution is Resolution.RAW else f"{name}_avg"
        return [row[key] for row in rows if row.get(key) is not None]

    def rate(raw_name: str, prefix: str) -> Dict[str, Optional[float]]:
        if resolution is Resolution.RAW:
            values = [row[raw_name] for row in rows if row.get(raw_name) is not None]
            total = math.fsum(values) if values else None
        else:
            values = [row[f"{prefix}_avg"] for row in rows if row.get(f"{prefix}_avg") is not None]
            totals = [row[f"{prefix}_total"] for row in rows if row.get(f"{prefix}_total") is not None]
            total = math.fsum(totals) if totals else None
        avg = math.fsum(values) / len(values) if values else None
        return {
            "avg_bytes_sec": avg,
            "avg_mbps": avg * 8 / (1024 * 1024) if avg is not None else None,
            "total": total,
        }

    return {
        "cpu": describe(column("cpu_load")),
        "ram": describe(column("ram_percent")),
        "gpu": describe(column("gpu_utilization")),
        "network": {
            "rx": rate("network_rx_sec", "network_rx"),
            "tx": rate("network_tx_sec", "network_tx"),
        },
    }


@router.get("/summary")
async def get_summary(
    period: str = Query("24h", description="24h, 7d, 30d, 90d or custom"),
    start: Optional[str] = Query(None),
    end: Optional[str] = Query(None),
    machine_id: str = Query("localhost"),
    planner: QueryPlanner = Depends(get_planner),
):
    """Summary statistics for a time period."""
    if period == "custom":
        if not start or not end:
            raise HTTPException(status_code=400, detail="Custom period requires start and end parameters")
        start_ts, end_ts = parse_timestamp(start), parse_timestamp(end)
    elif period in PERIODS:
        end_ts = now_ms()
        start_ts = end_ts - PERIODS[period]
    else:
        raise HTTPException(status_code=400, detail="Invalid period. Must be 24h, 7d, 30d, 90d, or custom")

    result = await _run_query(planner, machine_id, start_ts, end_ts, "auto")

    return {
        "machine_id": machine_id,
        "period": period,
        "start": _iso(start_ts),
        "end": _iso(end_ts),
        "granularity": result.resolution.value,
        "row_count": result.count,
        **calculate_summary_stats(result.rows, result.resolution),
    }
