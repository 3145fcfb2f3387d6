"""
Machine Metrics Hub - Data Administration Router

Retention settings, storage statistics, manual cleanup, manual
re-aggregation and ingestion buffer control.
"""

from typing import Optional, Union

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field

from db import MetricsStore
from models import DAY_MS, Resolution, now_ms
from services import MachineRegistry, MetricsAggregator, MetricsWriter, RetentionPolicy
from .auth import require_token
from .dependencies import get_aggregator, get_registry, get_retention, get_store, get_writer
from .metrics import parse_timestamp

logger = structlog.get_logger(__name__)

router = APIRouter(dependencies=[Depends(require_token)])


class RetentionUpdate(BaseModel):
    raw: Optional[int] = Field(None, ge=0)
    hourly: Optional[int] = Field(None, ge=0)
    daily: Optional[int] = Field(None, ge=0)


class CleanupRequest(BaseModel):
    older_than_days: float = Field(..., ge=0)
    granularity: Resolution
    machine_id: Optional[str] = None


class AggregateRequest(BaseModel):
    machine_id: str
    start: Union[int, str]
    end: Union[int, str]
    granularity: Resolution = Resolution.HOURLY


def _to_ms(value: Union[int, str]) -> int:
    return value if isinstance(value, int) else parse_timestamp(value)


@router.get("/retention")
async def get_retention_settings(retention: RetentionPolicy = Depends(get_retention)):
    """Retention window per resolution in days (0 = unlimited)."""
    return await retention.get_all()


@router.put("/retention")
async def update_retention_settings(
    body: RetentionUpdate,
    retention: RetentionPolicy = Depends(get_retention),
):
    """Change one or more retention windows."""
    for name, days in body.model_dump(exclude_none=True).items():
        await retention.set_days(Resolution(name), days)
    return await retention.get_all()


@router.get("/stats")
async def get_stats(
    machine_id: Optional[str] = Query(None, description="Limit to one machine"),
    store: MetricsStore = Depends(get_store),
    registry: MachineRegistry = Depends(get_registry),
    retention: RetentionPolicy = Depends(get_retention),
):
    """Row counts, oldest row age and estimated size per machine and resolution."""
    if machine_id:
        machine_ids = [machine_id]
    else:
        machine_ids = [m["machine_id"] for m in await registry.list_all()]

    now = now_ms()
    machines = {}
    for mid in machine_ids:
        tiers = await store.table_stats(mid)
        for tier in tiers.values():
            tier["oldest_age_ms"] = now - tier["oldest"] if tier["oldest"] is not None else None
        machines[mid] = tiers

    db_size = await store.database_size()
    return {
        "machines": machines,
        "db_size_bytes": db_size,
        "db_size_mb": round(db_size / (1024 * 1024), 2),
        "retention_days": await retention.get_all(),
    }


@router.post("/cleanup")
async def cleanup_data(
    body: CleanupRequest,
    store: MetricsStore = Depends(get_store),
):
    """Delete rows of one resolution older than an explicit age."""
    cutoff = now_ms() - int(body.older_than_days * DAY_MS)
    deleted = await store.delete_older_than(body.granularity, cutoff, machine_id=body.machine_id)

    if deleted > 0:
        await store.checkpoint()

    logger.info(
        "Manual cleanup",
        granularity=body.granularity.value,
        machine_id=body.machine_id,
        deleted=deleted,
    )
    return {
        "deleted_count": deleted,
        "granularity": body.granularity.value,
        "older_than_days": body.older_than_days,
        "cutoff": cutoff,
    }


@router.post("/aggregate")
async def aggregate_range(
    body: AggregateRequest,
    aggregator: MetricsAggregator = Depends(get_aggregator),
):
    """Recompute hourly or daily summaries for one machine over a range."""
    if body.granularity is Resolution.RAW:
        raise HTTPException(status_code=400, detail="Granularity must be hourly or daily")

    start, end = _to_ms(body.start), _to_ms(body.end)
    try:
        summaries = await aggregator.aggregate_range(body.machine_id, start, end, body.granularity)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    return {
        "machine_id": body.machine_id,
        "granularity": body.granularity.value,
        "count": len(summaries),
        "buckets": [s["bucket_start"] for s in summaries],
    }


@router.post("/flush")
async def flush_buffer(writer: MetricsWriter = Depends(get_writer)):
    """Write the ingestion buffer to the database now."""
    try:
        written = await writer.flush()
    except Exception as e:
        logger.error("Manual flush failed", error=str(e))
        raise HTTPException(status_code=500, detail="Failed to flush metrics")
    return {"flushed": written, "writer": writer.get_stats()}


@router.get("/status")
async def get_status(
    writer: MetricsWriter = Depends(get_writer),
    aggregator: MetricsAggregator = Depends(get_aggregator),
):
    """Ingestion buffer and aggregation job status."""
    return {
        "writer": writer.get_stats(),
        "aggregator": await aggregator.get_status(),
    }
