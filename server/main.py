"""
Machine Metrics Hub - FastAPI Application

Wires the store, ingestion buffer, aggregation jobs, query planner and live
push into one API process. Run with `python main.py` or `uvicorn main:app`.
"""

import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import List, Optional

import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from slowapi.util import get_remote_address

from config import Settings, settings
from db import MetricsStore
from routers import data, live, machines, metrics
from services import (
    LiveBroadcaster,
    LiveSnapshots,
    MachineRegistry,
    MetricsAggregator,
    MetricsWriter,
    QueryPlanner,
    RetentionPolicy,
    SSEHub,
)
from services.local_sampler import LocalSampler

VERSION = "1.0.0"


def configure_logging(level: str):
    """JSON key/value logs through the stdlib root logger."""
    logging.basicConfig(format="%(message)s", level=level.upper())
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer()
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging(settings.log_level)
logger = structlog.get_logger(__name__)

limiter = Limiter(
    key_func=get_remote_address,
    default_limits=[f"{settings.rate_limit_per_minute}/minute"],
)


@dataclass
class Components:
    """Everything the lifespan owns."""
    store: MetricsStore
    retention: RetentionPolicy
    registry: MachineRegistry
    writer: MetricsWriter
    planner: QueryPlanner
    aggregator: MetricsAggregator
    snapshots: LiveSnapshots
    sse: SSEHub
    broadcaster: LiveBroadcaster
    sampler: Optional[LocalSampler] = None


def build_components(cfg: Settings) -> Components:
    store = MetricsStore(cfg.database_path)
    retention = RetentionPolicy(store)
    registry = MachineRegistry(store)
    writer = MetricsWriter(
        store,
        max_queue_size=cfg.writer_max_queue_size,
        flush_interval=cfg.writer_flush_interval,
        flush_threshold=cfg.writer_flush_threshold,
    )
    snapshots = LiveSnapshots()
    sse = SSEHub()

    components = Components(
        store=store,
        retention=retention,
        registry=registry,
        writer=writer,
        planner=QueryPlanner(store),
        aggregator=MetricsAggregator(
            store,
            retention=retention,
            hourly_offset_minutes=cfg.hourly_job_offset_minutes,
            daily_offset_minutes=cfg.daily_job_offset_minutes,
            retention_hour=cfg.retention_job_hour,
            max_catchup_hours=cfg.aggregation_max_catchup_hours,
            startup_delay=cfg.aggregation_startup_delay,
        ),
        snapshots=snapshots,
        sse=sse,
        broadcaster=LiveBroadcaster(snapshots, sse, interval=cfg.live_interval),
    )
    if cfg.local_sampler_enabled:
        components.sampler = LocalSampler(
            writer,
            snapshots,
            registry,
            machine_id=cfg.local_machine_id,
            interval=cfg.sample_interval,
        )
    return components


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting Machine Metrics Hub", version=VERSION, database=settings.database_path)

    c = build_components(settings)
    await c.store.connect()
    for name in ("store", "retention", "registry", "writer", "planner", "aggregator", "snapshots", "sse"):
        setattr(app.state, name, getattr(c, name))

    await c.writer.start()
    await c.broadcaster.start()
    if settings.scheduler_enabled:
        await c.aggregator.start()
    if c.sampler:
        await c.sampler.start()

    yield

    # Producers stop before the writer's final flush
    logger.info("Shutting down Machine Metrics Hub")
    if c.sampler:
        await c.sampler.stop()
    await c.aggregator.stop()
    await c.broadcaster.stop()
    await c.writer.stop()
    await c.store.close()


app = FastAPI(
    title="Machine Metrics Hub API",
    description="Multi-machine telemetry collection and time-series storage",
    version=VERSION,
    docs_url="/api/docs" if settings.api_debug else None,
    redoc_url="/api/redoc" if settings.api_debug else None,
    lifespan=lifespan,
)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
app.add_middleware(SlowAPIMiddleware)

cors_origins: List[str] = settings.cors_origins_list
if cors_origins:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )


@app.middleware("http")
async def log_requests(request: Request, call_next):
    started = time.monotonic()
    response = await call_next(request)
    logger.info(
        "Request completed",
        method=request.method,
        path=request.url.path,
        status=response.status_code,
        duration_ms=round((time.monotonic() - started) * 1000, 2),
        client=request.client.host if request.client else "unknown",
    )
    return response


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Log anything a route let escape and answer with a bare 500."""
    logger.exception("Unhandled exception", path=request.url.path, error=str(exc))
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})


app.include_router(machines.router, prefix="/api/machines", tags=["Machines"])
app.include_router(metrics.router, prefix="/api/metrics", tags=["Metrics"])
app.include_router(live.router, prefix="/api/live", tags=["Live"])
app.include_router(data.router, prefix="/api/data", tags=["Data"])


@app.get("/api/health")
async def health_check(request: Request):
    store: MetricsStore = request.app.state.store
    writer: MetricsWriter = request.app.state.writer
    return {
        "status": "healthy" if store.is_connected else "degraded",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "version": VERSION,
        "queue_size": writer.queue_size,
        "writer_running": writer.is_running,
    }


@app.get("/api")
async def api_root():
    return {
        "name": "Machine Metrics Hub API",
        "version": VERSION,
        "docs": "/api/docs" if settings.api_debug else None,
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.api_debug
    )
