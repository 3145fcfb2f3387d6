"""
Machine Metrics Hub - Router Dependencies

Components are built once in the application lifespan and kept on app.state;
these accessors hand them to route handlers.
"""

from fastapi import Request

from db import MetricsStore
from services import (
    LiveSnapshots,
    MachineRegistry,
    MetricsAggregator,
    MetricsWriter,
    QueryPlanner,
    RetentionPolicy,
    SSEHub,
)


def get_store(request: Request) -> MetricsStore:
    return request.app.state.store


def get_writer(request: Request) -> MetricsWriter:
    return request.app.state.writer


def get_registry(request: Request) -> MachineRegistry:
    return request.app.state.registry


def get_planner(request: Request) -> QueryPlanner:
    return request.app.state.planner


def get_aggregator(request: Request) -> MetricsAggregator:
    return request.app.state.aggregator


def get_retention(request: Request) -> RetentionPolicy:
    return request.app.state.retention


def get_snapshots(request: Request) -> LiveSnapshots:
    return request.app.state.snapshots


def get_sse(request: Request) -> SSEHub:
    return request.app.state.sse
