"""
Machine Metrics Hub - Services Package

Ingestion, aggregation, query and live-push services.
"""

from .aggregator import MetricsAggregator
from .live import LiveBroadcaster, LiveSnapshots
from .machine_registry import MachineRegistry
from .metrics_writer import MetricsWriter
from .query_planner import InvalidQueryError, QueryPlanner
from .retention import RetentionPolicy
from .sse import SSEHub

__all__ = [
    "MetricsAggregator",
    "LiveBroadcaster",
    "LiveSnapshots",
    "MachineRegistry",
    "MetricsWriter",
    "InvalidQueryError",
    "QueryPlanner",
    "RetentionPolicy",
    "SSEHub",
]
