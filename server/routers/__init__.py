"""
Machine Metrics Hub - API Routers Package
"""

from . import data, live, machines, metrics

__all__ = [
    "data",
    "live",
    "machines",
    "metrics",
]
