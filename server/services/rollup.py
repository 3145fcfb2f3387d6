"""
Machine Metrics Hub - Rollup Reducers

Pure functions folding raw samples into an hourly summary and hourly
summaries into a daily summary. NULL inputs are ignored; a reducer with no
non-null input yields None. Sums use math.fsum over rows in time order, so the
same rows always give the same summary.
"""

import math
from typing import Any, Dict, List, Optional, Sequence

from models import GAUGE_FIELDS, RATE_FIELDS


def _values(rows: Sequence[Dict[str, Any]], column: str) -> List[float]:
    return [row[column] for row in rows if row.get(column) is not None]


def _mean(values: List[float]) -> Optional[float]:
    return math.fsum(values) / len(values) if values else None


def _total(values: List[float]) -> Optional[float]:
    return math.fsum(values) if values else None


def _weighted_mean(rows: Sequence[Dict[str, Any]], column: str) -> Optional[float]:
    """Mean of per-bucket averages weighted by each bucket's sample count."""
    pairs = [
        (row[column], row.get("sample_count") or 0)
        for row in rows if row.get(column) is not None
    ]
    weight = sum(count for _, count in pairs)
    if not pairs:
        return None
    if weight == 0:
        return _mean([value for value, _ in pairs])
    return math.fsum(value * count for value, count in pairs) / weight


def summarize_samples(
    machine_id: str,
    bucket_start: int,
    samples: Sequence[Dict[str, Any]],
) -> Optional[Dict[str, Any]]:
    """Hourly summary of raw sample rows, or None when the bucket is empty."""
    if not samples:
        return None

    summary: Dict[str, Any] = {
        "machine_id": machine_id,
        "bucket_start": bucket_start,
        "sample_count": len(samples),
    }

    for name in GAUGE_FIELDS:
        values = _values(samples, name)
        summary[f"{name}_avg"] = _mean(values)
        summary[f"{name}_min"] = min(values) if values else None
        summary[f"{name}_max"] = max(values) if values else None

    for name, prefix in RATE_FIELDS.items():
        values = _values(samples, name)
        summary[f"{prefix}_avg"] = _mean(values)
        summary[f"{prefix}_total"] = _total(values)

    return summary


def fold_summaries(
    machine_id: str,
    bucket_start: int,
    summaries: Sequence[Dict[str, Any]],
) -> Optional[Dict[str, Any]]:
    """Daily summary of hourly summary rows, or None when there are none."""
    if not summaries:
        return None

    folded: Dict[str, Any] = {
        "machine_id": machine_id,
        "bucket_start": bucket_start,
        "sample_count": sum(row.get("sample_count") or 0 for row in summaries),
    }

    for name in GAUGE_FIELDS:
        minima = _values(summaries, f"{name}_min")
        maxima = _values(summaries, f"{name}_max")
        folded[f"{name}_avg"] = _weighted_mean(summaries, f"{name}_avg")
        folded[f"{name}_min"] = min(minima) if minima else None
        folded[f"{name}_max"] = max(maxima) if maxima else None

    for prefix in RATE_FIELDS.values():
        folded[f"{prefix}_avg"] = _weighted_mean(summaries, f"{prefix}_avg")
        folded[f"{prefix}_total"] = _total(_values(summaries, f"{prefix}_total"))

    return folded
