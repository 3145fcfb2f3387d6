"""
Machine Metrics Hub - Query Planner Tests
"""

import pytest

from models import DAY_MS, HOUR_MS, Resolution, Sample
from services.aggregator import MetricsAggregator
from services.query_planner import (
    InvalidQueryError,
    QueryPlanner,
    align_range,
    parse_resolution,
    select_resolution,
    shape_series,
)

BASE = 1709251200000


class TestResolutionSelection:
    """Automatic tier choice by span."""

    def test_two_hours_is_raw(self):
        assert select_resolution(BASE, BASE + 2 * HOUR_MS) is Resolution.RAW

    def test_exactly_one_day_is_raw(self):
        assert select_resolution(BASE, BASE + DAY_MS) is Resolution.RAW

    def test_thirty_days_is_hourly(self):
        assert select_resolution(BASE, BASE + 30 * DAY_MS) is Resolution.HOURLY

    def test_two_hundred_days_is_daily(self):
        assert select_resolution(BASE, BASE + 200 * DAY_MS) is Resolution.DAILY

    def test_parse_resolution(self):
        assert parse_resolution("auto") is None
        assert parse_resolution(None) is None
        assert parse_resolution("hourly") is Resolution.HOURLY
        assert parse_resolution("fine") is Resolution.RAW
        with pytest.raises(InvalidQueryError):
            parse_resolution("weekly")


class TestAlignment:

    def test_raw_range_untouched(self):
        assert align_range(Resolution.RAW, BASE + 5, BASE + 10) == (BASE + 5, BASE + 10)

    def test_hourly_range_widened_to_buckets(self):
        start, end = align_range(Resolution.HOURLY, BASE + 10 * 60_000, BASE + 2 * HOUR_MS + 1)
        assert start == BASE
        assert end == BASE + 3 * HOUR_MS

    def test_aligned_range_unchanged(self):
        assert align_range(Resolution.DAILY, BASE, BASE + DAY_MS) == (BASE, BASE + DAY_MS)


class TestPlan:

    def test_inverted_range_rejected(self):
        planner = QueryPlanner(store=None)
        with pytest.raises(InvalidQueryError):
            planner.plan(BASE, BASE)
        with pytest.raises(InvalidQueryError):
            planner.plan(BASE + 1, BASE)

    def test_missing_bound_rejected(self):
        with pytest.raises(InvalidQueryError):
            QueryPlanner(store=None).plan(None, BASE)

    def test_explicit_resolution_wins(self):
        chosen, start, end = QueryPlanner(store=None).plan(BASE + 1, BASE + 2, "daily")
        assert chosen is Resolution.DAILY
        assert (start, end) == (BASE, BASE + DAY_MS)


class TestShaping:

    def test_raw_points(self):
        rows = [{"timestamp": BASE, "cpu_load": 3.0, "network_rx_sec": 9.0}]
        series = shape_series(rows, Resolution.RAW)
        assert series["cpu_load"] == [{"timestamp": BASE, "value": 3.0}]
        assert series["network_rx"] == [{"timestamp": BASE, "value": 9.0}]
        assert series["gpu_temp"] == [{"timestamp": BASE, "value": None}]

    def test_summary_points(self):
        rows = [{
            "bucket_start": BASE, "sample_count": 4,
            "cpu_load_avg": 2.0, "cpu_load_min": 1.0, "cpu_load_max": 3.0,
            "network_tx_avg": 5.0, "network_tx_total": 20.0,
        }]
        series = shape_series(rows, Resolution.HOURLY)
        assert series["cpu_load"] == [{"timestamp": BASE, "avg": 2.0, "min": 1.0, "max": 3.0}]
        assert series["network_tx"] == [{"timestamp": BASE, "avg": 5.0, "total": 20.0}]
        assert series["sample_count"] == [{"timestamp": BASE, "value": 4}]

    def test_empty_rows(self):
        series = shape_series([], Resolution.DAILY)
        assert series["cpu_load"] == []


class TestQuery:

    @pytest.mark.asyncio
    async def test_query_raw(self, store):
        await store.insert_samples([
            Sample(machine_id="m1", timestamp=BASE + i * 1000, cpu_load=float(i)) for i in range(5)
        ])
        result = await QueryPlanner(store).query("m1", BASE, BASE + 3000)

        assert result.resolution is Resolution.RAW
        assert result.count == 3
        body = result.to_dict()
        assert body["granularity"] == "raw"
        assert [p["value"] for p in body["metrics"]["cpu_load"]] == [0.0, 1.0, 2.0]

    @pytest.mark.asyncio
    async def test_query_hourly_includes_partial_buckets(self, store):
        await store.insert_samples([
            Sample(machine_id="m1", timestamp=BASE + h * HOUR_MS, cpu_load=float(h)) for h in range(4)
        ])
        await MetricsAggregator(store).aggregate_range("m1", BASE, BASE + 4 * HOUR_MS)

        result = await QueryPlanner(store).query(
            "m1", BASE + 30 * 60_000, BASE + 2 * HOUR_MS + 1, "hourly"
        )
        assert result.effective_start == BASE
        assert result.effective_end == BASE + 3 * HOUR_MS
        assert [r["bucket_start"] for r in result.rows] == [BASE, BASE + HOUR_MS, BASE + 2 * HOUR_MS]
