"""Tests for per-job usage metering."""

import pytest

from billing import (
    compute_cost,
    get_usage_summary,
    meter,
    record_usage,
    tier_multiplier,
    total_spend,
    usage_for_job,
)


class TestCost:
    @pytest.mark.parametrize("tier,expected", [
        (None, 0.5), ("premium", 0.5), ("holder", 0.6), ("free", 0.75), ("unknown", 0.5),
    ])
    def test_one_hour_by_tier(self, tier, expected):
        assert compute_cost(3600, 0.5, tier) == expected

    def test_rounded_to_six_places(self):
        assert compute_cost(1, 0.37) == round(0.37 / 3600, 6)

    def test_negative_inputs_clamped(self):
        assert compute_cost(-10, 1.0) == 0.0
        assert compute_cost(10, -1.0) == 0.0

    def test_default_multiplier(self):
        assert tier_multiplier(None) == 1.0


class TestMeter:
    def test_window(self):
        u = meter("j1", "i1", started_at=100.0, released_at=1900.0, hourly_rate=1.2, tier="holder")
        assert u.gpu_seconds == 1800.0
        assert u.cost_usd == round(0.5 * 1.2 * 1.2, 6)
        assert u.resource_usage() == {"gpu_seconds": 1800.0, "hourly_rate": 1.2,
                                      "cost_usd": u.cost_usd}

    def test_clock_skew_never_negative(self):
        assert meter("j1", "i1", 200.0, 100.0, 1.0).gpu_seconds == 0.0


class TestLedger:
    def test_record_and_totals(self):
        record_usage(meter("j1", "i1", 0, 3600, 0.5))
        record_usage(meter("j2", "i1", 0, 1800, 0.5))
        record_usage(meter("j2", "i2", 0, 1800, 1.0))
        assert total_spend() == 0.5 + 0.25 + 0.5
        assert len(usage_for_job("j2")) == 2
        summary = get_usage_summary()
        assert summary["job_count"] == 2
        assert summary["instances_used"] == 2
        assert summary["total_gpu_hours"] == 2.0

    def test_empty(self):
        assert total_spend() == 0.0
        assert get_usage_summary()["total_cost_usd"] == 0
