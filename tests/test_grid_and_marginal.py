"""Tests for multiplier grid lookup and marginal payouts."""
from decimal import Decimal

import pytest

from compengine.calc_engine.core.errors import PlanConfigurationError
from compengine.calc_engine.core.grid_resolver import (
    GridLookupSpec,
    achievement_percent,
    resolve_multiplier,
)
from compengine.calc_engine.core.marginal_payout import (
    calculate_marginal_payout,
    calculate_metric_payout,
    generate_payout_projections,
)
from compengine.models.comp_schemas import (
    ExclusionReason,
    LogicType,
    MultiplierBand,
    PlanMetric,
)

D = Decimal


def _bands(*rows):
    return [MultiplierBand(min_pct=D(lo), max_pct=D(hi), multiplier_value=D(m)) for lo, hi, m in rows]


def _accelerator_grid():
    return _bands(("0", "100", "1.0"), ("100", "120", "1.4"), ("120", "999", "1.6"))


def _sales_head_grid():
    return _bands(("0", "100", "1.0"), ("100", "120", "1.6"), ("120", "999", "2.0"))


def _gated_spec():
    return GridLookupSpec.simulated(
        LogicType.GATED_THRESHOLD,
        _bands(("0", "95", "0"), ("95", "100", "1.0"), ("100", "999", "1.2")),
        gate_threshold_percent=D("95"),
    )


def _stepped(bands):
    return GridLookupSpec.simulated(LogicType.STEPPED_ACCELERATOR, bands)


class TestAchievementPercent:
    def test_basic(self):
        assert achievement_percent(D("110"), D("100")) == 110

    def test_zero_target(self):
        assert achievement_percent(D("5000"), D("0")) == 0


class TestResolveMultiplier:
    def test_band_lookup(self):
        spec = _stepped(_accelerator_grid())
        assert resolve_multiplier(D("80"), spec) == D("1.0")
        assert resolve_multiplier(D("110"), spec) == D("1.4")
        assert resolve_multiplier(D("130"), spec) == D("1.6")

    def test_band_lower_bound_inclusive(self):
        spec = _stepped(_accelerator_grid())
        assert resolve_multiplier(D("100"), spec) == D("1.4")

    def test_above_all_bands_uses_top_multiplier(self):
        spec = _stepped(_accelerator_grid())
        assert resolve_multiplier(D("1500"), spec) == D("1.6")

    def test_below_lowest_band(self):
        spec = _stepped(_bands(("50", "100", "1.0"), ("100", "999", "1.5")))
        assert resolve_multiplier(D("40"), spec) == 0

    def test_linear_always_one(self):
        spec = GridLookupSpec.simulated(LogicType.LINEAR, _accelerator_grid())
        assert resolve_multiplier(D("130"), spec) == 1

    def test_no_bands_behaves_linear(self):
        spec = _stepped([])
        assert resolve_multiplier(D("130"), spec) == 1

    def test_gate_is_inclusive(self):
        spec = _gated_spec()
        assert resolve_multiplier(D("95"), spec) == 0
        assert resolve_multiplier(D("97.5"), spec) == D("1.0")

    def test_every_achievement_gets_one_multiplier(self):
        spec = _stepped(_accelerator_grid())
        for pct in range(0, 1200, 7):
            assert resolve_multiplier(D(pct), spec) >= 0


class TestGridLookupSpec:
    def test_from_metric_sorts_bands(self):
        metric = PlanMetric(
            metric_name="New Software Booking ARR",
            weightage_percent=D("60"),
            logic_type=LogicType.STEPPED_ACCELERATOR,
            multiplier_grids=list(reversed(_accelerator_grid())),
        )
        spec = GridLookupSpec.from_metric(metric)
        assert [b.min_pct for b in spec.bands] == [0, 100, 120]
        assert spec.metric_name == "New Software Booking ARR"

    def test_overlapping_bands_rejected(self):
        with pytest.raises(PlanConfigurationError) as excinfo:
            _stepped(_bands(("0", "110", "1.0"), ("100", "999", "1.5")))
        assert any("overlap" in issue for issue in excinfo.value.issues)

    def test_inverted_band_rejected(self):
        with pytest.raises(PlanConfigurationError):
            _stepped(_bands(("100", "50", "1.0")))

    def test_is_frozen(self):
        spec = _stepped(_accelerator_grid())
        with pytest.raises(Exception):
            spec.logic_type = LogicType.LINEAR


class TestMarginalPayout:
    @pytest.mark.parametrize("achievement, expected", [
        ("80", "16000"),
        ("110", "22800"),
        ("130", "28800"),
    ])
    def test_accelerator_grid(self, achievement, expected):
        result = calculate_marginal_payout(D(achievement), D("20000"), _stepped(_accelerator_grid()))
        assert result.payout == D(expected)

    def test_tiers_reported(self):
        result = calculate_marginal_payout(D("130"), D("20000"), _stepped(_accelerator_grid()))
        assert len(result.tiers) == 3
        assert result.tiers[1].covered_pct == 20
        assert result.tiers[1].payout == D("5600")
        assert result.tiers[-1].max_pct is None
        assert result.tiers[-1].covered_pct == 10

    def test_weighted_multiplier(self):
        result = calculate_marginal_payout(D("110"), D("20000"), _stepped(_accelerator_grid()))
        assert result.weighted_multiplier == D("1.0364")

    def test_gated_grid(self):
        spec = _gated_spec()
        assert calculate_marginal_payout(D("110"), D("8000"), spec).payout == D("1360")
        assert calculate_marginal_payout(D("97.5"), D("15000"), spec).payout == D("375")
        assert calculate_marginal_payout(D("90"), D("15000"), spec).payout == 0
        assert calculate_marginal_payout(D("95"), D("15000"), spec).payout == 0

    def test_sales_head_grid(self):
        spec = _stepped(_sales_head_grid())
        assert calculate_marginal_payout(D("115"), D("25000"), spec).payout == D("31000")
        assert calculate_marginal_payout(D("120"), D("25000"), spec).payout == D("33000")
        assert calculate_marginal_payout(D("125"), D("18000"), spec).payout == D("25560")

    def test_flat_then_accelerated_grid(self):
        spec = _stepped(_bands(("0", "95", "1.0"), ("95", "100", "1.0"), ("100", "999", "1.2")))
        assert calculate_marginal_payout(D("105"), D("12000"), spec).payout == D("12720")

    def test_single_band_equals_linear_times_multiplier(self):
        spec = _stepped(_bands(("0", "999", "1.5")))
        result = calculate_marginal_payout(D("80"), D("10000"), spec)
        assert result.payout == D("10000") * D("80") / 100 * D("1.5")

    def test_linear(self):
        spec = GridLookupSpec.simulated(LogicType.LINEAR)
        assert calculate_marginal_payout(D("120"), D("10000"), spec).payout == D("12000")


class TestMetricPayout:
    def _metric(self, **overrides):
        fields = dict(
            metric_name="New Software Booking ARR",
            weightage_percent=D("60"),
            logic_type=LogicType.STEPPED_ACCELERATOR,
            multiplier_grids=_accelerator_grid(),
        )
        fields.update(overrides)
        return PlanMetric(**fields)

    def test_payout(self):
        result = calculate_metric_payout(self._metric(), D("1000000"), D("1100000"), D("20000"))
        assert result.achievement_pct == 110
        assert result.payout_usd == D("22800")
        assert result.exclusion_reason is None

    def test_zero_target(self):
        result = calculate_metric_payout(self._metric(), D("0"), D("500000"), D("20000"))
        assert result.payout_usd == 0
        assert result.achievement_pct == 0
        assert result.exclusion_reason == ExclusionReason.ZERO_TARGET

    def test_below_gate(self):
        metric = self._metric(
            logic_type=LogicType.GATED_THRESHOLD,
            gate_threshold_percent=D("95"),
            multiplier_grids=_bands(("0", "95", "0"), ("95", "100", "1.0"), ("100", "999", "1.2")),
        )
        result = calculate_metric_payout(metric, D("100000"), D("90000"), D("15000"))
        assert result.payout_usd == 0
        assert result.exclusion_reason == ExclusionReason.BELOW_GATE


class TestProjections:
    def test_linear_levels(self):
        metric = PlanMetric(metric_name="Closing ARR", weightage_percent=D("100"))
        projections = generate_payout_projections([metric], D("10000"))
        assert [p.label for p in projections] == ["100%", "120%", "150%"]
        assert [p.estimated_payout for p in projections] == [D("10000"), D("12000"), D("15000")]
        assert all(p.average_multiplier == 1 for p in projections)

    def test_accelerated_projection(self):
        metric = PlanMetric(
            metric_name="New Software Booking ARR",
            weightage_percent=D("100"),
            logic_type=LogicType.STEPPED_ACCELERATOR,
            multiplier_grids=_accelerator_grid(),
        )
        [projection] = generate_payout_projections([metric], D("20000"), [D("120")])
        assert projection.estimated_payout == D("25600")
        assert projection.average_multiplier == D("1.0667")
