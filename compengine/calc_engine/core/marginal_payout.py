"""
Marginal (tiered) payout calculation for target-based metrics.

Each band only pays its multiplier on the slice of achievement that falls
inside it, like income-tax brackets:

    payout = sum(covered_width * allocation / 100 * band.multiplier_value)

Linear metrics and metrics without bands pay allocation * achievement / 100.
"""

import logging
from decimal import Decimal
from typing import Iterable, List, Optional, Sequence

from pydantic import BaseModel

from .grid_resolver import GridLookupSpec, achievement_percent
from ...models.comp_schemas import HUNDRED, ZERO, ExclusionReason, PlanMetric, round_money

logger = logging.getLogger(__name__)

DEFAULT_PROJECTION_LEVELS = (Decimal("100"), Decimal("120"), Decimal("150"))


class TierContribution(BaseModel):
    min_pct: Decimal
    max_pct: Optional[Decimal] = None  # None for the open-ended top band
    covered_pct: Decimal
    multiplier_value: Decimal
    payout: Decimal


class MarginalPayoutResult(BaseModel):
    payout: Decimal = ZERO
    weighted_multiplier: Decimal = ZERO
    tiers: List[TierContribution] = []


class MetricPayoutResult(BaseModel):
    metric_name: str
    target_usd: Decimal
    actual_usd: Decimal
    allocation_usd: Decimal
    achievement_pct: Decimal
    multiplier: Decimal
    payout_usd: Decimal
    tiers: List[TierContribution] = []
    exclusion_reason: Optional[ExclusionReason] = None


class PayoutProjection(BaseModel):
    achievement_level: Decimal
    label: str
    estimated_payout: Decimal
    average_multiplier: Decimal


def calculate_marginal_payout(achievement_pct: Decimal, allocation: Decimal,
                              spec: GridLookupSpec) -> MarginalPayoutResult:
    """
    Compute the tiered payout for one metric.

    Args:
        achievement_pct: Achievement as a percentage (110 means 110%)
        allocation: Bonus allocation for the metric at 100% achievement (USD)
        spec: Grid to evaluate

    Returns:
        MarginalPayoutResult with the payout, the equivalent weighted
        multiplier and the per-band contributions
    """
    achievement_pct = Decimal(achievement_pct)
    allocation = Decimal(allocation)

    if achievement_pct <= 0 or spec.blocks(achievement_pct):
        return MarginalPayoutResult()

    if not spec.uses_bands:
        return MarginalPayoutResult(
            payout=round_money(allocation * achievement_pct / HUNDRED),
            weighted_multiplier=Decimal("1"),
        )

    per_point = allocation / HUNDRED
    tiers = []
    total = ZERO
    last = len(spec.bands) - 1
    for index, band in enumerate(spec.bands):
        if achievement_pct <= band.min_pct:
            break
        upper = achievement_pct if index == last else min(achievement_pct, band.max_pct)
        covered = upper - band.min_pct
        if covered <= 0:
            continue
        contribution = covered * per_point * band.multiplier_value
        total += contribution
        tiers.append(TierContribution(
            min_pct=band.min_pct,
            max_pct=None if index == last else band.max_pct,
            covered_pct=covered,
            multiplier_value=band.multiplier_value,
            payout=round_money(contribution),
        ))

    linear_equivalent = per_point * achievement_pct
    weighted = total / linear_equivalent if linear_equivalent > 0 else ZERO
    return MarginalPayoutResult(
        payout=round_money(total),
        weighted_multiplier=weighted.quantize(Decimal("0.0001")),
        tiers=tiers,
    )


def calculate_metric_payout(metric: PlanMetric, target: Decimal, actual: Decimal,
                            allocation: Decimal) -> MetricPayoutResult:
    """Achievement, multiplier and marginal payout for one plan metric."""
    spec = GridLookupSpec.from_metric(metric)
    target = Decimal(target)
    actual = Decimal(actual)
    allocation = Decimal(allocation)

    base = dict(
        metric_name=metric.metric_name,
        target_usd=target,
        actual_usd=actual,
        allocation_usd=allocation,
    )

    if target <= 0:
        return MetricPayoutResult(
            **base, achievement_pct=ZERO, multiplier=ZERO, payout_usd=ZERO,
            exclusion_reason=ExclusionReason.ZERO_TARGET,
        )

    achievement = achievement_percent(actual, target)
    if spec.blocks(achievement):
        logger.debug(f"{metric.metric_name}: {achievement:.2f}% at or below gate {spec.gate_threshold_percent}")
        return MetricPayoutResult(
            **base, achievement_pct=achievement, multiplier=ZERO, payout_usd=ZERO,
            exclusion_reason=ExclusionReason.BELOW_GATE,
        )

    result = calculate_marginal_payout(achievement, allocation, spec)
    return MetricPayoutResult(
        **base,
        achievement_pct=achievement,
        multiplier=result.weighted_multiplier,
        payout_usd=result.payout,
        tiers=result.tiers,
    )


def generate_payout_projections(metrics: Sequence[PlanMetric], target_bonus_usd: Decimal,
                                levels: Iterable[Decimal] = DEFAULT_PROJECTION_LEVELS
                                ) -> List[PayoutProjection]:
    """Estimate the total payout if every metric landed at each achievement level."""
    target_bonus_usd = Decimal(target_bonus_usd)
    specs = [(metric, GridLookupSpec.simulated(
        metric.logic_type,
        metric.multiplier_grids,
        metric.gate_threshold_percent,
        metric_name=metric.metric_name,
    )) for metric in metrics]

    projections = []
    for level in levels:
        level = Decimal(level)
        total_payout = ZERO
        total_weight = ZERO
        weighted_sum = ZERO
        for metric, spec in specs:
            allocation = target_bonus_usd * metric.weightage_percent / HUNDRED
            result = calculate_marginal_payout(level, allocation, spec)
            total_payout += result.payout
            total_weight += metric.weightage_percent
            weighted_sum += result.weighted_multiplier * metric.weightage_percent

        average = weighted_sum / total_weight if total_weight > 0 else Decimal("1")
        projections.append(PayoutProjection(
            achievement_level=level,
            label=f"{level.normalize():f}%",
            estimated_payout=round_money(total_payout),
            average_multiplier=average.quantize(Decimal("0.0001")),
        ))
    return projections
