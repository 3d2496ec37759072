"""
Large-deal SPIFF calculation.

    software variable OTE = variable OTE * linked metric weightage / 100
    deal SPIFF            = software variable OTE * deal ARR / software target * rate / 100

Each deal is rounded to the cent before summing.
"""

import logging
from decimal import Decimal
from typing import Dict, List, Optional, Sequence

from pydantic import BaseModel

from ...models.comp_schemas import (
    HUNDRED,
    ZERO,
    Deal,
    ExclusionReason,
    PlanMetric,
    PlanSpiff,
    round_money,
)

logger = logging.getLogger(__name__)


class SpiffDealBreakdown(BaseModel):
    deal_id: str
    project_id: str = ""
    customer_name: Optional[str] = None
    spiff_name: str
    spiff_rate_pct: Decimal
    deal_arr_usd: Decimal
    spiff_payout_usd: Decimal = ZERO
    is_eligible: bool
    exclusion_reason: Optional[ExclusionReason] = None


class SpiffCalculationResult(BaseModel):
    spiff_name: str
    total_spiff_usd: Decimal = ZERO
    software_variable_ote_usd: Decimal = ZERO
    linked_metric_weightage: Decimal = ZERO
    deal_breakdowns: List[SpiffDealBreakdown] = []
    exclusion_reason: Optional[ExclusionReason] = None


class SpiffAggregateResult(BaseModel):
    total_spiff_usd: Decimal = ZERO
    eligible_actuals_usd: Decimal = ZERO
    results: List[SpiffCalculationResult] = []

    @property
    def breakdowns(self) -> List[SpiffDealBreakdown]:
        return [b for r in self.results for b in r.deal_breakdowns]


def calculate_spiff_payout(spiff: PlanSpiff, deals: Sequence[Deal], metrics: Sequence[PlanMetric],
                           variable_ote_usd: Decimal, software_target_usd: Decimal) -> SpiffCalculationResult:
    """Compute one SPIFF across the given deals."""
    if not spiff.is_active:
        return SpiffCalculationResult(spiff_name=spiff.spiff_name, exclusion_reason=ExclusionReason.INACTIVE)

    linked = next((m for m in metrics if m.metric_name == spiff.linked_metric_name), None)
    if linked is None or linked.weightage_percent <= 0:
        logger.warning(f"SPIFF '{spiff.spiff_name}' has no weighted metric '{spiff.linked_metric_name}'")
        return SpiffCalculationResult(spiff_name=spiff.spiff_name, exclusion_reason=ExclusionReason.NO_LINKED_METRIC)

    software_target_usd = Decimal(software_target_usd)
    if software_target_usd <= 0:
        return SpiffCalculationResult(
            spiff_name=spiff.spiff_name,
            linked_metric_weightage=linked.weightage_percent,
            exclusion_reason=ExclusionReason.ZERO_TARGET,
        )

    software_ote = Decimal(variable_ote_usd) * linked.weightage_percent / HUNDRED
    breakdowns = []
    total = ZERO

    for deal in deals:
        arr = deal.new_software_booking_arr_usd
        if arr <= 0:
            continue

        common = dict(
            deal_id=deal.id,
            project_id=deal.project_id,
            customer_name=deal.customer_name,
            spiff_name=spiff.spiff_name,
            spiff_rate_pct=spiff.spiff_rate_pct,
            deal_arr_usd=arr,
        )
        if spiff.min_deal_value_usd is not None and arr < spiff.min_deal_value_usd:
            breakdowns.append(SpiffDealBreakdown(
                **common, is_eligible=False, exclusion_reason=ExclusionReason.BELOW_MIN_DEAL_VALUE,
            ))
            continue

        payout = round_money(software_ote * arr / software_target_usd * spiff.spiff_rate_pct / HUNDRED)
        total += payout
        breakdowns.append(SpiffDealBreakdown(**common, spiff_payout_usd=payout, is_eligible=True))

    return SpiffCalculationResult(
        spiff_name=spiff.spiff_name,
        total_spiff_usd=total,
        software_variable_ote_usd=round_money(software_ote),
        linked_metric_weightage=linked.weightage_percent,
        deal_breakdowns=breakdowns,
    )


def calculate_all_spiffs(spiffs: Sequence[PlanSpiff], deals: Sequence[Deal], metrics: Sequence[PlanMetric],
                         variable_ote_usd: Decimal, targets_by_metric: Dict[str, Decimal]) -> SpiffAggregateResult:
    """Run every active SPIFF of a plan and total the result."""
    results = []
    for spiff in spiffs:
        if not spiff.is_active:
            continue
        target = targets_by_metric.get(spiff.linked_metric_name, ZERO)
        results.append(calculate_spiff_payout(spiff, deals, metrics, variable_ote_usd, target))

    return SpiffAggregateResult(
        total_spiff_usd=sum((r.total_spiff_usd for r in results), ZERO),
        eligible_actuals_usd=sum(
            (b.deal_arr_usd for r in results for b in r.deal_breakdowns if b.is_eligible), ZERO
        ),
        results=results,
    )
