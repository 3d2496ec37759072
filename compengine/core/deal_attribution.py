"""
Deal-level attribution of variable pay.

Variable pay is earned on aggregate achievement; this spreads it back onto
the deals that produced it in proportion to each deal's credited ARR:

    deal VP = total VP * deal ARR / total ARR

The booking tranche of each deal is what a clawback could later recover.
"""

import logging
from decimal import Decimal
from typing import List, Optional, Sequence

from pydantic import BaseModel

from ..calc_engine.core.currency_split import split_payout
from ..calc_engine.core.marginal_payout import MetricPayoutResult
from ..models.comp_schemas import HUNDRED, ZERO, Deal, PayoutSplit, round_money

logger = logging.getLogger(__name__)


class DealVariablePayAttribution(BaseModel):
    deal_id: str
    project_id: str = ""
    customer_name: Optional[str] = None
    employee_id: Optional[str] = None
    metric_name: str
    deal_value_usd: Decimal
    proportion_pct: Decimal
    variable_pay_usd: Decimal
    booking_usd: Decimal
    collection_usd: Decimal
    year_end_usd: Decimal
    clawback_eligible_usd: Decimal


class VariablePaySummary(BaseModel):
    total_deals: int = 0
    total_arr_usd: Decimal = ZERO
    total_variable_pay_usd: Decimal = ZERO
    total_booking_usd: Decimal = ZERO
    total_collection_usd: Decimal = ZERO
    total_year_end_usd: Decimal = ZERO
    total_clawback_eligible_usd: Decimal = ZERO


def attribute_variable_pay(deals: Sequence[Deal], metric_payout: MetricPayoutResult, split: PayoutSplit,
                           employee_id: Optional[str] = None, places: int = 2
                           ) -> List[DealVariablePayAttribution]:
    """
    Spread ``metric_payout`` over ``deals`` by credited new software ARR.

    The last deal absorbs rounding so the attributions add up to the payout.
    """
    credited = []
    for deal in deals:
        share = deal.participant_split(employee_id) if employee_id else HUNDRED
        value = deal.new_software_booking_arr_usd * share / HUNDRED
        if value > 0:
            credited.append((deal, value))

    total_arr = sum((value for _, value in credited), ZERO)
    total_vp = metric_payout.payout_usd
    if total_arr <= 0 or total_vp <= 0:
        return []

    attributions = []
    assigned = ZERO
    for index, (deal, value) in enumerate(credited):
        if index == len(credited) - 1:
            amount = total_vp - assigned
        else:
            amount = round_money(total_vp * value / total_arr, places)
        assigned += amount
        tranches = split_payout(amount, split, places)
        attributions.append(DealVariablePayAttribution(
            deal_id=deal.id,
            project_id=deal.project_id,
            customer_name=deal.customer_name,
            employee_id=employee_id,
            metric_name=metric_payout.metric_name,
            deal_value_usd=value,
            proportion_pct=round_money(value / total_arr * HUNDRED),
            variable_pay_usd=amount,
            booking_usd=tranches.booking,
            collection_usd=tranches.collection,
            year_end_usd=tranches.year_end,
            clawback_eligible_usd=tranches.booking,
        ))

    logger.debug(f"Attributed {total_vp} of {metric_payout.metric_name} across {len(attributions)} deal(s)")
    return attributions


def summarize_attributions(attributions: Sequence[DealVariablePayAttribution]) -> VariablePaySummary:
    return VariablePaySummary(
        total_deals=len(attributions),
        total_arr_usd=sum((a.deal_value_usd for a in attributions), ZERO),
        total_variable_pay_usd=sum((a.variable_pay_usd for a in attributions), ZERO),
        total_booking_usd=sum((a.booking_usd for a in attributions), ZERO),
        total_collection_usd=sum((a.collection_usd for a in attributions), ZERO),
        total_year_end_usd=sum((a.year_end_usd for a in attributions), ZERO),
        total_clawback_eligible_usd=sum((a.clawback_eligible_usd for a in attributions), ZERO),
    )
