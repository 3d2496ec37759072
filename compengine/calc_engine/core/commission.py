"""
Deal-level commission calculation.

A deal either qualifies for the full commission or earns nothing: the
minimum threshold and minimum gross margin are cliffs, not ramps.
"""

import logging
from decimal import Decimal
from typing import Dict, List, Optional, Sequence

from pydantic import BaseModel

from ...models.comp_schemas import (
    HUNDRED,
    ZERO,
    CompPlan,
    Deal,
    ExclusionReason,
    round_money,
)

logger = logging.getLogger(__name__)

# Commission type -> Deal attribute holding the commissionable value
COMMISSION_VALUE_FIELDS: Dict[str, str] = {
    'Perpetual License': 'perpetual_license_usd',
    'Managed Services': 'managed_services_usd',
    'Implementation': 'implementation_usd',
    'CR/ER': 'cr_er_usd',
    'TCV': 'tcv_usd',
}


class DealCommission(BaseModel):
    qualifies: bool
    gross_usd: Decimal = ZERO
    exclusion_reason: Optional[ExclusionReason] = None


class CommissionResult(BaseModel):
    deal_id: str
    commission_type: str
    deal_value_usd: Decimal
    commission_rate_pct: Decimal
    min_threshold_usd: Optional[Decimal] = None
    min_gp_margin_pct: Optional[Decimal] = None
    deal_margin_pct: Optional[Decimal] = None
    credit_pct: Decimal = HUNDRED
    qualifies: bool
    gross_usd: Decimal = ZERO
    exclusion_reason: Optional[ExclusionReason] = None


def calculate_deal_commission(deal_value: Decimal, rate_pct: Decimal,
                              min_threshold: Optional[Decimal] = None,
                              min_margin: Optional[Decimal] = None,
                              deal_margin: Optional[Decimal] = None) -> DealCommission:
    """
    Gross commission for one deal value.

    Unset constraints do not constrain. A minimum margin with no recorded
    deal margin disqualifies the deal.
    """
    deal_value = Decimal(deal_value)
    if min_threshold is not None and deal_value < min_threshold:
        return DealCommission(qualifies=False, exclusion_reason=ExclusionReason.BELOW_MIN_THRESHOLD)
    if min_margin is not None:
        if deal_margin is None:
            return DealCommission(qualifies=False, exclusion_reason=ExclusionReason.MISSING_MARGIN)
        if deal_margin < min_margin:
            return DealCommission(qualifies=False, exclusion_reason=ExclusionReason.BELOW_MIN_MARGIN)
    return DealCommission(qualifies=True, gross_usd=round_money(deal_value * Decimal(rate_pct) / HUNDRED))


def deal_value_for(deal: Deal, commission_type: str) -> Decimal:
    field = COMMISSION_VALUE_FIELDS.get(commission_type)
    if field is None:
        logger.warning(f"Unknown commission type '{commission_type}' on deal {deal.id}")
        return ZERO
    return getattr(deal, field)


def calculate_commissions_for_deals(deals: Sequence[Deal], plan: CompPlan,
                                    employee_id: Optional[str] = None) -> List[CommissionResult]:
    """
    One result per deal and active plan commission with a positive deal value.

    Eligibility is tested on the full deal value; the employee's participant
    split is applied to the gross afterwards.
    """
    results = []
    active = [c for c in plan.commissions if c.is_active]
    for deal in deals:
        credit = deal.participant_split(employee_id) if employee_id else HUNDRED
        for commission in active:
            value = deal_value_for(deal, commission.commission_type)
            if value <= 0:
                continue
            outcome = calculate_deal_commission(
                value,
                commission.commission_rate_pct,
                commission.min_threshold_usd,
                commission.min_gp_margin_pct,
                deal.gp_margin_percent,
            )
            gross = round_money(outcome.gross_usd * credit / HUNDRED)
            results.append(CommissionResult(
                deal_id=deal.id,
                commission_type=commission.commission_type,
                deal_value_usd=value,
                commission_rate_pct=commission.commission_rate_pct,
                min_threshold_usd=commission.min_threshold_usd,
                min_gp_margin_pct=commission.min_gp_margin_pct,
                deal_margin_pct=deal.gp_margin_percent,
                credit_pct=credit,
                qualifies=outcome.qualifies,
                gross_usd=gross,
                exclusion_reason=outcome.exclusion_reason,
            ))

    qualifying = sum(1 for r in results if r.qualifies)
    logger.info(f"Commissions for plan {plan.id}: {qualifying}/{len(results)} deal lines qualify")
    return results
