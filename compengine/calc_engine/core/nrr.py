"""
NRR additional pay for CR/ER and Implementation bookings.

    payout = variable OTE * nrr_ote_pct / 100 * eligible actuals / (CR/ER target + Impl target)

Each family is filtered by its own minimum gross margin. There is no
multiplier grid.
"""

import logging
from decimal import Decimal
from typing import List, Optional, Sequence

from pydantic import BaseModel

from .grid_resolver import achievement_percent
from ...models.comp_schemas import HUNDRED, ZERO, Deal, ExclusionReason, round_money

logger = logging.getLogger(__name__)


class NRRDealBreakdown(BaseModel):
    deal_id: str
    cr_er_usd: Decimal
    impl_usd: Decimal
    gp_margin_pct: Optional[Decimal] = None
    is_eligible: bool
    eligible_value_usd: Decimal = ZERO
    exclusion_reason: Optional[ExclusionReason] = None
    exclusion_detail: Optional[str] = None


class NRRCalculationResult(BaseModel):
    eligible_cr_er_usd: Decimal = ZERO
    total_cr_er_usd: Decimal = ZERO
    eligible_impl_usd: Decimal = ZERO
    total_impl_usd: Decimal = ZERO
    nrr_actuals: Decimal = ZERO
    nrr_target: Decimal = ZERO
    achievement_pct: Decimal = ZERO
    payout_usd: Decimal = ZERO
    deal_breakdowns: List[NRRDealBreakdown] = []
    exclusion_reason: Optional[ExclusionReason] = None


def _margin_ok(margin: Optional[Decimal], minimum: Decimal) -> bool:
    return margin is not None and margin >= minimum


def calculate_nrr_payout(deals: Sequence[Deal], cr_er_target_usd: Decimal, impl_target_usd: Decimal,
                         nrr_ote_pct: Decimal, variable_ote_usd: Decimal,
                         cr_er_min_gp_margin: Decimal, impl_min_gp_margin: Decimal
                         ) -> NRRCalculationResult:
    """
    Compute NRR actuals, achievement and payout.

    Deals without a recorded margin are excluded from both families.
    """
    nrr_target = Decimal(cr_er_target_usd) + Decimal(impl_target_usd)
    nrr_ote_pct = Decimal(nrr_ote_pct)

    if nrr_target <= 0:
        return NRRCalculationResult(nrr_target=nrr_target, exclusion_reason=ExclusionReason.ZERO_TARGET)

    eligible_cr_er = total_cr_er = eligible_impl = total_impl = ZERO
    breakdowns = []

    for deal in deals:
        cr_er = deal.cr_er_usd
        impl = deal.implementation_usd
        if cr_er <= 0 and impl <= 0:
            continue

        margin = deal.gp_margin_percent
        eligible_value = ZERO
        details = []

        if cr_er > 0:
            total_cr_er += cr_er
            if _margin_ok(margin, cr_er_min_gp_margin):
                eligible_cr_er += cr_er
                eligible_value += cr_er
            else:
                details.append(f"GP margin {margin if margin is not None else 'N/A'}% below CR/ER minimum {cr_er_min_gp_margin}%")

        if impl > 0:
            total_impl += impl
            if _margin_ok(margin, impl_min_gp_margin):
                eligible_impl += impl
                eligible_value += impl
            else:
                details.append(f"GP margin {margin if margin is not None else 'N/A'}% below Implementation minimum {impl_min_gp_margin}%")

        is_eligible = eligible_value > 0
        reason = None
        if not is_eligible:
            reason = ExclusionReason.MISSING_MARGIN if margin is None else ExclusionReason.BELOW_MIN_MARGIN

        breakdowns.append(NRRDealBreakdown(
            deal_id=deal.id,
            cr_er_usd=cr_er,
            impl_usd=impl,
            gp_margin_pct=margin,
            is_eligible=is_eligible,
            eligible_value_usd=eligible_value,
            exclusion_reason=reason,
            exclusion_detail='; '.join(details) if not is_eligible else None,
        ))

    nrr_actuals = eligible_cr_er + eligible_impl
    achievement = achievement_percent(nrr_actuals, nrr_target)

    if nrr_ote_pct <= 0:
        payout = ZERO
        reason = ExclusionReason.ZERO_NRR_OTE
    else:
        payout = round_money(Decimal(variable_ote_usd) * nrr_ote_pct / HUNDRED * nrr_actuals / nrr_target)
        reason = None

    logger.debug(f"NRR actuals {nrr_actuals} against target {nrr_target}: payout {payout}")
    return NRRCalculationResult(
        eligible_cr_er_usd=eligible_cr_er,
        total_cr_er_usd=total_cr_er,
        eligible_impl_usd=eligible_impl,
        total_impl_usd=total_impl,
        nrr_actuals=nrr_actuals,
        nrr_target=nrr_target,
        achievement_pct=round_money(achievement),
        payout_usd=payout,
        deal_breakdowns=breakdowns,
        exclusion_reason=reason,
    )
