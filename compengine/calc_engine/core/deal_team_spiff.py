"""
Deal-team SPIFF pool allocation.

A fixed USD pool is attached to every deal whose new software ARR reaches
the configured minimum. The pool is shared among the deal's participants
whose role is not excluded. Allocations are proposed as ``pending`` and
become payable only once approved.
"""

import logging
from datetime import date, datetime
from decimal import Decimal
from typing import Dict, List, Optional, Sequence

from .errors import AllocationError, InvalidTransitionError
from ...models.comp_schemas import (
    ZERO,
    AllocationStatus,
    Deal,
    DealParticipant,
    DealTeamSpiffAllocation,
    DealTeamSpiffConfig,
    round_money,
)

logger = logging.getLogger(__name__)


def qualifying_deals(deals: Sequence[Deal], config: DealTeamSpiffConfig) -> List[Deal]:
    if not config.is_active:
        return []
    return [d for d in deals if d.new_software_booking_arr_usd >= config.min_deal_arr_usd]


def eligible_participants(deal: Deal, config: DealTeamSpiffConfig) -> List[DealParticipant]:
    """Participants of ``deal`` outside the excluded roles, one per employee."""
    excluded = {role.lower() for role in config.exclude_roles}
    seen = set()
    eligible = []
    for participant in deal.participants:
        if participant.participant_role.lower() in excluded or participant.employee_id in seen:
            continue
        seen.add(participant.employee_id)
        eligible.append(participant)
    return eligible


def _equal_shares(pool: Decimal, employee_ids: List[str]) -> Dict[str, Decimal]:
    share = round_money(pool / len(employee_ids))
    shares = {emp: share for emp in employee_ids}
    # rounding residue goes to the first participant
    shares[employee_ids[0]] += pool - share * len(employee_ids)
    return shares


def propose_allocations(deal: Deal, config: DealTeamSpiffConfig, payout_month: date,
                        shares: Optional[Dict[str, Decimal]] = None,
                        notes: Optional[str] = None) -> List[DealTeamSpiffAllocation]:
    """
    Build pending allocations of the pool for one deal.

    Without ``shares`` the pool is split equally. Manual shares must name
    eligible participants only and may not exceed the pool.

    Raises:
        AllocationError: if the deal does not qualify or the shares do not fit
    """
    if not qualifying_deals([deal], config):
        raise AllocationError(
            f"Deal {deal.id} does not qualify: ARR {deal.new_software_booking_arr_usd} "
            f"below {config.min_deal_arr_usd} or pool inactive"
        )

    eligible_ids = [p.employee_id for p in eligible_participants(deal, config)]
    if not eligible_ids:
        raise AllocationError(f"Deal {deal.id} has no eligible deal-team participants")

    pool = config.spiff_pool_amount_usd
    if shares is None:
        shares = _equal_shares(pool, eligible_ids)
    else:
        shares = {emp: Decimal(amount) for emp, amount in shares.items()}
        unknown = sorted(set(shares) - set(eligible_ids))
        if unknown:
            raise AllocationError(f"Not eligible for deal {deal.id} pool: {', '.join(unknown)}")
        if any(amount < 0 for amount in shares.values()):
            raise AllocationError(f"Negative allocation for deal {deal.id}")
        total = sum(shares.values(), ZERO)
        if total > pool:
            raise AllocationError(f"Allocations for deal {deal.id} total {total}, pool is {pool}")

    allocations = [
        DealTeamSpiffAllocation(
            deal_id=deal.id,
            employee_id=emp,
            allocated_amount_usd=amount,
            notes=notes,
            payout_month=payout_month,
        )
        for emp, amount in shares.items()
        if amount > 0
    ]
    logger.info(f"Proposed {len(allocations)} deal-team SPIFF allocation(s) for deal {deal.id}")
    return allocations


def approve_allocation(allocation: DealTeamSpiffAllocation, approved_by: str,
                       approved_at: Optional[datetime] = None) -> DealTeamSpiffAllocation:
    if allocation.status != AllocationStatus.PENDING:
        raise InvalidTransitionError(allocation.status, AllocationStatus.APPROVED)
    return allocation.model_copy(update={
        'status': AllocationStatus.APPROVED,
        'approved_by': approved_by,
        'approved_at': approved_at or datetime.now(),
    })


def approve_allocations(allocations: Sequence[DealTeamSpiffAllocation], approved_by: str,
                        deal_id: Optional[str] = None,
                        approved_at: Optional[datetime] = None) -> List[DealTeamSpiffAllocation]:
    """Approve every pending allocation (of ``deal_id`` if given); others pass through unchanged."""
    approved_at = approved_at or datetime.now()
    result = []
    for allocation in allocations:
        if allocation.status == AllocationStatus.PENDING and deal_id in (None, allocation.deal_id):
            allocation = approve_allocation(allocation, approved_by, approved_at)
        result.append(allocation)
    return result


def approved_allocations(allocations: Sequence[DealTeamSpiffAllocation], employee_id: str,
                         payout_month: date) -> List[DealTeamSpiffAllocation]:
    return [
        a for a in allocations
        if a.status == AllocationStatus.APPROVED
        and a.employee_id == employee_id
        and a.payout_month == payout_month
    ]


def approved_total(allocations: Sequence[DealTeamSpiffAllocation], employee_id: str,
                   payout_month: date) -> Decimal:
    return sum((a.allocated_amount_usd for a in approved_allocations(allocations, employee_id, payout_month)), ZERO)
