"""
Full and final settlement for departed employees.

Settlement is paid in two tranches:

- Tranche 1, at departure: every year-end reserve held in the fiscal year is
  released, variable pay, NRR and SPIFF earned to date are pro-rated by days
  worked (less what was already paid), and open clawbacks are deducted.
  A clawback larger than the tranche is carried forward.
- Tranche 2, after a grace period: collection holdbacks are released for
  deals collected within the grace period and forfeited otherwise; any
  carried-forward clawback is recovered from the releases and the rest is
  written off.

Both tranches are pure functions over already-posted payouts, ledger
entries and collection statuses.
"""

import logging
from datetime import date, timedelta
from decimal import Decimal
from enum import Enum
from typing import Dict, List, Optional, Sequence

from pydantic import BaseModel

from .currency_split import ExchangeRateTable, rate_type_for, resolve_rate, usd_to_local
from ...models.comp_schemas import (
    ZERO,
    ClawbackLedgerEntry,
    DealCollectionStatus,
    EmployeeProfile,
    PayoutComponent,
    PayoutType,
    round_money,
)

logger = logging.getLogger(__name__)

DAYS_IN_YEAR = Decimal("365")
DEFAULT_GRACE_DAYS = 90

# Payout types re-settled pro rata in tranche 1
PRO_RATED_TYPES = (PayoutType.VARIABLE_PAY, PayoutType.NRR, PayoutType.SPIFF)


class SettlementLineType(str, Enum):
    YEAR_END_RELEASE = "year_end_release"
    VP_SETTLEMENT = "vp_settlement"
    NRR_SETTLEMENT = "nrr_settlement"
    SPIFF_SETTLEMENT = "spiff_settlement"
    CLAWBACK_DEDUCTION = "clawback_deduction"
    CLAWBACK_CARRYFORWARD = "clawback_carryforward"
    COLLECTION_RELEASE = "collection_release"
    COLLECTION_FORFEIT = "collection_forfeit"
    CLAWBACK_WRITEOFF = "clawback_writeoff"


SETTLEMENT_LINE_FOR = {
    PayoutType.VARIABLE_PAY: SettlementLineType.VP_SETTLEMENT,
    PayoutType.NRR: SettlementLineType.NRR_SETTLEMENT,
    PayoutType.SPIFF: SettlementLineType.SPIFF_SETTLEMENT,
}


class PostedPayout(BaseModel):
    """A payout component from a finalized monthly run."""
    id: str
    month_year: date
    component: PayoutComponent


class SettlementLine(BaseModel):
    tranche: int
    line_type: SettlementLineType
    payout_type: Optional[PayoutType] = None
    amount_usd: Decimal = ZERO
    amount_local: Decimal = ZERO
    local_currency: str = "USD"
    exchange_rate_used: Decimal = Decimal("1")
    deal_id: Optional[str] = None
    source_payout_id: Optional[str] = None
    notes: str = ""


class Tranche1Result(BaseModel):
    lines: List[SettlementLine] = []
    total_usd: Decimal = ZERO
    clawback_carryforward_usd: Decimal = ZERO


class Tranche2Result(BaseModel):
    lines: List[SettlementLine] = []
    total_usd: Decimal = ZERO
    clawback_written_off_usd: Decimal = ZERO


def pro_ration_factor(fiscal_year: int, departure_date: date) -> Decimal:
    """Share of the calendar year worked, Jan 1 through departure inclusive, clamped to [0, 1]."""
    days = (departure_date - date(fiscal_year, 1, 1)).days + 1
    return min(max(Decimal(days) / DAYS_IN_YEAR, ZERO), Decimal("1"))


def _in_year(posted: Sequence[PostedPayout], fiscal_year: int) -> List[PostedPayout]:
    return [p for p in posted if p.month_year.year == fiscal_year]


def _usd_line(tranche: int, line_type: SettlementLineType, amount_usd: Decimal, notes: str,
              deal_id: Optional[str] = None) -> SettlementLine:
    return SettlementLine(
        tranche=tranche, line_type=line_type, amount_usd=amount_usd, amount_local=amount_usd,
        deal_id=deal_id, notes=notes,
    )


def calculate_tranche1(profile: EmployeeProfile, fiscal_year: int, departure_date: date,
                       posted: Sequence[PostedPayout], ledger_entries: Sequence[ClawbackLedgerEntry],
                       earned_to_date_usd: Dict[PayoutType, Decimal],
                       rates: Optional[ExchangeRateTable] = None, places: int = 2) -> Tranche1Result:
    """
    Compute tranche 1 of a full and final settlement.

    Args:
        profile: Departing employee
        fiscal_year: Calendar year being settled
        departure_date: Last working day
        posted: Finalized payout components (any year; filtered to ``fiscal_year``)
        ledger_entries: Clawback ledger (open entries of this employee are deducted)
        earned_to_date_usd: Full-year-basis amounts earned through departure, by payout type
        rates: Market rates for NRR and SPIFF conversion
        places: Currency decimal places

    Returns:
        Tranche1Result; ``total_usd`` is never negative

    Raises:
        MissingExchangeRateError: if a pro-rated line needs a rate that is absent
    """
    rates = rates or ExchangeRateTable()
    year_posted = _in_year(posted, fiscal_year)
    lines: List[SettlementLine] = []
    total_positive = ZERO

    for payout in year_posted:
        component = payout.component
        if component.year_end_amount_usd <= 0:
            continue
        lines.append(SettlementLine(
            tranche=1,
            line_type=SettlementLineType.YEAR_END_RELEASE,
            payout_type=component.payout_type,
            amount_usd=component.year_end_amount_usd,
            amount_local=component.year_end_amount_local,
            local_currency=component.local_currency,
            exchange_rate_used=component.exchange_rate_used,
            deal_id=component.deal_id,
            source_payout_id=payout.id,
            notes=f"Year-end release for {payout.month_year:%Y-%m} ({component.payout_type.value})",
        ))
        total_positive += component.year_end_amount_usd

    factor = pro_ration_factor(fiscal_year, departure_date)
    for payout_type in PRO_RATED_TYPES:
        earned = Decimal(earned_to_date_usd.get(payout_type, ZERO))
        if earned <= 0:
            continue
        prior_paid = sum(
            (p.component.gross_payout_usd for p in year_posted if p.component.payout_type == payout_type), ZERO
        )
        amount = round_money(max(earned * factor - prior_paid, ZERO), places)
        if amount <= 0:
            continue
        rate = resolve_rate(profile, rate_type_for(payout_type), rates, departure_date)
        lines.append(SettlementLine(
            tranche=1,
            line_type=SETTLEMENT_LINE_FOR[payout_type],
            payout_type=payout_type,
            amount_usd=amount,
            amount_local=usd_to_local(amount, rate, places),
            local_currency=profile.local_currency,
            exchange_rate_used=rate,
            notes=(f"Pro-rated {payout_type.value} settlement ({factor * 100:.1f}% of year, "
                   f"earned {earned:.2f}, prior paid {prior_paid:.2f})"),
        ))
        total_positive += amount

    total_clawback = ZERO
    for entry in ledger_entries:
        if entry.employee_id != profile.employee_id or not entry.is_open:
            continue
        remaining = entry.remaining_amount_usd
        if remaining <= 0:
            continue
        total_clawback += remaining
        lines.append(_usd_line(1, SettlementLineType.CLAWBACK_DEDUCTION, -remaining,
                               f"Clawback deduction for deal {entry.deal_id}", entry.deal_id))

    net = total_positive - total_clawback
    carryforward = ZERO
    if net < 0:
        carryforward = -net
        lines.append(_usd_line(1, SettlementLineType.CLAWBACK_CARRYFORWARD, ZERO,
                               f"Clawback carry-forward of {carryforward:.2f} to tranche 2"))

    logger.info(
        f"Settlement tranche 1 for {profile.employee_id}: {len(lines)} line(s), "
        f"net {max(net, ZERO)} USD, carry-forward {carryforward}"
    )
    return Tranche1Result(lines=lines, total_usd=max(net, ZERO), clawback_carryforward_usd=carryforward)


def calculate_tranche2(profile: EmployeeProfile, fiscal_year: int, departure_date: date,
                       posted: Sequence[PostedPayout], collections: Sequence[DealCollectionStatus],
                       clawback_carryforward_usd: Decimal = ZERO,
                       grace_days: int = DEFAULT_GRACE_DAYS) -> Tranche2Result:
    """
    Compute tranche 2: release or forfeit each collection holdback.

    A holdback is released only when its deal was collected on or before
    ``departure_date + grace_days``. The tranche 1 carry-forward is recovered
    from the releases; whatever they cannot cover is written off.
    """
    deadline = departure_date + timedelta(days=grace_days)
    by_deal = {c.deal_id: c for c in collections}
    lines: List[SettlementLine] = []
    released = ZERO

    for payout in _in_year(posted, fiscal_year):
        component = payout.component
        if component.collection_amount_usd <= 0 or not component.deal_id:
            continue
        collection = by_deal.get(component.deal_id)
        collected_in_time = (
            collection is not None
            and collection.is_collected
            and collection.collection_date is not None
            and collection.collection_date <= deadline
        )
        if collected_in_time:
            lines.append(SettlementLine(
                tranche=2,
                line_type=SettlementLineType.COLLECTION_RELEASE,
                payout_type=component.payout_type,
                amount_usd=component.collection_amount_usd,
                amount_local=component.collection_amount_local,
                local_currency=component.local_currency,
                exchange_rate_used=component.exchange_rate_used,
                deal_id=component.deal_id,
                source_payout_id=payout.id,
                notes=f"Collection released, collected on {collection.collection_date}",
            ))
            released += component.collection_amount_usd
        else:
            lines.append(SettlementLine(
                tranche=2,
                line_type=SettlementLineType.COLLECTION_FORFEIT,
                payout_type=component.payout_type,
                local_currency=component.local_currency,
                exchange_rate_used=component.exchange_rate_used,
                deal_id=component.deal_id,
                source_payout_id=payout.id,
                notes=f"Collection forfeited, not collected within {grace_days} days of departure",
            ))

    carryforward = Decimal(clawback_carryforward_usd)
    written_off = ZERO
    if carryforward > 0:
        deduction = min(carryforward, released)
        if deduction > 0:
            lines.append(_usd_line(2, SettlementLineType.CLAWBACK_DEDUCTION, -deduction,
                                   f"Clawback carry-forward deduction ({carryforward:.2f} outstanding, "
                                   f"{deduction:.2f} recovered)"))
            released -= deduction
        written_off = carryforward - deduction
        if written_off > 0:
            lines.append(_usd_line(2, SettlementLineType.CLAWBACK_WRITEOFF, ZERO,
                                   f"Unrecovered clawback written off: {written_off:.2f}"))
            logger.warning(f"Settlement for {profile.employee_id}: {written_off} USD of clawback written off")

    logger.info(f"Settlement tranche 2 for {profile.employee_id}: {len(lines)} line(s), released {released} USD")
    return Tranche2Result(lines=lines, total_usd=max(released, ZERO), clawback_written_off_usd=written_off)
