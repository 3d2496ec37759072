"""
Clawback ledger for collection-linked payouts.

When a booked deal is still uncollected after its first milestone due date
(or, without one, after the plan's clawback period), the collection tranche
held for it is booked as a ``pending`` clawback. Later collections recover
the entry in proportion to the cash received.

Every function returns new objects; ledger entries are never mutated.
"""

import logging
from datetime import date, timedelta
from decimal import Decimal
from typing import Dict, List, Optional, Sequence

from pydantic import BaseModel

from .errors import InvalidTransitionError
from ...models.comp_schemas import (
    CLAWBACK_TRANSITIONS,
    ZERO,
    ClawbackLedgerEntry,
    ClawbackStatus,
    CompPlan,
    DealCollectionStatus,
    round_money,
)

logger = logging.getLogger(__name__)

DEFAULT_CLAWBACK_DAYS = 180


class ReconciliationResult(BaseModel):
    opened: List[ClawbackLedgerEntry] = []
    updated: List[ClawbackLedgerEntry] = []
    triggered_collections: List[DealCollectionStatus] = []

    @property
    def changed(self) -> List[ClawbackLedgerEntry]:
        return self.opened + self.updated


def transition(entry: ClawbackLedgerEntry, target: ClawbackStatus, **changes) -> ClawbackLedgerEntry:
    """Move ``entry`` to ``target`` or raise InvalidTransitionError."""
    if target not in CLAWBACK_TRANSITIONS[entry.status]:
        raise InvalidTransitionError(entry.status, target)
    return entry.model_copy(update={'status': target, **changes})


def clawback_due_date(collection: DealCollectionStatus, period_days: int = DEFAULT_CLAWBACK_DAYS) -> date:
    if collection.first_milestone_due_date is not None:
        return collection.first_milestone_due_date
    return collection.booking_month + timedelta(days=period_days)


def is_overdue(collection: DealCollectionStatus, as_of: date, period_days: int = DEFAULT_CLAWBACK_DAYS) -> bool:
    if collection.is_collected or collection.is_clawback_triggered:
        return False
    return clawback_due_date(collection, period_days) < as_of


def detect_overdue_collections(collections: Sequence[DealCollectionStatus], as_of: date,
                               period_days: int = DEFAULT_CLAWBACK_DAYS) -> List[DealCollectionStatus]:
    overdue = [c for c in collections if is_overdue(c, as_of, period_days)]
    if overdue:
        logger.info(f"{len(overdue)} uncollected deal(s) past due as of {as_of}")
    return overdue


def open_clawback(plan: CompPlan, employee_id: str, collection: DealCollectionStatus, amount_usd: Decimal,
                  triggered_month: date, entry_id: Optional[str] = None) -> Optional[ClawbackLedgerEntry]:
    """Create a pending entry for ``amount_usd``; None for exempt plans or nothing held."""
    if plan.is_clawback_exempt:
        logger.debug(f"Plan {plan.id} is clawback exempt; deal {collection.deal_id} skipped")
        return None
    amount_usd = round_money(amount_usd)
    if amount_usd <= 0:
        return None
    return ClawbackLedgerEntry(
        id=entry_id or f"{employee_id}:{collection.deal_id}",
        employee_id=employee_id,
        deal_id=collection.deal_id,
        original_amount_usd=amount_usd,
        triggered_month=triggered_month.replace(day=1),
    )


def mark_triggered(collection: DealCollectionStatus, amount_usd: Decimal) -> DealCollectionStatus:
    return collection.model_copy(update={
        'is_clawback_triggered': True,
        'clawback_amount_usd': collection.clawback_amount_usd + amount_usd,
    })


def record_recovery(entry: ClawbackLedgerEntry, collected_usd: Decimal, deal_value_usd: Decimal,
                    recovery_month: date) -> ClawbackLedgerEntry:
    """
    Recover ``entry`` in proportion to the cash collected so far on the deal.

    ``collected_usd`` is cumulative, so re-running with the same figure does
    not recover twice. Recovery never exceeds the remaining amount.
    """
    collected_usd = Decimal(collected_usd)
    if collected_usd <= 0:
        return entry

    deal_value_usd = Decimal(deal_value_usd)
    if deal_value_usd <= 0 or collected_usd >= deal_value_usd:
        due = entry.original_amount_usd
    else:
        due = round_money(entry.original_amount_usd * collected_usd / deal_value_usd)

    increment = min(max(due - entry.recovered_amount_usd, ZERO), entry.remaining_amount_usd)
    if increment <= 0:
        return entry

    recovered = entry.recovered_amount_usd + increment
    target = ClawbackStatus.RECOVERED if recovered >= entry.original_amount_usd else ClawbackStatus.PARTIAL
    return transition(
        entry, target,
        recovered_amount_usd=recovered,
        last_recovery_month=recovery_month.replace(day=1),
    )


def write_off(entry: ClawbackLedgerEntry, month: Optional[date] = None) -> ClawbackLedgerEntry:
    changes = {'last_recovery_month': month.replace(day=1)} if month else {}
    return transition(entry, ClawbackStatus.WRITTEN_OFF, **changes)


def reconcile_collections(plan: CompPlan, employee_id: str, entries: Sequence[ClawbackLedgerEntry],
                          collections: Sequence[DealCollectionStatus], held_amounts: Dict[str, Decimal],
                          as_of: date, period_days: int = DEFAULT_CLAWBACK_DAYS) -> ReconciliationResult:
    """
    Open entries for newly overdue deals and recover open entries from new collections.

    Args:
        plan: Plan snapshot (exempt plans never open entries)
        employee_id: Employee whose ledger is reconciled
        entries: Existing ledger entries for the employee
        collections: Current collection status of the employee's deals
        held_amounts: Collection tranche held per deal id (USD)
        as_of: Evaluation date
        period_days: Clawback period for deals without a milestone date, unless the plan sets one
    """
    open_by_deal = {e.deal_id: e for e in entries if e.employee_id == employee_id and e.is_open}
    known_deals = {e.deal_id for e in entries if e.employee_id == employee_id}
    result = ReconciliationResult()

    for collection in collections:
        entry = open_by_deal.get(collection.deal_id)

        if entry is not None and collection.is_collected:
            collected = collection.collection_amount_usd
            if collected is None:
                collected = collection.deal_value_usd
            updated = record_recovery(entry, collected, collection.deal_value_usd,
                                      collection.collection_month or as_of)
            if updated is not entry:
                result.updated.append(updated)
            continue

        if collection.deal_id in known_deals:
            continue
        if not is_overdue(collection, as_of, plan.clawback_period_days or period_days):
            continue

        held = held_amounts.get(collection.deal_id, ZERO)
        opened = open_clawback(plan, employee_id, collection, held, as_of)
        if opened is not None:
            result.opened.append(opened)
            result.triggered_collections.append(mark_triggered(collection, opened.original_amount_usd))

    if result.changed:
        logger.info(
            f"Clawback reconciliation for {employee_id}: {len(result.opened)} opened, "
            f"{len(result.updated)} updated"
        )
    return result
