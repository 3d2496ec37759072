"""
Period locking for finalized payout months.
"""

import logging
import threading
from datetime import date
from decimal import Decimal
from typing import Iterable, Optional, Set

from .errors import PeriodLockedError
from ...models.comp_schemas import DealCollectionStatus

logger = logging.getLogger(__name__)


def _month(value: date) -> date:
    return value.replace(day=1)


class PeriodLockRegistry:
    """Set of locked months. Locking is one-way within a registry."""

    def __init__(self, locked_months: Iterable[date] = ()):
        self._locked: Set[date] = {_month(m) for m in locked_months}
        self._guard = threading.Lock()

    def lock(self, month: date) -> None:
        with self._guard:
            self._locked.add(_month(month))
        logger.info(f"Period {month:%Y-%m} locked")

    def is_locked(self, month: date) -> bool:
        return _month(month) in self._locked

    def ensure_unlocked(self, month: date, action: str = "modify") -> None:
        if self.is_locked(month):
            raise PeriodLockedError(_month(month), action)

    @property
    def locked_months(self) -> Set[date]:
        return set(self._locked)


def update_collection_status(registry: PeriodLockRegistry, collection: DealCollectionStatus,
                             is_collected: bool, collection_date: Optional[date] = None,
                             collection_amount_usd: Optional[Decimal] = None) -> DealCollectionStatus:
    """
    Record a collection for a deal.

    Raises:
        PeriodLockedError: if the deal's booking month or the collection month is locked
    """
    registry.ensure_unlocked(collection.booking_month, "update collection status")
    collection_month = _month(collection_date) if collection_date else None
    if collection_month is not None:
        registry.ensure_unlocked(collection_month, "record collection")

    return collection.model_copy(update={
        'is_collected': is_collected,
        'collection_date': collection_date,
        'collection_amount_usd': Decimal(str(collection_amount_usd)) if collection_amount_usd is not None else None,
        'collection_month': collection_month,
    })
