"""Tests for the clawback ledger and period locking."""
from datetime import date
from decimal import Decimal

import pytest

from compengine.calc_engine.core.clawback_ledger import (
    clawback_due_date,
    detect_overdue_collections,
    is_overdue,
    open_clawback,
    reconcile_collections,
    record_recovery,
    transition,
    write_off,
)
from compengine.calc_engine.core.errors import InvalidTransitionError, PeriodLockedError
from compengine.calc_engine.core.period_lock import PeriodLockRegistry, update_collection_status
from compengine.models.comp_schemas import (
    ClawbackLedgerEntry,
    ClawbackStatus,
    CompPlan,
    DealCollectionStatus,
)

D = Decimal


def _plan(**overrides):
    fields = dict(id="P1", name="Hunter", effective_year=2025)
    fields.update(overrides)
    return CompPlan(**fields)


def _collection(**overrides):
    fields = dict(deal_id="D1", booking_month=date(2025, 1, 1), deal_value_usd=D("100000"))
    fields.update(overrides)
    return DealCollectionStatus(**fields)


def _entry(**overrides):
    fields = dict(id="E1:D1", employee_id="E1", deal_id="D1", original_amount_usd=D("2500"),
                  triggered_month=date(2025, 7, 1))
    fields.update(overrides)
    return ClawbackLedgerEntry(**fields)


class TestDueDates:
    def test_milestone_date_wins(self):
        collection = _collection(first_milestone_due_date=date(2025, 3, 15))
        assert clawback_due_date(collection) == date(2025, 3, 15)

    def test_fallback_period(self):
        assert clawback_due_date(_collection()) == date(2025, 6, 30)
        assert clawback_due_date(_collection(), period_days=90) == date(2025, 4, 1)

    def test_overdue_is_strict(self):
        collection = _collection()
        assert not is_overdue(collection, date(2025, 6, 30))
        assert is_overdue(collection, date(2025, 7, 1))

    def test_collected_or_triggered_never_overdue(self):
        assert not is_overdue(_collection(is_collected=True), date(2026, 1, 1))
        assert not is_overdue(_collection(is_clawback_triggered=True), date(2026, 1, 1))

    def test_detect_overdue(self):
        collections = [_collection(), _collection(deal_id="D2", booking_month=date(2025, 5, 1))]
        assert [c.deal_id for c in detect_overdue_collections(collections, date(2025, 8, 1))] == ["D1"]


class TestLedgerEntries:
    def test_open_clawback(self):
        entry = open_clawback(_plan(), "E1", _collection(), D("2500"), date(2025, 7, 15))
        assert entry.id == "E1:D1"
        assert entry.status == ClawbackStatus.PENDING
        assert entry.triggered_month == date(2025, 7, 1)
        assert entry.remaining_amount_usd == D("2500")

    def test_exempt_plan_never_opens(self):
        assert open_clawback(_plan(is_clawback_exempt=True), "E1", _collection(), D("2500"), date(2025, 7, 1)) is None

    def test_nothing_held_never_opens(self):
        assert open_clawback(_plan(), "E1", _collection(), D("0"), date(2025, 7, 1)) is None

    def test_partial_then_full_recovery(self):
        entry = _entry()
        partial = record_recovery(entry, D("40000"), D("100000"), date(2025, 8, 1))
        assert partial.status == ClawbackStatus.PARTIAL
        assert partial.recovered_amount_usd == D("1000")
        assert partial.remaining_amount_usd == D("1500")

        full = record_recovery(partial, D("100000"), D("100000"), date(2025, 9, 1))
        assert full.status == ClawbackStatus.RECOVERED
        assert full.recovered_amount_usd == D("2500")
        assert full.last_recovery_month == date(2025, 9, 1)

    def test_recovery_is_idempotent(self):
        partial = record_recovery(_entry(), D("40000"), D("100000"), date(2025, 8, 1))
        assert record_recovery(partial, D("40000"), D("100000"), date(2025, 8, 1)) is partial

    def test_recovery_never_exceeds_original(self):
        full = record_recovery(_entry(), D("150000"), D("100000"), date(2025, 8, 1))
        assert full.recovered_amount_usd == D("2500")

    def test_terminal_states(self):
        full = record_recovery(_entry(), D("100000"), D("100000"), date(2025, 8, 1))
        with pytest.raises(InvalidTransitionError):
            write_off(full)
        written = write_off(_entry(), date(2025, 12, 1))
        assert written.status == ClawbackStatus.WRITTEN_OFF
        with pytest.raises(InvalidTransitionError):
            transition(written, ClawbackStatus.PARTIAL)


class TestReconcileCollections:
    def test_opens_entry_for_overdue_deal(self):
        result = reconcile_collections(_plan(), "E1", [], [_collection()], {"D1": D("2500")}, date(2025, 7, 31))
        [opened] = result.opened
        assert opened.original_amount_usd == D("2500")
        [triggered] = result.triggered_collections
        assert triggered.is_clawback_triggered
        assert triggered.clawback_amount_usd == D("2500")

    def test_plan_period_overrides_default(self):
        result = reconcile_collections(_plan(clawback_period_days=365), "E1", [], [_collection()],
                                       {"D1": D("2500")}, date(2025, 7, 31))
        assert result.changed == []

    def test_known_deal_not_reopened(self):
        written = write_off(_entry())
        result = reconcile_collections(_plan(), "E1", [written], [_collection()], {"D1": D("2500")},
                                       date(2025, 7, 31))
        assert result.changed == []

    def test_collection_recovers_open_entry(self):
        collection = _collection(is_collected=True, collection_amount_usd=D("40000"),
                                 collection_month=date(2025, 8, 1))
        result = reconcile_collections(_plan(), "E1", [_entry()], [collection], {}, date(2025, 8, 31))
        [updated] = result.updated
        assert updated.status == ClawbackStatus.PARTIAL
        assert updated.last_recovery_month == date(2025, 8, 1)

    def test_exempt_plan(self):
        result = reconcile_collections(_plan(is_clawback_exempt=True), "E1", [], [_collection()],
                                       {"D1": D("2500")}, date(2025, 7, 31))
        assert result.changed == []
        assert result.triggered_collections == []


class TestPeriodLock:
    def test_lock_normalizes_month(self):
        registry = PeriodLockRegistry()
        registry.lock(date(2025, 3, 20))
        assert registry.is_locked(date(2025, 3, 1))
        assert registry.locked_months == {date(2025, 3, 1)}

    def test_ensure_unlocked(self):
        registry = PeriodLockRegistry([date(2025, 3, 1)])
        registry.ensure_unlocked(date(2025, 4, 1))
        with pytest.raises(PeriodLockedError) as excinfo:
            registry.ensure_unlocked(date(2025, 3, 5), "recalculate")
        assert excinfo.value.month == date(2025, 3, 1)
        assert "recalculate" in str(excinfo.value)

    def test_update_collection_status(self):
        registry = PeriodLockRegistry()
        updated = update_collection_status(registry, _collection(), True, date(2025, 4, 10), D("100000"))
        assert updated.is_collected
        assert updated.collection_month == date(2025, 4, 1)
        assert updated.collection_amount_usd == D("100000")

    def test_locked_booking_month_rejected(self):
        registry = PeriodLockRegistry([date(2025, 1, 1)])
        with pytest.raises(PeriodLockedError):
            update_collection_status(registry, _collection(), True, date(2025, 4, 10))

    def test_locked_collection_month_rejected(self):
        registry = PeriodLockRegistry([date(2025, 4, 1)])
        with pytest.raises(PeriodLockedError):
            update_collection_status(registry, _collection(), True, date(2025, 4, 10))
