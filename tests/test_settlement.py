"""Tests for full and final settlement of departed employees."""
from datetime import date
from decimal import Decimal

import pytest

from compengine.calc_engine.config.config_manager import ConfigManager
from compengine.calc_engine.core.currency_split import ExchangeRateTable
from compengine.calc_engine.core.errors import MissingExchangeRateError
from compengine.calc_engine.core.settlement import (
    PostedPayout,
    SettlementLineType,
    calculate_tranche1,
    calculate_tranche2,
    pro_ration_factor,
)
from compengine.core.payout_run import EmployeePayoutInput, PayoutCalculator
from compengine.models.comp_schemas import (
    ClawbackLedgerEntry,
    ClawbackStatus,
    CompPlan,
    DealCollectionStatus,
    EmployeeProfile,
    ExchangeRate,
    PayoutComponent,
    PayoutType,
    PlanMetric,
    TargetSegment,
)

D = Decimal
DEPARTURE = date(2025, 6, 30)


def _profile(**overrides):
    fields = dict(employee_id="E1", full_name="Departing Rep")
    fields.update(overrides)
    return EmployeeProfile(**fields)


def _posted(payout_id, month, payout_type, gross, collection="0", year_end="0", deal_id=None):
    collection, year_end = D(collection), D(year_end)
    booking = D(gross) - collection - year_end
    component = PayoutComponent(
        payout_type=payout_type, name=payout_type.value, deal_id=deal_id,
        gross_payout_usd=D(gross), booking_amount_usd=booking,
        collection_amount_usd=collection, year_end_amount_usd=year_end,
        gross_payout_local=D(gross), booking_amount_local=booking,
        collection_amount_local=collection, year_end_amount_local=year_end,
    )
    return PostedPayout(id=payout_id, month_year=month, component=component)


def _entry(deal_id, original, employee_id="E1", status=ClawbackStatus.PENDING, recovered="0"):
    return ClawbackLedgerEntry(
        id=f"{employee_id}:{deal_id}", employee_id=employee_id, deal_id=deal_id,
        original_amount_usd=D(original), recovered_amount_usd=D(recovered),
        status=status, triggered_month=date(2025, 5, 1),
    )


def _collection(deal_id, collected_on=None):
    return DealCollectionStatus(
        deal_id=deal_id, booking_month=date(2025, 2, 1), deal_value_usd=D("100000"),
        is_collected=collected_on is not None, collection_date=collected_on,
    )


def _lines(result, line_type):
    return [line for line in result.lines if line.line_type == line_type]


class TestProRationFactor:
    def test_first_and_last_day(self):
        assert pro_ration_factor(2025, date(2025, 1, 1)) == D(1) / D(365)
        assert pro_ration_factor(2025, date(2025, 12, 31)) == 1

    def test_clamped_outside_year(self):
        assert pro_ration_factor(2025, date(2024, 12, 31)) == 0
        assert pro_ration_factor(2025, date(2026, 3, 1)) == 1


class TestTranche1:
    def test_year_end_release_pro_rata_and_clawback(self):
        posted = [
            _posted("p1", date(2025, 1, 1), PayoutType.VARIABLE_PAY, "3000", collection="750"),
            _posted("p2", date(2025, 3, 1), PayoutType.VARIABLE_PAY, "4000", collection="1000"),
            _posted("p3", date(2025, 2, 1), PayoutType.COMMISSION, "5000", year_end="500", deal_id="D1"),
            _posted("p0", date(2024, 11, 1), PayoutType.COMMISSION, "9000", year_end="999", deal_id="D0"),
        ]
        ledger = [
            _entry("D7", "1000"),
            _entry("D8", "400", status=ClawbackStatus.RECOVERED, recovered="400"),
            _entry("D9", "800", employee_id="E2"),
        ]
        result = calculate_tranche1(_profile(), 2025, DEPARTURE, posted, ledger,
                                    {PayoutType.VARIABLE_PAY: D("20000")})

        [release] = _lines(result, SettlementLineType.YEAR_END_RELEASE)
        assert release.amount_usd == D("500")
        assert release.source_payout_id == "p3"
        assert release.payout_type == PayoutType.COMMISSION

        [vp] = _lines(result, SettlementLineType.VP_SETTLEMENT)
        assert vp.amount_usd == D("2917.81")
        assert "prior paid 7000.00" in vp.notes

        [deduction] = _lines(result, SettlementLineType.CLAWBACK_DEDUCTION)
        assert deduction.amount_usd == D("-1000")
        assert deduction.deal_id == "D7"

        assert result.total_usd == D("2417.81")
        assert result.clawback_carryforward_usd == 0

    def test_clawback_larger_than_tranche_carries_forward(self):
        posted = [_posted("p3", date(2025, 2, 1), PayoutType.COMMISSION, "5000", year_end="500", deal_id="D1")]
        ledger = [_entry("D7", "1500", status=ClawbackStatus.PARTIAL, recovered="300")]
        result = calculate_tranche1(_profile(), 2025, DEPARTURE, posted, ledger, {})
        assert result.total_usd == 0
        assert result.clawback_carryforward_usd == D("700")
        [carry] = _lines(result, SettlementLineType.CLAWBACK_CARRYFORWARD)
        assert carry.amount_usd == 0

    def test_prior_payouts_cover_pro_rated_amount(self):
        posted = [_posted("p1", date(2025, 1, 1), PayoutType.VARIABLE_PAY, "3000")]
        result = calculate_tranche1(_profile(), 2025, date(2025, 3, 31), posted, [],
                                    {PayoutType.VARIABLE_PAY: D("10000")})
        assert result.lines == []
        assert result.total_usd == 0

    def test_local_currency_rates(self):
        profile = _profile(local_currency="INR", compensation_rate_to_usd=D("0.0125"))
        rates = ExchangeRateTable([ExchangeRate(currency_code="INR", month_year=date(2025, 6, 1),
                                                rate_to_usd=D("0.012"))])
        posted = [
            _posted("p1", date(2025, 1, 1), PayoutType.VARIABLE_PAY, "3000"),
            _posted("p2", date(2025, 3, 1), PayoutType.VARIABLE_PAY, "4000"),
        ]
        result = calculate_tranche1(profile, 2025, DEPARTURE, posted, [],
                                    {PayoutType.VARIABLE_PAY: D("20000"), PayoutType.NRR: D("1000")}, rates)

        [vp] = _lines(result, SettlementLineType.VP_SETTLEMENT)
        assert vp.exchange_rate_used == D("0.0125")
        assert vp.amount_local == D("233424.80")
        assert vp.local_currency == "INR"

        [nrr] = _lines(result, SettlementLineType.NRR_SETTLEMENT)
        assert nrr.amount_usd == D("495.89")
        assert nrr.exchange_rate_used == D("0.012")
        assert nrr.amount_local == D("41324.17")

    def test_missing_market_rate(self):
        profile = _profile(local_currency="INR", compensation_rate_to_usd=D("0.0125"))
        with pytest.raises(MissingExchangeRateError):
            calculate_tranche1(profile, 2025, DEPARTURE, [], [], {PayoutType.SPIFF: D("1000")})


class TestTranche2:
    def _posted_holdbacks(self):
        return [
            _posted("c1", date(2025, 2, 1), PayoutType.COMMISSION, "5000", collection="1250", deal_id="D1"),
            _posted("c4", date(2025, 3, 1), PayoutType.COMMISSION, "2000", collection="500", deal_id="D4"),
            _posted("c5", date(2025, 4, 1), PayoutType.COMMISSION, "1000", collection="250", deal_id="D5"),
            _posted("v1", date(2025, 4, 1), PayoutType.VARIABLE_PAY, "4000", collection="1000"),
        ]

    def _collections(self):
        return [
            _collection("D1", date(2025, 8, 15)),
            _collection("D4", date(2025, 10, 15)),
            _collection("D5"),
        ]

    def test_release_within_grace_period(self):
        result = calculate_tranche2(_profile(), 2025, DEPARTURE, self._posted_holdbacks(), self._collections())
        [release] = _lines(result, SettlementLineType.COLLECTION_RELEASE)
        assert release.deal_id == "D1"
        assert release.amount_usd == D("1250")
        forfeits = _lines(result, SettlementLineType.COLLECTION_FORFEIT)
        assert [f.deal_id for f in forfeits] == ["D4", "D5"]
        assert all(f.amount_usd == 0 for f in forfeits)
        assert result.total_usd == D("1250")

    def test_longer_grace_period_releases_late_collection(self):
        result = calculate_tranche2(_profile(), 2025, DEPARTURE, self._posted_holdbacks(), self._collections(),
                                    grace_days=120)
        assert result.total_usd == D("1750")

    def test_carryforward_recovered_from_releases(self):
        result = calculate_tranche2(_profile(), 2025, DEPARTURE, self._posted_holdbacks(), self._collections(),
                                    clawback_carryforward_usd=D("700"))
        [deduction] = _lines(result, SettlementLineType.CLAWBACK_DEDUCTION)
        assert deduction.amount_usd == D("-700")
        assert result.total_usd == D("550")
        assert _lines(result, SettlementLineType.CLAWBACK_WRITEOFF) == []

    def test_unrecovered_carryforward_written_off(self):
        result = calculate_tranche2(_profile(), 2025, DEPARTURE, self._posted_holdbacks(), self._collections(),
                                    clawback_carryforward_usd=D("2000"))
        assert result.total_usd == 0
        assert result.clawback_written_off_usd == D("750")
        assert len(_lines(result, SettlementLineType.CLAWBACK_WRITEOFF)) == 1

    def test_nothing_released_writes_off_everything(self):
        result = calculate_tranche2(_profile(), 2025, DEPARTURE, self._posted_holdbacks(), [],
                                    clawback_carryforward_usd=D("300"))
        assert result.total_usd == 0
        assert result.clawback_written_off_usd == D("300")
        assert _lines(result, SettlementLineType.CLAWBACK_DEDUCTION) == []


def _departure_input(**overrides):
    fields = dict(
        profile=_profile(),
        plan=CompPlan(id="P1", name="Hunter 2025", effective_year=2025,
                      metrics=[PlanMetric(metric_name="Closing ARR", weightage_percent=D("100"))]),
        evaluation_month=date(2025, 6, 1),
        target_segments=[TargetSegment(
            employee_id="E1", plan_id="P1", target_bonus_usd=D("20000"),
            effective_start_date=date(2025, 1, 1), effective_end_date=date(2025, 12, 31),
        )],
        metric_targets={"Closing ARR": D("1000000")},
        metric_actuals={"Closing ARR": D("500000")},
    )
    fields.update(overrides)
    return EmployeePayoutInput(**fields)


class TestCalculatorSettlement:
    def test_earned_to_date(self):
        earned = PayoutCalculator().earned_to_date(_departure_input(), DEPARTURE)
        assert earned[PayoutType.VARIABLE_PAY] == D("10000")
        assert earned[PayoutType.NRR] == 0
        assert earned[PayoutType.SPIFF] == 0

    def test_settle_departure(self):
        data = _departure_input(ledger_entries=[_entry("D7", "900")])
        posted = [_posted("p1", date(2025, 3, 1), PayoutType.VARIABLE_PAY, "2000")]
        result = PayoutCalculator().settle_departure(data, DEPARTURE, posted)
        [vp] = _lines(result, SettlementLineType.VP_SETTLEMENT)
        assert vp.amount_usd == D("2958.90")
        assert result.total_usd == D("2058.90")

    def test_release_uses_configured_grace_days(self, tmp_path):
        path = tmp_path / "engine.yaml"
        path.write_text("settlement:\n  grace_days: 30\n")
        calculator = PayoutCalculator(config_manager=ConfigManager(str(path)))
        posted = [_posted("c1", date(2025, 2, 1), PayoutType.COMMISSION, "5000", collection="1250", deal_id="D1")]
        data = _departure_input(collections=[_collection("D1", date(2025, 8, 15))])
        result = calculator.release_collection_holdbacks(data, DEPARTURE, posted)
        assert result.total_usd == 0
        assert PayoutCalculator().release_collection_holdbacks(data, DEPARTURE, posted).total_usd == D("1250")
