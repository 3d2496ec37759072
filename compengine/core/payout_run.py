"""
Payout run orchestration.

For one employee and one evaluation month the calculator resolves the
blended target, runs every calculator independently, converts and splits
each gross amount, and reconciles clawbacks. A batch run does the same for
many employees, optionally on a thread pool.
"""

import calendar
import logging
from concurrent.futures import ThreadPoolExecutor
from datetime import date
from decimal import Decimal
from typing import Dict, List, Optional, Sequence

import pandas as pd
from pydantic import BaseModel, Field

from .deal_attribution import DealVariablePayAttribution, attribute_variable_pay
from ..calc_engine.config.config_manager import ConfigManager
from ..calc_engine.core.clawback_ledger import reconcile_collections
from ..calc_engine.core.commission import calculate_commissions_for_deals
from ..calc_engine.core.currency_split import ExchangeRateTable, apply_currency_and_split, split_payout
from ..calc_engine.core.deal_team_spiff import approved_allocations
from ..calc_engine.core.errors import CompEngineError, PeriodLockedError
from ..calc_engine.core.grid_resolver import GridLookupSpec, resolve_multiplier
from ..calc_engine.core.marginal_payout import PayoutProjection, calculate_metric_payout, generate_payout_projections
from ..calc_engine.core.nrr import calculate_nrr_payout
from ..calc_engine.core.period_lock import PeriodLockRegistry
from ..calc_engine.core.settlement import (
    PostedPayout,
    Tranche1Result,
    Tranche2Result,
    calculate_tranche1,
    calculate_tranche2,
)
from ..calc_engine.core.spiff import calculate_all_spiffs
from ..calc_engine.core.target_blender import blend_targets
from ..calc_engine.utils.logging_utils import LoggerAdapter, PayoutRunLogger, log_calculation_step
from ..calc_engine.utils.validation import ensure_valid_plan, validate_comp_plan
from ..models.comp_schemas import (
    BOOKING_ONLY,
    HUNDRED,
    ZERO,
    ClawbackLedgerEntry,
    CompPlan,
    Deal,
    DealCollectionStatus,
    DealTeamSpiffAllocation,
    EmployeeProfile,
    PayoutComponent,
    PayoutSplit,
    PayoutType,
    PlanMetric,
    TargetSegment,
)

logger = logging.getLogger(__name__)

USD = "USD"


class EmployeePayoutInput(BaseModel):
    """Everything needed to compute one employee's payout for one month."""
    profile: EmployeeProfile
    plan: CompPlan
    evaluation_month: date
    target_segments: List[TargetSegment] = []
    metric_targets: Dict[str, Decimal] = {}
    metric_actuals: Dict[str, Decimal] = {}
    deals: List[Deal] = []
    collections: List[DealCollectionStatus] = []
    ledger_entries: List[ClawbackLedgerEntry] = []
    held_amounts: Optional[Dict[str, Decimal]] = None
    cr_er_target_usd: Decimal = ZERO
    impl_target_usd: Decimal = ZERO
    deal_team_allocations: List[DealTeamSpiffAllocation] = []
    arr_metric_name: Optional[str] = None

    @property
    def employee_id(self) -> str:
        return self.profile.employee_id


class EmployeePayoutResult(BaseModel):
    employee_id: str
    plan_id: str
    evaluation_month: date
    local_currency: str = USD
    variable_ote_usd: Decimal = ZERO
    is_blended: bool = False
    components: List[PayoutComponent] = []
    attributions: List[DealVariablePayAttribution] = []
    ledger_changes: List[ClawbackLedgerEntry] = []
    triggered_collections: List[DealCollectionStatus] = []

    def _sum(self, field: str) -> Decimal:
        return sum((getattr(c, field) for c in self.components), ZERO)

    @property
    def total_gross_usd(self) -> Decimal:
        return self._sum('gross_payout_usd')

    @property
    def paid_now_usd(self) -> Decimal:
        return self._sum('booking_amount_usd')

    @property
    def held_for_collection_usd(self) -> Decimal:
        return self._sum('collection_amount_usd')

    @property
    def held_for_year_end_usd(self) -> Decimal:
        return self._sum('year_end_amount_usd')

    @property
    def total_gross_local(self) -> Decimal:
        return self._sum('gross_payout_local')

    @property
    def paid_now_local(self) -> Decimal:
        return self._sum('booking_amount_local')

    @property
    def held_for_collection_local(self) -> Decimal:
        return self._sum('collection_amount_local')

    @property
    def held_for_year_end_local(self) -> Decimal:
        return self._sum('year_end_amount_local')

    def totals_by_type(self) -> Dict[PayoutType, Decimal]:
        totals: Dict[PayoutType, Decimal] = {}
        for component in self.components:
            totals[component.payout_type] = totals.get(component.payout_type, ZERO) + component.gross_payout_usd
        return totals


class ValidationIssue(BaseModel):
    code: str
    message: str
    employee_id: Optional[str] = None


class ValidationReport(BaseModel):
    errors: List[ValidationIssue] = []
    warnings: List[ValidationIssue] = []

    @property
    def is_valid(self) -> bool:
        return not self.errors


class PayoutRunResult(BaseModel):
    evaluation_month: date
    results: List[EmployeePayoutResult] = []
    failures: Dict[str, str] = {}
    validation: ValidationReport = Field(default_factory=ValidationReport)
    log_files: Dict[str, str] = {}

    @property
    def total_gross_usd(self) -> Decimal:
        return sum((r.total_gross_usd for r in self.results), ZERO)

    def to_frame(self) -> pd.DataFrame:
        """One row per payout component, amounts as floats."""
        rows = []
        for result in self.results:
            for c in result.components:
                rows.append({
                    'employee_id': result.employee_id,
                    'plan_id': result.plan_id,
                    'month': result.evaluation_month.isoformat(),
                    'payout_type': c.payout_type.value,
                    'name': c.name,
                    'deal_id': c.deal_id,
                    'achievement_pct': float(c.achievement_pct),
                    'multiplier': float(c.multiplier),
                    'gross_usd': float(c.gross_payout_usd),
                    'booking_usd': float(c.booking_amount_usd),
                    'collection_usd': float(c.collection_amount_usd),
                    'year_end_usd': float(c.year_end_amount_usd),
                    'local_currency': c.local_currency,
                    'exchange_rate': float(c.exchange_rate_used),
                    'rate_type': c.rate_type.value if c.rate_type else None,
                    'gross_local': float(c.gross_payout_local),
                    'booking_local': float(c.booking_amount_local),
                    'collection_local': float(c.collection_amount_local),
                    'year_end_local': float(c.year_end_amount_local),
                    'exclusion_reason': c.exclusion_reason.value if c.exclusion_reason else None,
                })
        columns = [
            'employee_id', 'plan_id', 'month', 'payout_type', 'name', 'deal_id',
            'achievement_pct', 'multiplier', 'gross_usd', 'booking_usd', 'collection_usd',
            'year_end_usd', 'local_currency', 'exchange_rate', 'rate_type', 'gross_local',
            'booking_local', 'collection_local', 'year_end_local', 'exclusion_reason',
        ]
        return pd.DataFrame(rows, columns=columns)

    def summary_frame(self) -> pd.DataFrame:
        """Per-employee totals by payout type."""
        frame = self.to_frame()
        if frame.empty:
            return frame
        return frame.pivot_table(
            index='employee_id', columns='payout_type', values='gross_usd',
            aggfunc='sum', fill_value=0.0,
        )


def _month_end(month: date) -> date:
    return date(month.year, month.month, calendar.monthrange(month.year, month.month)[1])


def _arr_metric(plan: CompPlan, name: Optional[str]) -> Optional[PlanMetric]:
    if name:
        return plan.get_metric(name)
    for metric in plan.metrics:
        lowered = metric.metric_name.lower()
        if 'new software' in lowered or 'new bookings' in lowered:
            return metric
    return None


class PayoutCalculator:
    """Computes payouts for employees against plan snapshots."""

    def __init__(self, rates: Optional[ExchangeRateTable] = None,
                 lock_registry: Optional[PeriodLockRegistry] = None,
                 config_manager: Optional[ConfigManager] = None):
        self.rates = rates or ExchangeRateTable()
        self.lock_registry = lock_registry or PeriodLockRegistry()
        self.config_manager = config_manager or ConfigManager()
        self.places = self.config_manager.currency_places
        self.clawback_days = self.config_manager.clawback_period_days
        self.logger = logging.getLogger(__name__)

    def _finish(self, component: PayoutComponent, split: PayoutSplit, data: EmployeePayoutInput) -> PayoutComponent:
        finished = apply_currency_and_split(
            component, split, data.profile, self.rates, data.evaluation_month,
            clawback_exempt=data.plan.is_clawback_exempt, places=self.places,
        )
        log_calculation_step(
            finished.payout_type.value,
            {
                'employee_id': data.employee_id,
                'name': finished.name,
                'deal_id': finished.deal_id,
                'gross_usd': finished.gross_payout_usd,
                'gross_local': finished.gross_payout_local,
                'exclusion_reason': finished.exclusion_reason,
            },
            level=logging.DEBUG,
        )
        return finished

    def _held_for_collection(self, data: EmployeePayoutInput, plan: CompPlan,
                             attributions: List[DealVariablePayAttribution]) -> Dict[str, Decimal]:
        """
        Collection tranche held per tracked deal.

        Commission holdbacks are recomputed from the deal itself, so a deal
        booked in an earlier month still carries its holdback when it goes
        overdue later.
        """
        held: Dict[str, Decimal] = {}
        for attribution in attributions:
            held[attribution.deal_id] = held.get(attribution.deal_id, ZERO) + attribution.collection_usd

        tracked = {c.deal_id for c in data.collections}
        tracked_deals = [d for d in data.deals if d.id in tracked]
        for line in calculate_commissions_for_deals(tracked_deals, plan, data.employee_id):
            if not line.qualifies:
                continue
            commission = plan.active_commission(line.commission_type)
            tranche = split_payout(line.gross_usd, commission.payout_split, self.places,
                                   plan.is_clawback_exempt).collection
            held[line.deal_id] = held.get(line.deal_id, ZERO) + tranche
        return held

    def calculate_employee_payout(self, data: EmployeePayoutInput) -> EmployeePayoutResult:
        """
        Compute every payout component for one employee and month.

        Raises:
            PeriodLockedError: if the evaluation month is locked
            PlanConfigurationError: if the plan fails validation
            TargetSegmentError: if the target segments overlap
            MissingExchangeRateError: if a needed rate is absent
        """
        month = data.evaluation_month.replace(day=1)
        self.lock_registry.ensure_unlocked(month, "recalculate payouts")
        plan = ensure_valid_plan(data.plan)
        log = LoggerAdapter(self.logger, {'employee': data.employee_id, 'month': f"{month:%Y-%m}"})

        blended = blend_targets(data.target_segments, month, plan.effective_year)
        variable_ote = blended.effective_target_usd

        month_deals = [d for d in data.deals if d.month_year.replace(day=1) == month]
        ytd_deals = [
            d for d in data.deals
            if d.month_year.year == plan.effective_year and d.month_year.replace(day=1) <= month
        ]

        components: List[PayoutComponent] = []
        attributions: List[DealVariablePayAttribution] = []
        arr_metric = _arr_metric(plan, data.arr_metric_name)

        # Variable pay
        for metric in plan.metrics:
            allocation = variable_ote * metric.weightage_percent / HUNDRED
            outcome = calculate_metric_payout(
                metric,
                data.metric_targets.get(metric.metric_name, ZERO),
                data.metric_actuals.get(metric.metric_name, ZERO),
                allocation,
            )
            components.append(self._finish(PayoutComponent(
                payout_type=PayoutType.VARIABLE_PAY,
                name=metric.metric_name,
                target_usd=outcome.target_usd,
                actual_usd=outcome.actual_usd,
                achievement_pct=outcome.achievement_pct,
                multiplier=outcome.multiplier,
                gross_payout_usd=outcome.payout_usd,
                exclusion_reason=outcome.exclusion_reason,
                details={
                    'allocation_usd': str(allocation),
                    'band_multiplier': str(resolve_multiplier(outcome.achievement_pct, GridLookupSpec.from_metric(metric))),
                },
            ), metric.payout_split, data))
            if arr_metric is not None and metric.metric_name == arr_metric.metric_name:
                attributions = attribute_variable_pay(
                    ytd_deals, outcome, metric.payout_split, data.employee_id, self.places,
                )

        # Commissions
        for line in calculate_commissions_for_deals(month_deals, plan, data.employee_id):
            commission = plan.active_commission(line.commission_type)
            components.append(self._finish(PayoutComponent(
                payout_type=PayoutType.COMMISSION,
                name=line.commission_type,
                deal_id=line.deal_id,
                actual_usd=line.deal_value_usd,
                gross_payout_usd=line.gross_usd,
                exclusion_reason=line.exclusion_reason,
                details={'rate_pct': str(line.commission_rate_pct), 'credit_pct': str(line.credit_pct)},
            ), commission.payout_split, data))

        # NRR additional pay
        if plan.nrr_ote_percent > 0 or data.cr_er_target_usd + data.impl_target_usd > 0:
            nrr = calculate_nrr_payout(
                ytd_deals, data.cr_er_target_usd, data.impl_target_usd, plan.nrr_ote_percent,
                variable_ote, plan.cr_er_min_gp_margin_pct, plan.impl_min_gp_margin_pct,
            )
            components.append(self._finish(PayoutComponent(
                payout_type=PayoutType.NRR,
                name=PayoutType.NRR.value,
                target_usd=nrr.nrr_target,
                actual_usd=nrr.nrr_actuals,
                achievement_pct=nrr.achievement_pct,
                gross_payout_usd=nrr.payout_usd,
                exclusion_reason=nrr.exclusion_reason,
            ), plan.nrr_payout_split, data))

        # Large-deal SPIFFs
        spiffs = calculate_all_spiffs(plan.spiffs, month_deals, plan.metrics, variable_ote, data.metric_targets)
        # results come back in plan order, one per active SPIFF
        active_spiffs = [s for s in plan.spiffs if s.is_active]
        for spiff, spiff_result in zip(active_spiffs, spiffs.results):
            components.append(self._finish(PayoutComponent(
                payout_type=PayoutType.SPIFF,
                name=spiff.spiff_name,
                target_usd=data.metric_targets.get(spiff.linked_metric_name, ZERO),
                actual_usd=sum((b.deal_arr_usd for b in spiff_result.deal_breakdowns if b.is_eligible), ZERO),
                gross_payout_usd=spiff_result.total_spiff_usd,
                exclusion_reason=spiff_result.exclusion_reason,
                details={'eligible_deals': ','.join(
                    b.deal_id for b in spiff_result.deal_breakdowns if b.is_eligible)},
            ), spiff.payout_split, data))

        # Deal-team SPIFF pool, paid in full in the payout month
        for allocation in approved_allocations(data.deal_team_allocations, data.employee_id, month):
            components.append(self._finish(PayoutComponent(
                payout_type=PayoutType.DEAL_TEAM_SPIFF,
                name=PayoutType.DEAL_TEAM_SPIFF.value,
                deal_id=allocation.deal_id,
                gross_payout_usd=allocation.allocated_amount_usd,
            ), BOOKING_ONLY, data))

        # Clawbacks
        held = data.held_amounts
        if held is None:
            held = self._held_for_collection(data, plan, attributions)

        reconciliation = reconcile_collections(
            plan, data.employee_id, data.ledger_entries, data.collections, held,
            _month_end(month), self.clawback_days,
        )

        result = EmployeePayoutResult(
            employee_id=data.employee_id,
            plan_id=plan.id,
            evaluation_month=month,
            local_currency=data.profile.local_currency,
            variable_ote_usd=variable_ote,
            is_blended=blended.is_blended,
            components=components,
            attributions=attributions,
            ledger_changes=reconciliation.changed,
            triggered_collections=reconciliation.triggered_collections,
        )
        log.info(
            f"Payout computed: gross {result.total_gross_usd} USD, paid now {result.paid_now_usd}, "
            f"{len(reconciliation.opened)} clawback(s) opened"
        )
        return result

    def earned_to_date(self, data: EmployeePayoutInput, as_of: date) -> Dict[PayoutType, Decimal]:
        """
        Variable pay, NRR and SPIFF earned in the plan year through ``as_of``.

        Metric targets and actuals in ``data`` are read as year-to-date figures.
        """
        plan = ensure_valid_plan(data.plan)
        variable_ote = blend_targets(data.target_segments, as_of.replace(day=1), plan.effective_year).effective_target_usd
        ytd_deals = [
            d for d in data.deals
            if d.month_year.year == plan.effective_year and d.month_year.replace(day=1) <= as_of
        ]

        earned = {payout_type: ZERO for payout_type in (PayoutType.VARIABLE_PAY, PayoutType.NRR, PayoutType.SPIFF)}
        for metric in plan.metrics:
            outcome = calculate_metric_payout(
                metric,
                data.metric_targets.get(metric.metric_name, ZERO),
                data.metric_actuals.get(metric.metric_name, ZERO),
                variable_ote * metric.weightage_percent / HUNDRED,
            )
            earned[PayoutType.VARIABLE_PAY] += outcome.payout_usd
        if plan.nrr_ote_percent > 0:
            earned[PayoutType.NRR] = calculate_nrr_payout(
                ytd_deals, data.cr_er_target_usd, data.impl_target_usd, plan.nrr_ote_percent,
                variable_ote, plan.cr_er_min_gp_margin_pct, plan.impl_min_gp_margin_pct,
            ).payout_usd
        earned[PayoutType.SPIFF] = calculate_all_spiffs(
            plan.spiffs, ytd_deals, plan.metrics, variable_ote, data.metric_targets,
        ).total_spiff_usd
        return earned

    def settle_departure(self, data: EmployeePayoutInput, departure_date: date,
                         posted: Sequence[PostedPayout]) -> Tranche1Result:
        """Tranche 1 of the full and final settlement for an employee leaving on ``departure_date``."""
        earned = self.earned_to_date(data, departure_date)
        result = calculate_tranche1(
            data.profile, data.plan.effective_year, departure_date, posted,
            data.ledger_entries, earned, self.rates, self.places,
        )
        log_calculation_step('settlement_tranche_1', {
            'employee_id': data.employee_id,
            'departure_date': departure_date,
            'total_usd': result.total_usd,
            'clawback_carryforward_usd': result.clawback_carryforward_usd,
        })
        return result

    def release_collection_holdbacks(self, data: EmployeePayoutInput, departure_date: date,
                                     posted: Sequence[PostedPayout],
                                     clawback_carryforward_usd: Decimal = ZERO) -> Tranche2Result:
        """Tranche 2, using the configured grace period and the collection statuses in ``data``."""
        return calculate_tranche2(
            data.profile, data.plan.effective_year, departure_date, posted, data.collections,
            clawback_carryforward_usd, self.config_manager.settlement_grace_days,
        )

    def project_payouts(self, plan: CompPlan, target_bonus_usd: Decimal) -> List[PayoutProjection]:
        """Estimated totals at the configured achievement levels."""
        levels = [Decimal(str(level)) for level in self.config_manager.projection_levels]
        return generate_payout_projections(ensure_valid_plan(plan).metrics, target_bonus_usd, levels)

    def validate_payout_run(self, inputs: Sequence[EmployeePayoutInput], month: date) -> ValidationReport:
        """Check a run before starting it; problems are reported, not raised."""
        month = month.replace(day=1)
        report = ValidationReport()

        if self.lock_registry.is_locked(month):
            report.errors.append(ValidationIssue(
                code='month_locked', message=f"Payout month {month:%Y-%m} is locked"))
        if not inputs:
            report.errors.append(ValidationIssue(
                code='no_employees', message="No employees to calculate"))

        missing_market = set()
        checked_plans = set()
        for data in inputs:
            currency = data.profile.local_currency.upper()
            if currency != USD:
                comp_rate = data.profile.compensation_rate_to_usd
                if comp_rate is None:
                    report.errors.append(ValidationIssue(
                        code='missing_compensation_rate',
                        message=f"No compensation rate for {currency}",
                        employee_id=data.employee_id,
                    ))
                elif comp_rate <= 0:
                    report.errors.append(ValidationIssue(
                        code='invalid_exchange_rate',
                        message=f"Compensation rate for {currency} must be positive, got {comp_rate}",
                        employee_id=data.employee_id,
                    ))
                if not self.rates.has_rate(currency, month) and currency not in missing_market:
                    missing_market.add(currency)
                    report.errors.append(ValidationIssue(
                        code='missing_market_rate',
                        message=f"No market rate for {currency} in {month:%Y-%m}",
                    ))
            if not data.target_segments:
                report.warnings.append(ValidationIssue(
                    code='missing_plan_assignment',
                    message="Employee has no target segment for the year",
                    employee_id=data.employee_id,
                ))
            if data.plan.id not in checked_plans:
                checked_plans.add(data.plan.id)
                for issue in validate_comp_plan(data.plan):
                    report.errors.append(ValidationIssue(code='invalid_plan', message=f"{data.plan.id}: {issue}"))

        if not report.is_valid:
            self.logger.warning(f"Payout run validation for {month:%Y-%m}: {len(report.errors)} error(s)")
        return report

    def run_payout_batch(self, inputs: Sequence[EmployeePayoutInput], month: date,
                         max_workers: Optional[int] = None,
                         run_logger: Optional[PayoutRunLogger] = None) -> PayoutRunResult:
        """
        Compute payouts for many employees.

        Employees are independent, so with ``max_workers`` > 1 they run on a
        thread pool. One employee's failure is recorded and does not stop
        the others.

        Raises:
            PeriodLockedError: if the month is locked
        """
        month = month.replace(day=1)
        if self.lock_registry.is_locked(month):
            raise PeriodLockedError(month, "run payouts")

        validation = self.validate_payout_run(inputs, month)
        self.logger.info(f"Starting payout run for {month:%Y-%m} with {len(inputs)} employee(s)")

        inputs = [data.model_copy(update={'evaluation_month': month}) for data in inputs]
        if run_logger:
            for data in inputs:
                run_logger.log_step_start(data.employee_id)
            for issue in validation.warnings:
                if issue.employee_id:
                    run_logger.log_step_warning(issue.message, step_name=issue.employee_id)

        def compute(data: EmployeePayoutInput):
            try:
                return self.calculate_employee_payout(data), None
            except CompEngineError as e:
                return None, e

        if max_workers and max_workers > 1:
            with ThreadPoolExecutor(max_workers=max_workers) as executor:
                outcomes = list(executor.map(compute, inputs))
        else:
            outcomes = [compute(data) for data in inputs]

        run = PayoutRunResult(evaluation_month=month, validation=validation)
        for data, (result, error) in zip(inputs, outcomes):
            if error is not None:
                self.logger.error(f"Payout for {data.employee_id} failed: {error}")
                run.failures[data.employee_id] = str(error)
                if run_logger:
                    run_logger.log_step_failure(str(error), error, step_name=data.employee_id)
                continue
            run.results.append(result)
            if run_logger:
                run_logger.log_step_success(
                    components=[f"{c.payout_type.value}:{c.name}" for c in result.components],
                    details={
                        'gross_usd': result.total_gross_usd,
                        'paid_now_usd': result.paid_now_usd,
                        'held_for_collection_usd': result.held_for_collection_usd,
                    },
                    step_name=data.employee_id,
                )

        if run_logger:
            run.log_files = run_logger.finalize()
        self.logger.info(
            f"Payout run {month:%Y-%m} finished: {len(run.results)} ok, {len(run.failures)} failed"
        )
        return run
