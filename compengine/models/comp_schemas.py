# models/comp_schemas.py - Pydantic models for the compensation engine
"""
Plan configuration, performance inputs and computed payout records.

Configuration models (CompPlan and everything it owns) are frozen: a
calculation receives one immutable snapshot and never writes back to it.
Every monetary and percentage value is a Decimal.

Plan hierarchy:
  CompPlan -> PlanMetric -> MultiplierBand
           -> PlanCommission
           -> PlanSpiff
"""
from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Dict, FrozenSet, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

ZERO = Decimal("0")
HUNDRED = Decimal("100")


def round_money(value, places: int = 2) -> Decimal:
    """Round half-up to ``places`` decimals."""
    return Decimal(value).quantize(Decimal(1).scaleb(-places), rounding=ROUND_HALF_UP)


class LogicType(str, Enum):
    LINEAR = "Linear"
    STEPPED_ACCELERATOR = "Stepped_Accelerator"
    GATED_THRESHOLD = "Gated_Threshold"


class PayoutType(str, Enum):
    VARIABLE_PAY = "Variable Pay"
    COMMISSION = "Commission"
    NRR = "NRR Additional Pay"
    SPIFF = "SPIFF"
    DEAL_TEAM_SPIFF = "Deal Team SPIFF"


class RateType(str, Enum):
    """Which exchange rate converts a payout to local currency."""
    COMPENSATION = "compensation"
    MARKET = "market"


class ExclusionReason(str, Enum):
    """Why a calculation legitimately produced zero."""
    ZERO_TARGET = "zero_target"
    BELOW_GATE = "below_gate"
    BELOW_MIN_THRESHOLD = "below_min_threshold"
    BELOW_MIN_MARGIN = "below_min_margin"
    MISSING_MARGIN = "missing_margin"
    BELOW_MIN_DEAL_VALUE = "below_min_deal_value"
    INACTIVE = "inactive"
    NO_LINKED_METRIC = "no_linked_metric"
    ZERO_NRR_OTE = "zero_nrr_ote"


class ClawbackStatus(str, Enum):
    """Lifecycle of a clawback ledger entry.

    State machine:
        PENDING -> PARTIAL -> RECOVERED
        PENDING -> RECOVERED
        PENDING | PARTIAL -> WRITTEN_OFF
    """
    PENDING = "pending"
    PARTIAL = "partial"
    RECOVERED = "recovered"
    WRITTEN_OFF = "written_off"


CLAWBACK_TRANSITIONS: Dict[ClawbackStatus, FrozenSet[ClawbackStatus]] = {
    ClawbackStatus.PENDING: frozenset({
        ClawbackStatus.PARTIAL,
        ClawbackStatus.RECOVERED,
        ClawbackStatus.WRITTEN_OFF,
    }),
    ClawbackStatus.PARTIAL: frozenset({
        ClawbackStatus.PARTIAL,
        ClawbackStatus.RECOVERED,
        ClawbackStatus.WRITTEN_OFF,
    }),
    ClawbackStatus.RECOVERED: frozenset(),
    ClawbackStatus.WRITTEN_OFF: frozenset(),
}


class AllocationStatus(str, Enum):
    """Deal-team SPIFF allocations only ever move pending -> approved."""
    PENDING = "pending"
    APPROVED = "approved"


# ---------------------------------------------------------------------------
# Plan configuration
# ---------------------------------------------------------------------------

class PayoutSplit(BaseModel):
    """Booking / collection / year-end percentages of one gross payout."""
    model_config = ConfigDict(frozen=True)

    booking_pct: Decimal = Decimal("75")
    collection_pct: Decimal = Decimal("25")
    year_end_pct: Decimal = ZERO

    @property
    def total_pct(self) -> Decimal:
        return self.booking_pct + self.collection_pct + self.year_end_pct


BOOKING_ONLY = PayoutSplit(booking_pct=HUNDRED, collection_pct=ZERO, year_end_pct=ZERO)


class MultiplierBand(BaseModel):
    """One row of a metric's multiplier grid: [min_pct, max_pct) -> multiplier."""
    model_config = ConfigDict(frozen=True)

    min_pct: Decimal
    max_pct: Decimal
    multiplier_value: Decimal


class PlanMetric(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: Optional[str] = None
    metric_name: str
    weightage_percent: Decimal
    logic_type: LogicType = LogicType.LINEAR
    gate_threshold_percent: Optional[Decimal] = None
    payout_on_booking_pct: Decimal = Decimal("75")
    payout_on_collection_pct: Decimal = Decimal("25")
    payout_on_year_end_pct: Decimal = ZERO
    multiplier_grids: List[MultiplierBand] = []

    @property
    def payout_split(self) -> PayoutSplit:
        return PayoutSplit(
            booking_pct=self.payout_on_booking_pct,
            collection_pct=self.payout_on_collection_pct,
            year_end_pct=self.payout_on_year_end_pct,
        )


class PlanCommission(BaseModel):
    model_config = ConfigDict(frozen=True)

    commission_type: str
    commission_rate_pct: Decimal = ZERO
    min_threshold_usd: Optional[Decimal] = None
    min_gp_margin_pct: Optional[Decimal] = None
    is_active: bool = True
    payout_on_booking_pct: Decimal = Decimal("75")
    payout_on_collection_pct: Decimal = Decimal("25")
    payout_on_year_end_pct: Decimal = ZERO

    @property
    def payout_split(self) -> PayoutSplit:
        return PayoutSplit(
            booking_pct=self.payout_on_booking_pct,
            collection_pct=self.payout_on_collection_pct,
            year_end_pct=self.payout_on_year_end_pct,
        )


class PlanSpiff(BaseModel):
    model_config = ConfigDict(frozen=True)

    spiff_name: str
    linked_metric_name: str
    spiff_rate_pct: Decimal = ZERO
    min_deal_value_usd: Optional[Decimal] = None
    is_active: bool = True
    payout_on_booking_pct: Decimal = ZERO
    payout_on_collection_pct: Decimal = HUNDRED
    payout_on_year_end_pct: Decimal = ZERO

    @property
    def payout_split(self) -> PayoutSplit:
        return PayoutSplit(
            booking_pct=self.payout_on_booking_pct,
            collection_pct=self.payout_on_collection_pct,
            year_end_pct=self.payout_on_year_end_pct,
        )


class CompPlan(BaseModel):
    """Top-level plan container. NRR overlay settings live on the plan."""
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    effective_year: int
    is_clawback_exempt: bool = False
    nrr_ote_percent: Decimal = ZERO
    cr_er_min_gp_margin_pct: Decimal = ZERO
    impl_min_gp_margin_pct: Decimal = ZERO
    nrr_payout_on_booking_pct: Decimal = ZERO
    nrr_payout_on_collection_pct: Decimal = HUNDRED
    nrr_payout_on_year_end_pct: Decimal = ZERO
    payout_frequency: str = "monthly"
    clawback_period_days: Optional[int] = None  # falls back to the engine default
    metrics: List[PlanMetric] = []
    commissions: List[PlanCommission] = []
    spiffs: List[PlanSpiff] = []

    @property
    def nrr_payout_split(self) -> PayoutSplit:
        return PayoutSplit(
            booking_pct=self.nrr_payout_on_booking_pct,
            collection_pct=self.nrr_payout_on_collection_pct,
            year_end_pct=self.nrr_payout_on_year_end_pct,
        )

    def get_metric(self, metric_name: str) -> Optional[PlanMetric]:
        for metric in self.metrics:
            if metric.metric_name == metric_name:
                return metric
        return None

    def active_commission(self, commission_type: str) -> Optional[PlanCommission]:
        for commission in self.commissions:
            if commission.commission_type == commission_type and commission.is_active:
                return commission
        return None


# ---------------------------------------------------------------------------
# Performance inputs
# ---------------------------------------------------------------------------

class TargetSegment(BaseModel):
    """A time-bounded target bonus assignment (hire, promotion, transfer)."""
    model_config = ConfigDict(frozen=True)

    employee_id: str
    plan_id: str
    target_bonus_usd: Decimal
    effective_start_date: date
    effective_end_date: date


class DealParticipant(BaseModel):
    model_config = ConfigDict(frozen=True)

    employee_id: str
    participant_role: str
    split_percent: Decimal = HUNDRED


class Deal(BaseModel):
    """One booked transaction. ``month_year`` is the first day of the booking month."""
    model_config = ConfigDict(frozen=True)

    id: str
    project_id: str = ""
    customer_name: Optional[str] = None
    month_year: date
    new_software_booking_arr_usd: Decimal = ZERO
    managed_services_usd: Decimal = ZERO
    perpetual_license_usd: Decimal = ZERO
    cr_usd: Decimal = ZERO
    er_usd: Decimal = ZERO
    implementation_usd: Decimal = ZERO
    tcv_usd: Decimal = ZERO
    gp_margin_percent: Optional[Decimal] = None
    participants: List[DealParticipant] = []

    @field_validator(
        "new_software_booking_arr_usd", "managed_services_usd",
        "perpetual_license_usd", "cr_usd", "er_usd", "implementation_usd",
        "tcv_usd", mode="before",
    )
    @classmethod
    def _none_as_zero(cls, v):
        return ZERO if v is None else v

    @property
    def cr_er_usd(self) -> Decimal:
        return self.cr_usd + self.er_usd

    def participant_split(self, employee_id: str) -> Decimal:
        """Credit share (percent) for ``employee_id``; 100 when no participants are recorded."""
        if not self.participants:
            return HUNDRED
        return sum(
            (p.split_percent for p in self.participants if p.employee_id == employee_id),
            ZERO,
        )


class DealCollectionStatus(BaseModel):
    model_config = ConfigDict(frozen=True)

    deal_id: str
    booking_month: date
    deal_value_usd: Decimal = ZERO
    is_collected: bool = False
    collection_date: Optional[date] = None
    collection_amount_usd: Optional[Decimal] = None
    collection_month: Optional[date] = None
    first_milestone_due_date: Optional[date] = None
    is_clawback_triggered: bool = False
    clawback_amount_usd: Decimal = ZERO


class ClawbackLedgerEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    employee_id: str
    deal_id: str
    original_amount_usd: Decimal
    recovered_amount_usd: Decimal = ZERO
    status: ClawbackStatus = ClawbackStatus.PENDING
    triggered_month: date
    last_recovery_month: Optional[date] = None

    @property
    def remaining_amount_usd(self) -> Decimal:
        return max(self.original_amount_usd - self.recovered_amount_usd, ZERO)

    @property
    def is_open(self) -> bool:
        return self.status in (ClawbackStatus.PENDING, ClawbackStatus.PARTIAL)


class EmployeeProfile(BaseModel):
    """``compensation_rate_to_usd`` is USD per one local unit, fixed at hire/change."""
    model_config = ConfigDict(frozen=True)

    employee_id: str
    full_name: str = ""
    local_currency: str = "USD"
    compensation_rate_to_usd: Optional[Decimal] = None


class ExchangeRate(BaseModel):
    """Monthly market rate. ``rate_to_usd`` is USD per one local unit."""
    model_config = ConfigDict(frozen=True)

    currency_code: str
    month_year: date
    rate_to_usd: Decimal = Field(gt=0)


class DealTeamSpiffConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    spiff_pool_amount_usd: Decimal = Decimal("10000")
    min_deal_arr_usd: Decimal = Decimal("400000")
    is_active: bool = True
    exclude_roles: List[str] = ["sales_rep", "sales_head"]


class DealTeamSpiffAllocation(BaseModel):
    model_config = ConfigDict(frozen=True)

    deal_id: str
    employee_id: str
    allocated_amount_usd: Decimal
    status: AllocationStatus = AllocationStatus.PENDING
    approved_by: Optional[str] = None
    approved_at: Optional[datetime] = None
    notes: Optional[str] = None
    payout_month: date


# ---------------------------------------------------------------------------
# Computed output
# ---------------------------------------------------------------------------

class PayoutComponent(BaseModel):
    """One computed payout line (metric, commission, NRR or SPIFF)."""
    model_config = ConfigDict(frozen=True)

    payout_type: PayoutType
    name: str
    deal_id: Optional[str] = None
    target_usd: Decimal = ZERO
    actual_usd: Decimal = ZERO
    achievement_pct: Decimal = ZERO
    multiplier: Decimal = ZERO
    gross_payout_usd: Decimal = ZERO
    booking_amount_usd: Decimal = ZERO
    collection_amount_usd: Decimal = ZERO
    year_end_amount_usd: Decimal = ZERO
    local_currency: str = "USD"
    exchange_rate_used: Decimal = Decimal("1")
    rate_type: Optional[RateType] = None
    gross_payout_local: Decimal = ZERO
    booking_amount_local: Decimal = ZERO
    collection_amount_local: Decimal = ZERO
    year_end_amount_local: Decimal = ZERO
    exclusion_reason: Optional[ExclusionReason] = None
    details: Dict[str, str] = Field(default_factory=dict)
