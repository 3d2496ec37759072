"""
Validation utilities for compensation plan configuration.
"""

import logging
from decimal import Decimal
from typing import Any, Dict, Iterable, List

import pandas as pd

from ..core.errors import PlanConfigurationError
from ...models.comp_schemas import HUNDRED, CompPlan, LogicType, MultiplierBand, PayoutSplit

# Set up module logger
logger = logging.getLogger(__name__)

# Sheet name -> required column names
PLAN_SHEET_COLUMNS = {
    'Compensation Plans': ['Plan ID', 'Plan Name', 'Effective Year'],
    'Plan Metrics': ['Plan ID', 'Metric Name', 'Weightage Percent', 'Logic Type'],
    'Multiplier Grids': ['Plan ID', 'Metric Name', 'Min Pct', 'Max Pct', 'Multiplier'],
    'Plan Commissions': ['Plan ID', 'Commission Type', 'Commission Rate Pct'],
    'Plan Spiffs': ['Plan ID', 'Spiff Name', 'Linked Metric Name', 'Spiff Rate Pct'],
}

REQUIRED_PLAN_SHEETS = ('Compensation Plans', 'Plan Metrics')


def check_bands(bands: Iterable[MultiplierBand], label: str = "grid") -> List[str]:
    """
    Check that multiplier bands are well-formed, contiguous and non-overlapping.

    Returns:
        List of problems, empty when the bands are valid
    """
    issues = []
    ordered = sorted(bands, key=lambda b: b.min_pct)
    for band in ordered:
        if band.min_pct < 0:
            issues.append(f"{label}: band min_pct {band.min_pct} is negative")
        if band.max_pct <= band.min_pct:
            issues.append(f"{label}: band [{band.min_pct}, {band.max_pct}) is empty or inverted")
        if band.multiplier_value < 0:
            issues.append(f"{label}: band [{band.min_pct}, {band.max_pct}) has negative multiplier")
    for prev, nxt in zip(ordered, ordered[1:]):
        if nxt.min_pct < prev.max_pct:
            issues.append(
                f"{label}: bands [{prev.min_pct}, {prev.max_pct}) and "
                f"[{nxt.min_pct}, {nxt.max_pct}) overlap"
            )
        elif nxt.min_pct > prev.max_pct:
            issues.append(f"{label}: gap between {prev.max_pct} and {nxt.min_pct}")
    return issues


def check_split(split: PayoutSplit, label: str) -> List[str]:
    issues = []
    for name, pct in (("booking", split.booking_pct),
                      ("collection", split.collection_pct),
                      ("year-end", split.year_end_pct)):
        if pct < 0:
            issues.append(f"{label}: {name} percentage {pct} is negative")
    if split.total_pct != HUNDRED:
        issues.append(f"{label}: payout split sums to {split.total_pct}, expected 100")
    return issues


def validate_comp_plan(plan: CompPlan) -> List[str]:
    """
    Validate a plan snapshot against the configuration invariants.

    Args:
        plan: Plan configuration to check

    Returns:
        List of human-readable issues (empty if the plan is valid)
    """
    issues: List[str] = []

    seen_metrics = set()
    for metric in plan.metrics:
        label = f"metric '{metric.metric_name}'"
        if metric.metric_name in seen_metrics:
            issues.append(f"{label}: duplicate metric name")
        seen_metrics.add(metric.metric_name)

        if not (0 <= metric.weightage_percent <= HUNDRED):
            issues.append(f"{label}: weightage {metric.weightage_percent} outside 0-100")
        if metric.gate_threshold_percent is not None and metric.gate_threshold_percent < 0:
            issues.append(f"{label}: negative gate threshold")
        if metric.logic_type == LogicType.STEPPED_ACCELERATOR and not metric.multiplier_grids:
            logger.warning(f"{label} is Stepped_Accelerator without bands; it will pay linearly")
        issues.extend(check_split(metric.payout_split, label))
        issues.extend(check_bands(metric.multiplier_grids, label))

    total_weight = sum((m.weightage_percent for m in plan.metrics), Decimal("0"))
    if total_weight > HUNDRED:
        issues.append(f"metric weightages sum to {total_weight}, more than 100")

    active_types = set()
    for commission in plan.commissions:
        label = f"commission '{commission.commission_type}'"
        if commission.commission_rate_pct < 0:
            issues.append(f"{label}: negative rate")
        if commission.is_active:
            if commission.commission_type in active_types:
                issues.append(f"{label}: more than one active entry")
            active_types.add(commission.commission_type)
        issues.extend(check_split(commission.payout_split, label))

    active_spiffs = set()
    for spiff in plan.spiffs:
        label = f"spiff '{spiff.spiff_name}'"
        if spiff.spiff_rate_pct < 0:
            issues.append(f"{label}: negative rate")
        if spiff.is_active:
            if spiff.spiff_name in active_spiffs:
                issues.append(f"{label}: more than one active entry")
            active_spiffs.add(spiff.spiff_name)
        if spiff.linked_metric_name not in seen_metrics:
            issues.append(f"{label}: linked metric '{spiff.linked_metric_name}' is not on the plan")
        issues.extend(check_split(spiff.payout_split, label))

    if plan.nrr_ote_percent < 0:
        issues.append("nrr_ote_percent is negative")
    issues.extend(check_split(plan.nrr_payout_split, "NRR"))

    return issues


def ensure_valid_plan(plan: CompPlan) -> CompPlan:
    """Raise PlanConfigurationError unless ``plan`` passes validation."""
    issues = validate_comp_plan(plan)
    if issues:
        logger.error(f"Plan {plan.id} rejected with {len(issues)} issue(s): {issues}")
        raise PlanConfigurationError(plan.id, issues)
    return plan


def validate_plan_frames(frames: Dict[str, pd.DataFrame]) -> Dict[str, Any]:
    """
    Validate plan configuration sheets before they are parsed.

    Args:
        frames: Mapping of sheet name to DataFrame (as from pd.read_excel(sheet_name=None))

    Returns:
        Dict containing validation results per sheet
    """
    validation_results = {
        'success': True,
        'details': {},
        'available_sheets': list(frames.keys()),
    }

    for sheet, required_columns in PLAN_SHEET_COLUMNS.items():
        sheet_validation = {'success': False, 'errors': []}

        if sheet not in frames:
            if sheet in REQUIRED_PLAN_SHEETS:
                case_insensitive_match = [s for s in frames if s.lower() == sheet.lower()]
                if case_insensitive_match:
                    sheet_validation['errors'].append(f"Sheet '{sheet}' found with different capitalization")
                else:
                    sheet_validation['errors'].append(f"Sheet '{sheet}' not found")
                validation_results['details'][sheet] = sheet_validation
                validation_results['success'] = False
            continue

        df = frames[sheet]
        columns = [str(c) for c in df.columns]
        missing_columns = [col for col in required_columns if col not in columns]
        if missing_columns:
            sheet_validation['errors'].append(f"Missing columns: {', '.join(missing_columns)}")
            validation_results['success'] = False
        else:
            sheet_validation['success'] = True

        sheet_validation['total_rows'] = len(df)
        sheet_validation['columns'] = columns
        validation_results['details'][sheet] = sheet_validation

    if not validation_results['success']:
        logger.warning(f"Plan sheet validation failed: {validation_results['details']}")
    return validation_results
