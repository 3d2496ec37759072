import logging
from decimal import Decimal
from typing import Any, Dict, List, Optional

import pandas as pd

from .validation import validate_plan_frames
from ..core.errors import PlanConfigurationError
from ...models.comp_schemas import (
    CompPlan,
    LogicType,
    MultiplierBand,
    PlanCommission,
    PlanMetric,
    PlanSpiff,
)

logger = logging.getLogger(__name__)

SPLIT_COLUMNS = {
    'Payout On Booking Pct': 'payout_on_booking_pct',
    'Payout On Collection Pct': 'payout_on_collection_pct',
    'Payout On Year End Pct': 'payout_on_year_end_pct',
}

PLAN_DECIMAL_COLUMNS = {
    'NRR OTE Percent': 'nrr_ote_percent',
    'CR/ER Min GP Margin Pct': 'cr_er_min_gp_margin_pct',
    'Impl Min GP Margin Pct': 'impl_min_gp_margin_pct',
    'NRR Payout On Booking Pct': 'nrr_payout_on_booking_pct',
    'NRR Payout On Collection Pct': 'nrr_payout_on_collection_pct',
    'NRR Payout On Year End Pct': 'nrr_payout_on_year_end_pct',
}


def _is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, float) and pd.isna(value)) or (
        isinstance(value, str) and not value.strip())


def _text(value: Any) -> Optional[str]:
    if _is_blank(value):
        return None
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    return str(value).strip()


def _decimal(value: Any) -> Optional[Decimal]:
    if _is_blank(value):
        return None
    # via str() so 0.1 read as a float stays 0.1
    return Decimal(str(value).strip())


def _flag(value: Any) -> Optional[bool]:
    if _is_blank(value):
        return None
    if isinstance(value, str):
        return value.strip().lower() in ('true', 'yes', 'y', '1')
    return bool(value)


def _row_fields(row: pd.Series, columns: Dict[str, str], convert) -> Dict[str, Any]:
    """Map present, non-blank ``columns`` of ``row`` to model field names."""
    fields = {}
    for column, field in columns.items():
        if column in row.index:
            value = convert(row[column])
            if value is not None:
                fields[field] = value
    return fields


def _rows(frames: Dict[str, pd.DataFrame], sheet: str, plan_id: str) -> List[pd.Series]:
    df = frames.get(sheet)
    if df is None or df.empty:
        return []
    return [row for _, row in df.iterrows() if _text(row['Plan ID']) == plan_id]


def _metric_from_row(row: pd.Series, frames: Dict[str, pd.DataFrame], plan_id: str) -> PlanMetric:
    name = _text(row['Metric Name'])
    bands = [
        MultiplierBand(
            min_pct=_decimal(band['Min Pct']),
            max_pct=_decimal(band['Max Pct']),
            multiplier_value=_decimal(band['Multiplier']),
        )
        for band in _rows(frames, 'Multiplier Grids', plan_id)
        if _text(band['Metric Name']) == name
    ]
    fields = _row_fields(row, SPLIT_COLUMNS, _decimal)
    gate = _decimal(row.get('Gate Threshold Percent'))
    return PlanMetric(
        metric_name=name,
        weightage_percent=_decimal(row['Weightage Percent']) or Decimal("0"),
        logic_type=LogicType(_text(row['Logic Type']) or LogicType.LINEAR.value),
        gate_threshold_percent=gate,
        multiplier_grids=sorted(bands, key=lambda b: b.min_pct),
        **fields,
    )


def _commission_from_row(row: pd.Series) -> PlanCommission:
    fields = _row_fields(row, SPLIT_COLUMNS, _decimal)
    active = _flag(row.get('Is Active'))
    return PlanCommission(
        commission_type=_text(row['Commission Type']),
        commission_rate_pct=_decimal(row['Commission Rate Pct']) or Decimal("0"),
        min_threshold_usd=_decimal(row.get('Min Threshold USD')),
        min_gp_margin_pct=_decimal(row.get('Min GP Margin Pct')),
        is_active=True if active is None else active,
        **fields,
    )


def _spiff_from_row(row: pd.Series) -> PlanSpiff:
    fields = _row_fields(row, SPLIT_COLUMNS, _decimal)
    active = _flag(row.get('Is Active'))
    return PlanSpiff(
        spiff_name=_text(row['Spiff Name']),
        linked_metric_name=_text(row['Linked Metric Name']),
        spiff_rate_pct=_decimal(row['Spiff Rate Pct']) or Decimal("0"),
        min_deal_value_usd=_decimal(row.get('Min Deal Value USD')),
        is_active=True if active is None else active,
        **fields,
    )


def plans_from_frames(frames: Dict[str, pd.DataFrame]) -> List[CompPlan]:
    """
    Build plan snapshots from plan configuration sheets.

    Args:
        frames: Mapping of sheet name to DataFrame

    Returns:
        list: One CompPlan per row of the 'Compensation Plans' sheet

    Raises:
        PlanConfigurationError: if required sheets or columns are missing
    """
    check = validate_plan_frames(frames)
    if not check['success']:
        issues = [
            f"{sheet}: {error}"
            for sheet, details in check['details'].items()
            for error in details['errors']
        ]
        raise PlanConfigurationError(None, issues)

    plans = []
    for _, row in frames['Compensation Plans'].iterrows():
        plan_id = _text(row['Plan ID'])
        if plan_id is None:
            continue
        fields = _row_fields(row, PLAN_DECIMAL_COLUMNS, _decimal)
        fields.update(_row_fields(row, {'Clawback Exempt': 'is_clawback_exempt'}, _flag))
        fields.update(_row_fields(row, {'Payout Frequency': 'payout_frequency'}, _text))
        fields.update(_row_fields(row, {'Clawback Period Days': 'clawback_period_days'},
                                  lambda v: None if _is_blank(v) else int(v)))

        plans.append(CompPlan(
            id=plan_id,
            name=_text(row['Plan Name']) or plan_id,
            effective_year=int(row['Effective Year']),
            metrics=[_metric_from_row(r, frames, plan_id) for r in _rows(frames, 'Plan Metrics', plan_id)],
            commissions=[_commission_from_row(r) for r in _rows(frames, 'Plan Commissions', plan_id)],
            spiffs=[_spiff_from_row(r) for r in _rows(frames, 'Plan Spiffs', plan_id)],
            **fields,
        ))

    logger.info(f"Loaded {len(plans)} plan(s) from {len(frames)} sheet(s)")
    return plans


def load_plan_workbook(file_path: str) -> List[CompPlan]:
    """
    Load every plan from an Excel workbook.

    Args:
        file_path (str): Path to the workbook

    Returns:
        list: CompPlan snapshots
    """
    logger.info(f"Loading plan configuration from Excel file: {file_path}")
    try:
        frames = pd.read_excel(file_path, sheet_name=None)
    except Exception as e:
        logger.error(f"Error loading Excel data: {str(e)}")
        raise
    return plans_from_frames(frames)
