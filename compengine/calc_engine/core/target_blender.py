"""
Pro-rata blending of target bonuses across mid-year changes.
"""

import calendar
import logging
from datetime import date
from decimal import Decimal
from typing import List, Optional, Sequence

from pydantic import BaseModel

from .errors import TargetSegmentError
from ...models.comp_schemas import ZERO, TargetSegment, round_money

logger = logging.getLogger(__name__)


class SegmentShare(BaseModel):
    segment: TargetSegment
    days_in_year: int


class BlendedTarget(BaseModel):
    effective_target_usd: Decimal
    is_blended: bool
    total_days_in_year: int
    shares: List[SegmentShare] = []
    active_segment: Optional[TargetSegment] = None


def _month_end(month: date) -> date:
    return date(month.year, month.month, calendar.monthrange(month.year, month.month)[1])


def _check_segments(segments: Sequence[TargetSegment]) -> List[TargetSegment]:
    ordered = sorted(segments, key=lambda s: s.effective_start_date)
    for segment in ordered:
        if segment.effective_end_date < segment.effective_start_date:
            raise TargetSegmentError(
                f"Segment for {segment.employee_id} ends {segment.effective_end_date} "
                f"before it starts {segment.effective_start_date}"
            )
    for prev, nxt in zip(ordered, ordered[1:]):
        if nxt.effective_start_date <= prev.effective_end_date:
            raise TargetSegmentError(
                f"Segments for {nxt.employee_id} overlap: "
                f"{prev.effective_start_date}..{prev.effective_end_date} and "
                f"{nxt.effective_start_date}..{nxt.effective_end_date}"
            )
    return ordered


def blend_targets(segments: Sequence[TargetSegment], evaluation_month: date,
                  fiscal_year: Optional[int] = None) -> BlendedTarget:
    """
    Resolve the effective target bonus for ``evaluation_month``.

    Once two or more segments have started by the end of the evaluation
    month, the target is the day-weighted average over the whole year:

        sum(target * segment days in year) / days in year

    Until then the active segment's own target applies unchanged.

    Raises:
        TargetSegmentError: if segments overlap or are inverted
    """
    fiscal_year = fiscal_year or evaluation_month.year
    year_start = date(fiscal_year, 1, 1)
    year_end = date(fiscal_year, 12, 31)
    total_days = (year_end - year_start).days + 1

    shares = []
    for segment in _check_segments(segments):
        start = max(segment.effective_start_date, year_start)
        end = min(segment.effective_end_date, year_end)
        days = (end - start).days + 1
        if days > 0:
            shares.append(SegmentShare(segment=segment, days_in_year=days))

    if not shares:
        return BlendedTarget(effective_target_usd=ZERO, is_blended=False, total_days_in_year=total_days)

    cutoff = _month_end(evaluation_month)
    started = [s for s in shares if s.segment.effective_start_date <= cutoff]

    if len(started) < 2:
        active = started[-1].segment if started else shares[0].segment
        return BlendedTarget(
            effective_target_usd=active.target_bonus_usd,
            is_blended=False,
            total_days_in_year=total_days,
            shares=shares,
            active_segment=active,
        )

    weighted = sum((s.segment.target_bonus_usd * s.days_in_year for s in shares), ZERO)
    effective = round_money(weighted / total_days)
    logger.debug(
        f"Blended {len(shares)} segments for {shares[0].segment.employee_id}: {effective}"
    )
    return BlendedTarget(
        effective_target_usd=effective,
        is_blended=True,
        total_days_in_year=total_days,
        shares=shares,
        active_segment=started[-1].segment,
    )
