"""
Multiplier grid lookup.

A GridLookupSpec is the one shape every lookup goes through, whether the
grid comes from a stored PlanMetric or from hypothetical inputs in a
simulation. Bands are validated and sorted when a GridLookupSpec is built.
"""

import logging
from decimal import Decimal
from typing import Iterable, Optional, Tuple

from pydantic import BaseModel, ConfigDict

from .errors import PlanConfigurationError
from ..utils.validation import check_bands
from ...models.comp_schemas import HUNDRED, ZERO, LogicType, MultiplierBand, PlanMetric

logger = logging.getLogger(__name__)

ONE = Decimal("1")


class GridLookupSpec(BaseModel):
    model_config = ConfigDict(frozen=True)

    metric_name: str = "simulated"
    logic_type: LogicType = LogicType.LINEAR
    gate_threshold_percent: Optional[Decimal] = None
    bands: Tuple[MultiplierBand, ...] = ()

    @classmethod
    def from_metric(cls, metric: PlanMetric) -> "GridLookupSpec":
        return cls._build(
            metric.metric_name,
            metric.logic_type,
            metric.gate_threshold_percent,
            metric.multiplier_grids,
        )

    @classmethod
    def simulated(cls, logic_type: LogicType, bands: Iterable[MultiplierBand] = (),
                  gate_threshold_percent: Optional[Decimal] = None,
                  metric_name: str = "simulated") -> "GridLookupSpec":
        return cls._build(metric_name, LogicType(logic_type), gate_threshold_percent, bands)

    @classmethod
    def _build(cls, metric_name, logic_type, gate, bands) -> "GridLookupSpec":
        bands = tuple(sorted(bands, key=lambda b: b.min_pct))
        issues = check_bands(bands, f"metric '{metric_name}'")
        if gate is not None and Decimal(gate) < 0:
            issues.append(f"metric '{metric_name}': negative gate threshold")
        if issues:
            raise PlanConfigurationError(None, issues)
        return cls(
            metric_name=metric_name,
            logic_type=logic_type,
            gate_threshold_percent=gate,
            bands=bands,
        )

    @property
    def is_gated(self) -> bool:
        return self.logic_type == LogicType.GATED_THRESHOLD and self.gate_threshold_percent is not None

    @property
    def uses_bands(self) -> bool:
        return self.logic_type != LogicType.LINEAR and bool(self.bands)

    def blocks(self, achievement_pct: Decimal) -> bool:
        """True when the gate zeroes out this achievement (inclusive of the gate itself)."""
        return self.is_gated and achievement_pct <= self.gate_threshold_percent


def achievement_percent(actual: Decimal, target: Decimal) -> Decimal:
    """Achievement as a percentage; 0 when there is no positive target."""
    if target is None or target <= 0:
        return ZERO
    return Decimal(actual) / Decimal(target) * HUNDRED


def resolve_multiplier(achievement_pct: Decimal, spec: GridLookupSpec) -> Decimal:
    """
    Return the multiplier that applies at ``achievement_pct``.

    Above every band the top band's multiplier applies, uncapped. Below the
    lowest band nothing is paid.
    """
    if spec.blocks(achievement_pct):
        return ZERO
    if not spec.uses_bands:
        return ONE

    for band in spec.bands:
        if band.min_pct <= achievement_pct < band.max_pct:
            return band.multiplier_value

    top = spec.bands[-1]
    if achievement_pct >= top.max_pct:
        return top.multiplier_value

    logger.debug(f"{spec.metric_name}: achievement {achievement_pct} is below the lowest band")
    return ZERO
