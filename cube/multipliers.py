"""
Multiplier operators applied to a source's percentile series.
Each operator runs independently per band against the operand's own band.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Dict, Any, Optional, List, Mapping, Sequence, Tuple

import numpy as np

from cube.errors import OperatorError
from cube.series import PercentileSeries, make_series


class MultiplierOperation(str, Enum):
    """Supported multiplier operations."""
    MULTIPLY = "multiply"
    COMPOUND = "compound"
    SIMPLE = "simple"
    SUMMATION = "summation"


@dataclass(frozen=True)
class MultiplierFilter:
    """Inclusive year window; points outside it pass through unchanged."""
    min_year: Optional[int] = None
    max_year: Optional[int] = None

    def applies(self, year: int) -> bool:
        if self.min_year is not None and year < self.min_year:
            return False
        if self.max_year is not None and year > self.max_year:
            return False
        return True


@dataclass(frozen=True)
class MultiplierDefinition:
    """Declared operator: operand id, operation and base year."""
    id: str
    operation: MultiplierOperation
    base_year: int = 1
    filter: Optional[MultiplierFilter] = None

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> 'MultiplierDefinition':
        """
        Parse a multiplier from registry configuration.

        Raises:
            ValueError: If id or operation is missing or invalid
        """
        if not config.get('id'):
            raise ValueError(f"Multiplier missing 'id': {dict(config)}")

        operation = config.get('operation', MultiplierOperation.MULTIPLY.value)
        try:
            operation = MultiplierOperation(operation)
        except ValueError:
            raise ValueError(f"Unknown multiplier operation '{operation}' for '{config['id']}'")

        filter_config = config.get('filter')
        year_filter = None
        if filter_config:
            year_filter = MultiplierFilter(
                min_year=filter_config.get('min_year'),
                max_year=filter_config.get('max_year'),
            )

        return cls(
            id=str(config['id']),
            operation=operation,
            base_year=int(config.get('base_year', 1)),
            filter=year_filter,
        )


@dataclass(frozen=True)
class AppliedMultiplier:
    """
    Audit record of one multiplier application at the audit band.

    values holds the operand value used per year; cumulative the product of
    all multiplicative factors applied so far (summation contributes 1).
    """
    id: str
    operation: MultiplierOperation
    years: Tuple[int, ...]
    values: Tuple[float, ...]
    base_year: int
    cumulative: Tuple[float, ...]


def _operation_terms(
    operation: MultiplierOperation,
    operand: np.ndarray,
    years: np.ndarray,
    base_year: int
) -> Tuple[np.ndarray, np.ndarray]:
    """Return (factor, addend) arrays so that out = in * factor + addend."""
    elapsed = np.maximum(years - base_year, 0)
    ones = np.ones_like(operand)
    zeros = np.zeros_like(operand)

    if operation == MultiplierOperation.MULTIPLY:
        return operand, zeros
    if operation == MultiplierOperation.COMPOUND:
        return np.power(1.0 + operand, elapsed), zeros
    if operation == MultiplierOperation.SIMPLE:
        return 1.0 + operand * elapsed, zeros
    if operation == MultiplierOperation.SUMMATION:
        return ones, operand
    raise OperatorError(f"Unsupported operation: {operation}")


def apply_multiplier(
    series: Sequence[PercentileSeries],
    multiplier: MultiplierDefinition,
    operand: Mapping[int, Mapping[int, float]],
    audit_percentile: Optional[int] = None,
    cumulative: Optional[Mapping[int, float]] = None,
    source_id: Optional[str] = None
) -> Tuple[List[PercentileSeries], AppliedMultiplier]:
    """
    Apply one multiplier to every band of a source.

    Args:
        series: Input bands
        multiplier: Multiplier definition
        operand: Band -> (year -> operand value)
        audit_percentile: Band whose values are recorded in the audit entry
        cumulative: Year -> cumulative factor before this multiplier
        source_id: Owning source, for error reporting

    Returns:
        Tuple of (transformed bands, AppliedMultiplier)

    Raises:
        OperatorError: If the operand lacks one of the input bands
    """
    if audit_percentile is None and series:
        audit_percentile = series[0].percentile
    cumulative = cumulative or {}

    transformed: List[PercentileSeries] = []
    audit_years: Tuple[int, ...] = ()
    audit_values: Tuple[float, ...] = ()
    audit_cumulative: Tuple[float, ...] = ()

    for band in series:
        if band.percentile not in operand:
            raise OperatorError(
                f"Operand '{multiplier.id}' has no percentile {band.percentile}", source_id
            )
        band_operand = operand[band.percentile]

        years = np.array(band.years, dtype=int)
        values = np.array(band.values, dtype=float)
        present = np.array([year in band_operand for year in band.years], dtype=bool)
        if multiplier.filter is not None:
            present &= np.array([multiplier.filter.applies(year) for year in band.years], dtype=bool)
        operand_values = np.array([band_operand.get(year, 0.0) for year in band.years], dtype=float)

        factors, addends = _operation_terms(multiplier.operation, operand_values, years, multiplier.base_year)
        factors = np.where(present, factors, 1.0)
        addends = np.where(present, addends, 0.0)
        result = values * factors + addends

        transformed.append(make_series(band.percentile, dict(zip(band.years, result.tolist()))))

        if band.percentile == audit_percentile:
            used = [year for year, flag in zip(band.years, present) if flag]
            audit_years = tuple(used)
            audit_values = tuple(float(band_operand[year]) for year in used)
            audit_cumulative = tuple(
                float(cumulative.get(year, 1.0) * factor)
                for year, factor in zip(band.years, factors.tolist())
            )

    applied = AppliedMultiplier(
        id=multiplier.id,
        operation=multiplier.operation,
        years=audit_years,
        values=audit_values,
        base_year=multiplier.base_year,
        cumulative=audit_cumulative,
    )
    return transformed, applied


def cumulative_by_year(series: PercentileSeries, applied: AppliedMultiplier) -> Dict[int, float]:
    """Year -> cumulative factor after an application, keyed by the series years."""
    return dict(zip(series.years, applied.cumulative))
