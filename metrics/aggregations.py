"""
Aggregation functions reducing a year-indexed series to one number.
Pure functions over years/values lists; no cube access.
"""

import math
from typing import Callable, Dict, List, Optional, Sequence

import numpy as np


class AggregationError(Exception):
    """Raised when a series cannot be reduced (empty input, undefined result)."""
    pass


def _as_arrays(years: Sequence[int], values: Sequence[float]):
    if len(years) != len(values):
        raise AggregationError(f"Years ({len(years)}) and values ({len(values)}) differ in length")
    if len(values) == 0:
        raise AggregationError("No data points to aggregate")
    return np.asarray(years, dtype=float), np.asarray(values, dtype=float)


def calculate_npv(years: Sequence[int], values: Sequence[float], discount_rate: float) -> float:
    """
    Net present value discounting each value by its year index.

    Args:
        years: Year of each value (year 0 is undiscounted)
        values: Cashflow per year
        discount_rate: Decimal rate (0.08 = 8%)

    Returns:
        Sum of value / (1 + rate) ** year
    """
    if discount_rate <= -1:
        raise AggregationError(f"Discount rate must be greater than -100%, got {discount_rate}")
    year_arr, value_arr = _as_arrays(years, values)
    return float(np.sum(value_arr / np.power(1.0 + discount_rate, year_arr)))


def calculate_weighted_mean(values: Sequence[float], weights: Sequence[float]) -> float:
    if len(values) == 0:
        raise AggregationError("No data points to aggregate")
    if len(values) != len(weights):
        raise AggregationError("Values and weights differ in length")
    total_weight = float(np.sum(weights))
    if total_weight == 0:
        raise AggregationError("Weights sum to zero")
    return float(np.dot(values, weights) / total_weight)


def _npv_at(rate: float, periods: np.ndarray, values: np.ndarray) -> float:
    return float(np.sum(values / np.power(1.0 + rate, periods)))


def calculate_irr(
    years: Sequence[int],
    values: Sequence[float],
    guess: float = 0.1,
    tolerance: float = 1e-10,
    max_iterations: int = 100
) -> float:
    """
    Internal rate of return of a year-indexed cashflow.

    Newton iteration from the guess; falls back to bisection on [-0.99, 10]
    when Newton diverges.

    Args:
        years: Year of each cashflow
        values: Cashflow per year
        guess: Starting rate for Newton iteration
        tolerance: Convergence tolerance on NPV
        max_iterations: Iteration cap per method

    Returns:
        IRR as decimal

    Raises:
        AggregationError: If cashflows do not change sign or no root is found
    """
    year_arr, value_arr = _as_arrays(years, values)
    if not (np.any(value_arr > 0) and np.any(value_arr < 0)):
        raise AggregationError("IRR undefined: cashflows do not change sign")

    periods = year_arr - year_arr.min()

    rate = guess
    for _ in range(max_iterations):
        npv = _npv_at(rate, periods, value_arr)
        if abs(npv) < tolerance:
            return float(rate)
        derivative = float(np.sum(-periods * value_arr / np.power(1.0 + rate, periods + 1)))
        if derivative == 0:
            break
        next_rate = rate - npv / derivative
        if not math.isfinite(next_rate) or next_rate <= -1:
            break
        if abs(next_rate - rate) < tolerance:
            return float(next_rate)
        rate = next_rate

    low, high = -0.99, 10.0
    npv_low = _npv_at(low, periods, value_arr)
    npv_high = _npv_at(high, periods, value_arr)
    if npv_low * npv_high > 0:
        raise AggregationError("IRR not found in range -99% to 1000%")

    for _ in range(max_iterations * 2):
        mid = (low + high) / 2
        npv_mid = _npv_at(mid, periods, value_arr)
        if abs(npv_mid) < tolerance or (high - low) / 2 < tolerance:
            return float(mid)
        if npv_low * npv_mid < 0:
            high = mid
        else:
            low, npv_low = mid, npv_mid
    return float((low + high) / 2)


def calculate_payback_period(years: Sequence[int], values: Sequence[float]) -> float:
    """
    Year at which cumulative cashflow turns non-negative, linearly interpolated.

    Args:
        years: Year of each cashflow (sorted)
        values: Cashflow per year

    Returns:
        Interpolated payback year

    Raises:
        AggregationError: If cumulative cashflow never recovers
    """
    year_arr, value_arr = _as_arrays(years, values)
    cumulative = np.cumsum(value_arr)

    if cumulative[0] >= 0:
        return float(year_arr[0])

    for i in range(1, len(cumulative)):
        if cumulative[i] >= 0:
            previous = cumulative[i - 1]
            fraction = -previous / (cumulative[i] - previous)
            return float(year_arr[i - 1] + fraction * (year_arr[i] - year_arr[i - 1]))

    raise AggregationError("Payback not reached within the series")


def _simple(reducer: Callable[[np.ndarray], float]):
    def aggregate(years: Sequence[int], values: Sequence[float], **options) -> float:
        _, value_arr = _as_arrays(years, values)
        return float(reducer(value_arr))
    return aggregate


def _npv(years: Sequence[int], values: Sequence[float], discount_rate: Optional[float] = None, **options) -> float:
    if discount_rate is None:
        raise AggregationError("NPV requires a discount rate")
    return calculate_npv(years, values, discount_rate)


def _weighted_mean(years: Sequence[int], values: Sequence[float], weights: Optional[Sequence[float]] = None, **options) -> float:
    if weights is None:
        raise AggregationError("Weighted mean requires weights")
    return calculate_weighted_mean(values, weights)


def _irr(years: Sequence[int], values: Sequence[float], **options) -> float:
    return calculate_irr(years, values)


def _payback(years: Sequence[int], values: Sequence[float], **options) -> float:
    return calculate_payback_period(years, values)


AGGREGATIONS: Dict[str, Callable[..., float]] = {
    'sum': _simple(np.sum),
    'mean': _simple(np.mean),
    'min': _simple(np.min),
    'max': _simple(np.max),
    'first': _simple(lambda arr: arr[0]),
    'last': _simple(lambda arr: arr[-1]),
    'npv': _npv,
    'weighted_mean': _weighted_mean,
    'irr': _irr,
    'payback': _payback,
}


def aggregate(
    method: str,
    years: Sequence[int],
    values: Sequence[float],
    discount_rate: Optional[float] = None,
    weights: Optional[Sequence[float]] = None
) -> float:
    """
    Reduce a series with a named aggregation method.

    Raises:
        AggregationError: If the method is unknown or the reduction is undefined
    """
    if method not in AGGREGATIONS:
        raise AggregationError(f"Unknown aggregation method: {method}")
    return AGGREGATIONS[method](years, values, discount_rate=discount_rate, weights=weights)


def available_methods() -> List[str]:
    return sorted(AGGREGATIONS)
