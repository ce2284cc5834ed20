"""
Sensitivity engine - swings one percentile input between two bands and
measures the effect on a target metric, all other inputs held at the primary band.
"""

import logging
from dataclasses import dataclass
from typing import Dict, Any, Optional, List, Sequence, Tuple, Union

from cube.builder import rebuild_with_custom_percentiles
from cube.series import CUSTOM_PERCENTILE
from cube.store import Cube
from metrics.aggregator import MetricResult, compute_metric
from metrics.registry import MetricRegistry, load_metric_registry

logger = logging.getLogger(__name__)


class SensitivityInputInvalid(Exception):
    """Raised when a sensitivity request is rejected before computation."""
    pass


@dataclass(frozen=True)
class Impact:
    absolute: Optional[float]
    percentage: Optional[float]
    normalized: Optional[float]


@dataclass(frozen=True)
class SensitivityValues:
    lower: Optional[float]
    upper: Optional[float]
    baseline: Optional[float]


@dataclass(frozen=True)
class PercentileRange:
    lower: int
    upper: int


@dataclass(frozen=True)
class SensitivityResult:
    """Impact of one variable on one metric between two percentiles."""
    metric_key: str
    variable_id: str
    impact: Impact
    values: SensitivityValues
    percentile_range: PercentileRange
    error: Optional[str] = None


def validate_request(
    cube: Cube,
    target_metric: str,
    variable_id: str,
    lower_percentile: int,
    upper_percentile: int,
    registry: MetricRegistry
):
    """
    Reject requests that cannot be computed.

    Raises:
        SensitivityInputInvalid: If a percentile is not available, the variable
            is not a percentile source, or the metric is unknown
    """
    for label, percentile in (('lower', lower_percentile), ('upper', upper_percentile)):
        if percentile not in cube.percentiles:
            raise SensitivityInputInvalid(
                f"{label.capitalize()} percentile {percentile} not in available percentiles {list(cube.percentiles)}"
            )

    definition = cube.registry.get(variable_id)
    if definition is None:
        raise SensitivityInputInvalid(f"Unknown variable '{variable_id}'")
    if not definition.has_percentiles:
        raise SensitivityInputInvalid(f"Variable '{variable_id}' does not vary by percentile")

    if target_metric not in registry:
        raise SensitivityInputInvalid(f"Unknown target metric '{target_metric}'")


def _variant_value(cube: Cube, target_metric: str, variable_id: str, percentile: int, registry: MetricRegistry) -> MetricResult:
    variant = rebuild_with_custom_percentiles(cube, {variable_id: percentile})
    return compute_metric(variant, target_metric, CUSTOM_PERCENTILE, registry)


def calculate_impact(lower: float, upper: float, baseline: Optional[float]) -> Impact:
    """
    Impact between lower and upper metric values.

    percentage is relative to the lower value; normalized is relative to the
    baseline magnitude so impacts compare across metrics. Either is None when
    its denominator is zero.
    """
    absolute = upper - lower
    percentage = absolute / lower if lower != 0 else None
    normalized = absolute / abs(baseline) if baseline else None
    return Impact(absolute=absolute, percentage=percentage, normalized=normalized)


def analyze(
    target_metric: str,
    variable_id: str,
    lower_percentile: int,
    upper_percentile: int,
    cube: Cube,
    registry: Union[MetricRegistry, Dict[str, Any], str, None] = None
) -> SensitivityResult:
    """
    Evaluate a metric with one variable at the lower and upper percentile.

    Args:
        target_metric: Metric key
        variable_id: Percentile source to swing
        lower_percentile: Band for the low case
        upper_percentile: Band for the high case
        cube: Baseline cube (provides registry, scenario and primary band)
        registry: Metric registry (default: packaged metrics)

    Returns:
        SensitivityResult; error is set when a case metric is unavailable

    Raises:
        SensitivityInputInvalid: If the request is invalid
    """
    registry = load_metric_registry(registry)
    validate_request(cube, target_metric, variable_id, lower_percentile, upper_percentile, registry)

    baseline = compute_metric(cube, target_metric, cube.primary_percentile, registry)
    lower = _variant_value(cube, target_metric, variable_id, lower_percentile, registry)
    upper = _variant_value(cube, target_metric, variable_id, upper_percentile, registry)

    values = SensitivityValues(lower=lower.value, upper=upper.value, baseline=baseline.value)
    percentile_range = PercentileRange(lower=lower_percentile, upper=upper_percentile)

    errors = [result.error for result in (lower, upper) if result.error]
    if errors or lower.value is None or upper.value is None:
        message = '; '.join(errors) or "Metric unavailable"
        logger.warning(f"Sensitivity of {target_metric} to {variable_id} unavailable: {message}")
        return SensitivityResult(
            metric_key=target_metric,
            variable_id=variable_id,
            impact=Impact(absolute=None, percentage=None, normalized=None),
            values=values,
            percentile_range=percentile_range,
            error=message,
        )

    return SensitivityResult(
        metric_key=target_metric,
        variable_id=variable_id,
        impact=calculate_impact(lower.value, upper.value, baseline.value),
        values=values,
        percentile_range=percentile_range,
    )


def rank_results(results: Sequence[SensitivityResult]) -> List[SensitivityResult]:
    """Sort by descending absolute impact, ties by variable id, unavailable results last."""
    def sort_key(result: SensitivityResult) -> Tuple[bool, float, str]:
        absolute = result.impact.absolute
        if absolute is None:
            return (True, 0.0, result.variable_id)
        return (False, -abs(absolute), result.variable_id)

    return sorted(results, key=sort_key)


def analyze_sensitivity(
    cube: Cube,
    target_metric: str,
    variable_ids: Optional[Sequence[str]] = None,
    percentile_range: Tuple[int, int] = (10, 90),
    registry: Union[MetricRegistry, Dict[str, Any], str, None] = None
) -> List[SensitivityResult]:
    """
    Run the sensitivity analysis for each variable and rank the results (tornado order).

    Args:
        cube: Baseline cube
        target_metric: Metric key
        variable_ids: Variables to swing (default: every percentile source that built)
        percentile_range: (lower, upper) percentiles
        registry: Metric registry (default: packaged metrics)

    Returns:
        Ranked SensitivityResults

    Raises:
        SensitivityInputInvalid: If any request is invalid
    """
    registry = load_metric_registry(registry)
    lower_percentile, upper_percentile = percentile_range

    if variable_ids is None:
        variable_ids = [
            source_id for source_id in cube.registry.percentile_sources()
            if source_id in cube
        ]

    for variable_id in variable_ids:
        validate_request(cube, target_metric, variable_id, lower_percentile, upper_percentile, registry)

    results = [
        analyze(target_metric, variable_id, lower_percentile, upper_percentile, cube, registry)
        for variable_id in variable_ids
    ]

    logger.info(
        f"Sensitivity of {target_metric} over {len(results)} variables "
        f"(P{lower_percentile}-P{upper_percentile})"
    )
    return rank_results(results)
