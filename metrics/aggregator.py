"""
Metric aggregator - evaluates registry metrics against a cube at one percentile.
Never raises for missing data: unavailable metrics carry an error and a null value.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Dict, Any, Optional, List, Mapping, Tuple, Union

import pandas as pd

from cube.errors import CubeError
from cube.references import resolve_numeric_option
from cube.store import Cube
from metrics.aggregations import AggregationError, aggregate
from metrics.formatters import FormatterError, format_metric_value
from metrics.registry import (
    CombineOperation,
    MetricDefinition,
    MetricRegistry,
    load_metric_registry,
)

logger = logging.getLogger(__name__)


class MetricUnavailable(Exception):
    """Raised internally when a metric cannot be computed; surfaced as MetricResult.error."""

    def __init__(self, metric_key: str, message: str):
        self.metric_key = metric_key
        super().__init__(message)


@dataclass(frozen=True)
class MetricMetadata:
    calculation_method: str
    percentile: int
    input_sources: Tuple[str, ...] = ()
    computation_time: float = field(default=0.0, compare=False)


@dataclass(frozen=True)
class MetricResult:
    """Value of one metric at one percentile; value is None when unavailable."""
    value: Optional[float]
    display_value: str
    metadata: MetricMetadata
    error: Optional[str] = None

    @property
    def available(self) -> bool:
        return self.error is None and self.value is not None


def _currency(cube: Cube) -> str:
    currency = cube.references.get('currency', 'USD')
    return currency if isinstance(currency, str) else 'USD'


class MetricEvaluator:
    """
    Evaluates metrics for one cube and percentile, memoizing results.

    Metric dependencies are evaluated first; a dependency cycle or an
    unavailable dependency makes the dependent unavailable too.
    """

    def __init__(self, cube: Cube, percentile: int, registry: MetricRegistry):
        self.cube = cube
        self.percentile = percentile
        self.registry = registry
        self._results: Dict[str, MetricResult] = {}
        self._stack: List[str] = []

    def evaluate(self, metric_key: str) -> MetricResult:
        if metric_key in self._results:
            return self._results[metric_key]

        started = time.perf_counter()
        definition = self.registry.get(metric_key)
        method = definition.calculation_method if definition else 'unknown'
        inputs: Tuple[str, ...] = ()

        if metric_key in self._stack:
            cycle = ' -> '.join(self._stack + [metric_key])
            return self._failure(metric_key, method, inputs, f"Metric dependency cycle: {cycle}", started, cache=False)

        self._stack.append(metric_key)
        try:
            if definition is None:
                raise MetricUnavailable(metric_key, f"Unknown metric: {metric_key}")
            inputs = self._input_sources(definition)
            if self.percentile not in self.cube.bands:
                raise MetricUnavailable(metric_key, f"Percentile {self.percentile} not available in cube")
            self._check_dependencies(definition)
            value = self._compute(definition)
        except (MetricUnavailable, AggregationError, CubeError, ValueError, ZeroDivisionError) as e:
            return self._failure(metric_key, method, inputs, str(e), started)
        finally:
            self._stack.pop()

        try:
            display = format_metric_value(value, definition.formatter, _currency(self.cube))
        except FormatterError as e:
            return self._failure(metric_key, method, inputs, str(e), started)

        result = MetricResult(
            value=value,
            display_value=display,
            metadata=MetricMetadata(
                calculation_method=method,
                percentile=self.percentile,
                input_sources=inputs,
                computation_time=time.perf_counter() - started,
            ),
        )
        self._results[metric_key] = result
        return result

    def _failure(
        self,
        metric_key: str,
        method: str,
        inputs: Tuple[str, ...],
        message: str,
        started: float,
        cache: bool = True
    ) -> MetricResult:
        logger.debug(f"Metric {metric_key} unavailable at P{self.percentile}: {message}")
        result = MetricResult(
            value=None,
            display_value=format_metric_value(None),
            error=message,
            metadata=MetricMetadata(
                calculation_method=method,
                percentile=self.percentile,
                input_sources=inputs,
                computation_time=time.perf_counter() - started,
            ),
        )
        if cache:
            self._results[metric_key] = result
        return result

    def _input_sources(self, definition: MetricDefinition, visited: Optional[set] = None) -> Tuple[str, ...]:
        """Cube sources a metric reads, directly or through metric dependencies."""
        visited = visited if visited is not None else set()
        visited.add(definition.key)
        sources: List[str] = []

        def add(source_id: str):
            if source_id not in sources:
                sources.append(source_id)

        if definition.aggregation is not None:
            add(definition.aggregation.source)
            weights_source = definition.aggregation.options.get('weights_source')
            if weights_source:
                add(weights_source)
        for dependency in definition.dependencies:
            if dependency not in self.registry:
                add(dependency)
        if definition.combine is not None:
            for operand in definition.combine.operands:
                operand_definition = self.registry.get(operand)
                if operand_definition is not None and operand not in visited:
                    for source_id in self._input_sources(operand_definition, visited):
                        add(source_id)
        return tuple(sources)

    def _check_dependencies(self, definition: MetricDefinition):
        for dependency in definition.dependencies:
            if dependency in self.registry:
                result = self.evaluate(dependency)
                if result.error:
                    raise MetricUnavailable(definition.key, f"Dependency '{dependency}' unavailable: {result.error}")
            else:
                self._require_source(definition.key, dependency)

    def _require_source(self, metric_key: str, source_id: str):
        if source_id in self.cube.errors:
            raise MetricUnavailable(metric_key, f"Source '{source_id}' failed: {self.cube.errors[source_id]}")
        if source_id not in self.cube:
            raise MetricUnavailable(metric_key, f"Source '{source_id}' not in cube")

    def _series(self, metric_key: str, source_id: str) -> Dict[int, float]:
        self._require_source(metric_key, source_id)
        series = self.cube.series(source_id, self.percentile)
        if series is None:
            raise MetricUnavailable(metric_key, f"Source '{source_id}' has no percentile {self.percentile}")
        return series.as_dict()

    def _option(self, metric_key: str, option: Any) -> Optional[float]:
        if option is None:
            return None
        return resolve_numeric_option(option, self.cube.references, metric_key)

    def _compute(self, definition: MetricDefinition) -> float:
        if definition.combine is not None:
            return self._combine(definition)

        spec = definition.aggregation
        values_by_year = self._series(definition.key, spec.source)

        window = spec.options.get('years') or {}
        if not isinstance(window, Mapping):
            raise MetricUnavailable(definition.key, f"Year window must be a mapping with min/max, got {window!r}")
        min_year = self._option(definition.key, window.get('min'))
        max_year = self._option(definition.key, window.get('max'))
        years = [
            year for year in sorted(values_by_year)
            if (min_year is None or year >= min_year) and (max_year is None or year <= max_year)
        ]
        if not years:
            raise MetricUnavailable(definition.key, f"No data for '{spec.source}' in year window")

        weights = None
        if spec.options.get('weights_source'):
            weight_series = self._series(definition.key, spec.options['weights_source'])
            weights = [weight_series.get(year, 0.0) for year in years]

        return aggregate(
            spec.method,
            years,
            [values_by_year[year] for year in years],
            discount_rate=self._option(definition.key, spec.options.get('discount_rate')),
            weights=weights,
        )

    def _combine(self, definition: MetricDefinition) -> float:
        values = []
        for operand in definition.combine.operands:
            result = self.evaluate(operand)
            if result.error or result.value is None:
                raise MetricUnavailable(definition.key, f"Dependency '{operand}' unavailable: {result.error}")
            values.append(result.value)

        operation = definition.combine.operation
        if operation == CombineOperation.RATIO:
            if values[1] == 0:
                raise MetricUnavailable(definition.key, f"Division by zero: '{definition.combine.operands[1]}' is 0")
            return values[0] / values[1]
        if operation == CombineOperation.DIFFERENCE:
            return values[0] - values[1]
        if operation == CombineOperation.SUM:
            return float(sum(values))
        product = 1.0
        for value in values:
            product *= value
        return product


def compute_metric(
    cube: Cube,
    metric_key: str,
    percentile: int,
    registry: Union[MetricRegistry, Dict[str, Any], str, None] = None
) -> MetricResult:
    """
    Compute one metric at one percentile.

    Args:
        cube: Built cube
        metric_key: Metric key in the registry
        percentile: Band to evaluate (CUSTOM_PERCENTILE is accepted when present)
        registry: MetricRegistry, mapping, YAML path, or None for the default registry

    Returns:
        MetricResult; value is None and error is set when unavailable
    """
    evaluator = MetricEvaluator(cube, percentile, load_metric_registry(registry))
    return evaluator.evaluate(metric_key)


def compute_all_metrics(
    cube: Cube,
    percentile: int,
    registry: Union[MetricRegistry, Dict[str, Any], str, None] = None
) -> Dict[str, MetricResult]:
    """
    Compute every registry metric at one percentile, sharing intermediate results.

    Returns:
        Dictionary of metric key -> MetricResult in registry order
    """
    registry = load_metric_registry(registry)
    evaluator = MetricEvaluator(cube, percentile, registry)
    results = {key: evaluator.evaluate(key) for key in registry.keys}

    unavailable = [key for key, result in results.items() if result.error]
    logger.info(f"Computed {len(results)} metrics at P{percentile} ({len(unavailable)} unavailable)")
    return results


def metrics_frame(results: Dict[str, MetricResult]) -> pd.DataFrame:
    """Tabular view of metric results."""
    rows = [
        {
            'metric': key,
            'value': result.value,
            'display': result.display_value,
            'method': result.metadata.calculation_method,
            'percentile': result.metadata.percentile,
            'error': result.error,
        }
        for key, result in results.items()
    ]
    return pd.DataFrame(rows, columns=['metric', 'value', 'display', 'method', 'percentile', 'error'])
