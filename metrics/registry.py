"""
Metric registry - declarative metric definitions loaded from YAML.
A metric either aggregates one cube source or combines other metrics.
"""

import logging
import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Optional, List, Mapping, Tuple, Union

import yaml

from metrics.aggregations import AGGREGATIONS

logger = logging.getLogger(__name__)

DEFAULT_METRICS_PATH = Path(__file__).parent / 'config' / 'metrics.yml'


class MetricRegistryError(Exception):
    """Raised when metric definitions are malformed."""
    pass


class CombineOperation(str, Enum):
    RATIO = "ratio"
    DIFFERENCE = "difference"
    SUM = "sum"
    PRODUCT = "product"


@dataclass(frozen=True)
class AggregationSpec:
    """Aggregation of one source; options hold years {min, max}, discount_rate, weights_source."""
    method: str
    source: str
    options: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class CombineSpec:
    operation: CombineOperation
    operands: Tuple[str, ...]


@dataclass(frozen=True)
class MetricDefinition:
    key: str
    name: str
    formatter: Optional[str] = None
    description: str = ""
    aggregation: Optional[AggregationSpec] = None
    combine: Optional[CombineSpec] = None
    dependencies: Tuple[str, ...] = ()

    @property
    def calculation_method(self) -> str:
        if self.aggregation is not None:
            return self.aggregation.method
        return f"combine:{self.combine.operation.value}"


@dataclass(frozen=True)
class MetricRegistry:
    metrics: Mapping[str, MetricDefinition]

    def __contains__(self, key: object) -> bool:
        return key in self.metrics

    def __iter__(self):
        return iter(self.metrics)

    def __len__(self) -> int:
        return len(self.metrics)

    def get(self, key: str) -> Optional[MetricDefinition]:
        return self.metrics.get(key)

    @property
    def keys(self) -> List[str]:
        return list(self.metrics)


def _parse_aggregation(key: str, config: Mapping[str, Any]) -> AggregationSpec:
    method = config.get('method')
    if method not in AGGREGATIONS:
        raise MetricRegistryError(f"Metric '{key}': unknown aggregation method '{method}'")
    if not config.get('source'):
        raise MetricRegistryError(f"Metric '{key}': aggregation requires a source")

    options = config.get('options') or {}
    if not isinstance(options, Mapping):
        raise MetricRegistryError(f"Metric '{key}': options must be a mapping")
    options = dict(options)
    if not isinstance(options.get('years') or {}, Mapping):
        raise MetricRegistryError(f"Metric '{key}': options.years must be a mapping with min/max")
    if method == 'npv' and 'discount_rate' not in options:
        raise MetricRegistryError(f"Metric '{key}': npv requires options.discount_rate")
    if method == 'weighted_mean' and 'weights_source' not in options:
        raise MetricRegistryError(f"Metric '{key}': weighted_mean requires options.weights_source")

    return AggregationSpec(method=method, source=str(config['source']), options=options)


def _parse_combine(key: str, config: Mapping[str, Any]) -> CombineSpec:
    try:
        operation = CombineOperation(config.get('operation'))
    except ValueError:
        raise MetricRegistryError(f"Metric '{key}': unknown combine operation '{config.get('operation')}'")

    operands = tuple(str(operand) for operand in config.get('operands') or [])
    if operation in (CombineOperation.RATIO, CombineOperation.DIFFERENCE) and len(operands) != 2:
        raise MetricRegistryError(f"Metric '{key}': {operation.value} needs exactly two operands")
    if not operands:
        raise MetricRegistryError(f"Metric '{key}': combine needs operands")
    return CombineSpec(operation=operation, operands=operands)


def parse_metric(key: str, config: Mapping[str, Any]) -> MetricDefinition:
    """
    Parse one metric definition.

    Raises:
        MetricRegistryError: If the definition is malformed
    """
    has_aggregation = bool(config.get('aggregation'))
    has_combine = bool(config.get('combine'))
    if has_aggregation == has_combine:
        raise MetricRegistryError(f"Metric '{key}' must declare exactly one of aggregation or combine")

    return MetricDefinition(
        key=key,
        name=config.get('name', key),
        formatter=config.get('formatter'),
        description=config.get('description', ''),
        aggregation=_parse_aggregation(key, config['aggregation']) if has_aggregation else None,
        combine=_parse_combine(key, config['combine']) if has_combine else None,
        dependencies=tuple(str(dep) for dep in config.get('dependencies') or []),
    )


def parse_metric_registry(config: Mapping[str, Any]) -> MetricRegistry:
    """Build a MetricRegistry from a mapping with a 'metrics' section."""
    if not isinstance(config, Mapping) or not isinstance(config.get('metrics'), Mapping):
        raise MetricRegistryError("Metric config must contain a 'metrics' mapping")

    metrics = {str(key): parse_metric(str(key), value or {}) for key, value in config['metrics'].items()}

    for metric in metrics.values():
        if metric.combine is None:
            continue
        unknown = [operand for operand in metric.combine.operands if operand not in metrics]
        if unknown:
            raise MetricRegistryError(f"Metric '{metric.key}' combines unknown metrics: {unknown}")

    return MetricRegistry(metrics=metrics)


def load_metric_registry(source: Union[str, Path, Mapping[str, Any], MetricRegistry, None] = None) -> MetricRegistry:
    """
    Load metric definitions from YAML, a mapping, or the packaged default.

    Args:
        source: YAML path, parsed mapping, existing registry, or None
            (CUBE_METRICS_REGISTRY or the packaged metrics.yml)

    Returns:
        MetricRegistry

    Raises:
        MetricRegistryError: If the file is missing or invalid
    """
    if isinstance(source, MetricRegistry):
        return source
    if isinstance(source, Mapping):
        return parse_metric_registry(source)

    if source is None:
        source = os.getenv('CUBE_METRICS_REGISTRY') or DEFAULT_METRICS_PATH

    metrics_file = Path(source)
    if not metrics_file.exists():
        raise MetricRegistryError(f"Metric registry file not found: {metrics_file}")

    try:
        with open(metrics_file, 'r', encoding='utf-8') as f:
            config = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise MetricRegistryError(f"Failed to parse metric registry {metrics_file}: {e}")

    registry = parse_metric_registry(config or {})
    logger.info(f"Loaded {len(registry)} metrics from {metrics_file}")
    return registry
