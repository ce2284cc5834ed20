"""
Year-indexed series types and percentile expansion.
Every raw value is normalized into one PercentileSeries per requested band.
"""

import numbers
from dataclasses import dataclass
from typing import Dict, Any, Optional, List, Mapping, Sequence, Tuple

from cube.errors import OperatorError

# Band key for per-source percentile overrides, kept outside the 0-100 range
CUSTOM_PERCENTILE = -1


@dataclass(frozen=True)
class DataPoint:
    year: int
    value: float


@dataclass(frozen=True)
class PercentileSeries:
    """One Monte Carlo band of a source: data points sorted by year."""
    percentile: int
    data: Tuple[DataPoint, ...]

    @property
    def years(self) -> List[int]:
        return [point.year for point in self.data]

    @property
    def values(self) -> List[float]:
        return [point.value for point in self.data]

    def as_dict(self) -> Dict[int, float]:
        return {point.year: point.value for point in self.data}

    def with_percentile(self, percentile: int) -> 'PercentileSeries':
        return PercentileSeries(percentile=percentile, data=self.data)


def is_scalar(value: Any) -> bool:
    """True for real numbers (bools excluded)."""
    return isinstance(value, numbers.Real) and not isinstance(value, bool)


def make_series(percentile: int, values_by_year: Mapping[int, float]) -> PercentileSeries:
    """Build a PercentileSeries from a year -> value mapping."""
    data = tuple(
        DataPoint(year=int(year), value=float(values_by_year[year]))
        for year in sorted(values_by_year)
    )
    return PercentileSeries(percentile=int(percentile), data=data)


def broadcast_scalar(value: float, percentiles: Sequence[int], years: Sequence[int]) -> List[PercentileSeries]:
    """Fixed expansion: the same value for every year and every band."""
    data = tuple(DataPoint(year=int(year), value=float(value)) for year in years)
    return [PercentileSeries(percentile=p, data=data) for p in percentiles]


def _parse_percentile_key(key: Any, source_id: Optional[str] = None) -> int:
    if isinstance(key, Mapping):
        key = key.get('value')
    if isinstance(key, str):
        key = key.strip().upper().lstrip('P')
    try:
        return int(key)
    except (TypeError, ValueError):
        raise OperatorError(f"Invalid percentile key: {key!r}", source_id)


def _parse_year_series(items: Sequence[Any], source_id: Optional[str]) -> Dict[int, float]:
    values: Dict[int, float] = {}
    for item in items:
        if isinstance(item, DataPoint):
            year, value = item.year, item.value
        elif isinstance(item, Mapping) and 'year' in item:
            year, value = item['year'], item.get('value')
        else:
            raise OperatorError(f"Expected {{year, value}} data point, got {item!r}", source_id)

        if not is_scalar(value):
            raise OperatorError(f"Non-numeric value {value!r} for year {year}", source_id)
        try:
            year = int(year)
        except (TypeError, ValueError):
            raise OperatorError(f"Invalid year {year!r} in series", source_id)
        if year in values:
            raise OperatorError(f"Duplicate year {year} in series", source_id)
        values[year] = float(value)
    return values


def _band_data(raw: Any, years: Optional[Sequence[int]], source_id: Optional[str]) -> Dict[int, float]:
    """Year -> value mapping for one band given as scalar or year series."""
    if isinstance(raw, PercentileSeries):
        return raw.as_dict()
    if is_scalar(raw):
        if not years:
            raise OperatorError("Scalar value needs a year axis to expand", source_id)
        return {int(year): float(raw) for year in years}
    if isinstance(raw, (list, tuple)):
        return _parse_year_series(raw, source_id)
    raise OperatorError(f"Unsupported band value: {type(raw).__name__}", source_id)


def _percentile_bands(raw: Any, years: Optional[Sequence[int]], source_id: Optional[str]) -> Optional[Dict[int, Dict[int, float]]]:
    """
    Extract percentile -> year series from percentile-carrying input.

    Returns None when the input carries no percentile dimension.
    """
    if isinstance(raw, Mapping):
        if 'results' in raw:
            return _percentile_bands(raw['results'], years, source_id)
        return {
            _parse_percentile_key(key, source_id): _band_data(value, years, source_id)
            for key, value in raw.items()
        }

    if isinstance(raw, (list, tuple)) and raw:
        first = raw[0]
        if isinstance(first, PercentileSeries):
            return {item.percentile: item.as_dict() for item in raw}
        if isinstance(first, Mapping) and 'percentile' in first:
            bands = {}
            for item in raw:
                if not isinstance(item, Mapping):
                    raise OperatorError(f"Expected {{percentile, data}} entry, got {item!r}", source_id)
                percentile = _parse_percentile_key(item.get('percentile'), source_id)
                bands[percentile] = _band_data(item.get('data', item.get('value')), years, source_id)
            return bands

    return None


def expand_raw_value(
    raw: Any,
    percentiles: Sequence[int],
    years: Optional[Sequence[int]] = None,
    source_id: Optional[str] = None,
    band_fallbacks: Optional[Mapping[int, int]] = None
) -> List[PercentileSeries]:
    """
    Normalize a raw value into one series per requested band.

    Accepted shapes: scalar, list of {year, value}, list of {percentile, data},
    a mapping with a 'results' list, or a mapping of percentile -> scalar/series.
    Scalars and plain year series are broadcast across every band.

    Args:
        raw: Raw value read from the scenario or produced by a transformer
        percentiles: Bands to produce, in output order
        years: Year axis used to expand scalars
        source_id: Owning source, for error reporting
        band_fallbacks: Band -> band to copy when the input lacks that band

    Returns:
        List of PercentileSeries, one per requested band

    Raises:
        OperatorError: If the value is empty, malformed or misses a band
    """
    if raw is None:
        raise OperatorError("Raw value is missing", source_id)
    if isinstance(raw, (list, tuple, Mapping)) and len(raw) == 0:
        raise OperatorError("Raw value is empty", source_id)

    bands = _percentile_bands(raw, years, source_id)
    if bands is None:
        values = _band_data(raw, years, source_id)
        return [make_series(p, values) for p in percentiles]

    fallbacks = band_fallbacks or {}
    expanded = []
    for p in percentiles:
        if p in bands:
            values = bands[p]
        elif p in fallbacks and fallbacks[p] in bands:
            values = bands[fallbacks[p]]
        else:
            raise OperatorError(f"Percentile {p} missing from percentile data", source_id)
        expanded.append(make_series(p, values))
    return expanded


def series_by_percentile(series: Sequence[PercentileSeries]) -> Dict[int, PercentileSeries]:
    return {s.percentile: s for s in series}
