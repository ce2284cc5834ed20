"""
Cube store - immutable collection of processed sources for one scenario.
All queries are restrictions of a single predicate lookup and never mutate the cube.
"""

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Dict, Any, Optional, List, Mapping, Tuple

import pandas as pd

from cube.audit import SourceAudit, audit_to_dict
from cube.registry import SourceMetadata, SourceRegistry
from cube.series import PercentileSeries


@dataclass(frozen=True)
class ProcessedSource:
    """Cube entry: every band of one source plus metadata and audit trail."""
    id: str
    percentile_source: Tuple[PercentileSeries, ...]
    metadata: SourceMetadata
    has_percentiles: bool = False
    audit: SourceAudit = field(default_factory=SourceAudit)

    def band(self, percentile: int) -> Optional[PercentileSeries]:
        for series in self.percentile_source:
            if series.percentile == percentile:
                return series
        return None

    def restricted_to(self, percentile: int) -> 'ProcessedSource':
        band = self.band(percentile)
        return ProcessedSource(
            id=self.id,
            percentile_source=(band,) if band is not None else (),
            metadata=self.metadata,
            has_percentiles=self.has_percentiles,
            audit=self.audit,
        )


class Cube:
    """
    Materialized sources across all percentile bands for one scenario.

    Holds the inputs it was built from so a variant (e.g. different custom
    percentiles) can be rebuilt wholesale rather than patched.
    """

    def __init__(
        self,
        sources: Mapping[str, ProcessedSource],
        registry: SourceRegistry,
        scenario: Mapping[str, Any],
        percentiles: Tuple[int, ...],
        primary_percentile: int,
        years: Optional[Tuple[int, ...]] = None,
        custom_percentiles: Optional[Mapping[str, int]] = None,
        errors: Optional[Mapping[str, str]] = None,
        references: Optional[Mapping[str, Any]] = None
    ):
        self._sources = MappingProxyType(dict(sources))
        self.registry = registry
        self.scenario = scenario
        self.percentiles = tuple(percentiles)
        self.primary_percentile = primary_percentile
        self.years = tuple(years) if years else None
        self.custom_percentiles = MappingProxyType(dict(custom_percentiles)) if custom_percentiles is not None else None
        self.errors = MappingProxyType(dict(errors or {}))
        self.references = MappingProxyType(dict(references or {}))

    def __contains__(self, source_id: object) -> bool:
        return source_id in self._sources

    def __len__(self) -> int:
        return len(self._sources)

    def __repr__(self) -> str:
        return f"Cube(sources={len(self._sources)}, percentiles={list(self.percentiles)}, errors={len(self.errors)})"

    @property
    def ids(self) -> List[str]:
        return list(self._sources)

    @property
    def sources(self) -> Mapping[str, ProcessedSource]:
        return self._sources

    @property
    def bands(self) -> Tuple[int, ...]:
        """All band keys present, including the custom band when built with one."""
        first = next(iter(self._sources.values()), None)
        if first is None:
            return self.percentiles
        return tuple(series.percentile for series in first.percentile_source)

    def get(self, source_id: str) -> Optional[ProcessedSource]:
        return self._sources.get(source_id)

    def series(self, source_id: str, percentile: int) -> Optional[PercentileSeries]:
        entry = self._sources.get(source_id)
        return entry.band(percentile) if entry else None

    def query(
        self,
        percentile: Optional[int] = None,
        source_id: Optional[str] = None,
        category: Optional[str] = None,
        cashflow_group: Optional[str] = None
    ) -> List[ProcessedSource]:
        """
        Select processed sources matching every given criterion.

        Args:
            percentile: Restrict each result to this band (sources lacking it are skipped)
            source_id: Match a single source id
            category: Match metadata category
            cashflow_group: Match metadata cashflow group

        Returns:
            Matching ProcessedSource records in build order
        """
        results = []
        for entry in self._sources.values():
            if source_id is not None and entry.id != source_id:
                continue
            if category is not None and entry.metadata.category != category:
                continue
            if cashflow_group is not None and entry.metadata.cashflow_group != cashflow_group:
                continue
            if percentile is not None:
                if entry.band(percentile) is None:
                    continue
                entry = entry.restricted_to(percentile)
            results.append(entry)
        return results

    def to_frame(self) -> pd.DataFrame:
        """Long-format DataFrame: one row per source, band and year."""
        rows = [
            {
                'source_id': entry.id,
                'percentile': band.percentile,
                'year': point.year,
                'value': point.value,
                'category': entry.metadata.category,
                'cashflow_group': entry.metadata.cashflow_group,
            }
            for entry in self._sources.values()
            for band in entry.percentile_source
            for point in band.data
        ]
        columns = ['source_id', 'percentile', 'year', 'value', 'category', 'cashflow_group']
        return pd.DataFrame(rows, columns=columns)

    def summary(self) -> Dict[str, Any]:
        """JSON-friendly summary of sources and build errors."""
        return {
            'percentiles': list(self.percentiles),
            'primary_percentile': self.primary_percentile,
            'sources': {
                entry.id: {
                    'name': entry.metadata.name,
                    'category': entry.metadata.category,
                    'cashflow_group': entry.metadata.cashflow_group,
                    'has_percentiles': entry.has_percentiles,
                    'years': entry.percentile_source[0].years if entry.percentile_source else [],
                    'audit': audit_to_dict(entry.audit),
                }
                for entry in self._sources.values()
            },
            'errors': dict(self.errors),
        }


def query_cube(
    cube: Cube,
    percentile: Optional[int] = None,
    source_id: Optional[str] = None,
    category: Optional[str] = None,
    cashflow_group: Optional[str] = None
) -> List[ProcessedSource]:
    """Functional alias of Cube.query."""
    return cube.query(percentile=percentile, source_id=source_id, category=category, cashflow_group=cashflow_group)
