"""
Audit trail records attached to every processed source.
"""

from dataclasses import dataclass
from typing import Dict, Any, Optional, List, Sequence, Tuple

from cube.multipliers import AppliedMultiplier
from cube.series import PercentileSeries

SAMPLE_SIZE = 3


@dataclass(frozen=True)
class AuditEntry:
    """One processing step of a source."""
    step: str
    details: str
    dependencies: Tuple[str, ...] = ()
    sample: Tuple[Tuple[int, float], ...] = ()


@dataclass(frozen=True)
class SourceAudit:
    applied_multipliers: Tuple[AppliedMultiplier, ...] = ()
    dependency_chain: Tuple[str, ...] = ()
    trail: Tuple[AuditEntry, ...] = ()


def sample_points(series: Sequence[PercentileSeries], percentile: Optional[int]) -> Tuple[Tuple[int, float], ...]:
    """First few (year, value) pairs of the given band."""
    for band in series:
        if band.percentile == percentile:
            return tuple((point.year, point.value) for point in band.data[:SAMPLE_SIZE])
    return ()


class AuditRecorder:
    """Collects audit entries while a single source is being built."""

    def __init__(self, source_id: str, sample_percentile: Optional[int] = None):
        self.source_id = source_id
        self.sample_percentile = sample_percentile
        self._trail: List[AuditEntry] = []
        self._applied: List[AppliedMultiplier] = []
        self._dependencies: List[str] = []

    def record(
        self,
        step: str,
        details: str,
        dependencies: Sequence[str] = (),
        series: Optional[Sequence[PercentileSeries]] = None
    ):
        for dependency in dependencies:
            if dependency not in self._dependencies:
                self._dependencies.append(dependency)
        sample = sample_points(series, self.sample_percentile) if series else ()
        self._trail.append(AuditEntry(step=step, details=details, dependencies=tuple(dependencies), sample=sample))

    def record_multiplier(self, applied: AppliedMultiplier, series: Sequence[PercentileSeries]):
        self._applied.append(applied)
        self.record(
            step=f"multiplier:{applied.operation.value}",
            details=f"Applied {applied.operation.value} '{applied.id}' (base year {applied.base_year})",
            dependencies=[applied.id],
            series=series,
        )

    def finish(self) -> SourceAudit:
        return SourceAudit(
            applied_multipliers=tuple(self._applied),
            dependency_chain=tuple(self._dependencies),
            trail=tuple(self._trail),
        )


def audit_to_dict(audit: SourceAudit) -> Dict[str, Any]:
    """JSON-friendly view of a source audit."""
    return {
        'applied_multipliers': [
            {
                'id': applied.id,
                'operation': applied.operation.value,
                'years': list(applied.years),
                'values': list(applied.values),
                'base_year': applied.base_year,
                'cumulative': list(applied.cumulative),
            }
            for applied in audit.applied_multipliers
        ],
        'dependency_chain': list(audit.dependency_chain),
        'trail': [
            {
                'step': entry.step,
                'details': entry.details,
                'dependencies': list(entry.dependencies),
                'sample': [list(point) for point in entry.sample],
            }
            for entry in audit.trail
        ],
    }
