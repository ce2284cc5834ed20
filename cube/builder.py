"""
Cube builder - resolves a source registry against one scenario document.
Sources are processed in dependency order; per-source failures are recorded, not raised.
"""

import copy
import heapq
import logging
import time
from typing import Dict, Any, Optional, List, Mapping, Sequence, Set, Tuple, Union

from cube.audit import AuditRecorder
from cube.errors import CubeError, OperatorError, UnresolvedDependency
from cube.multipliers import MultiplierDefinition, apply_multiplier, cumulative_by_year
from cube.references import (
    Reference,
    ReferenceTable,
    merge_reference_tables,
    resolve_reference,
    resolve_references,
)
from cube.registry import SourceDefinition, SourceRegistry, load_registry
from cube.series import CUSTOM_PERCENTILE, PercentileSeries, expand_raw_value
from cube.store import Cube, ProcessedSource
from cube.transformers import TransformerContext, transform, transformer_dependencies

logger = logging.getLogger(__name__)

PROJECT_LIFE_REFERENCE = 'projectLife'


def validate_percentiles(
    percentiles: Sequence[int],
    primary_percentile: Optional[int] = None
) -> Tuple[Tuple[int, ...], int]:
    """
    Check the available percentile set and pick the primary band.

    Args:
        percentiles: Available percentiles (0-100, unique)
        primary_percentile: Primary band; defaults to 50 when available, else the median entry

    Returns:
        Tuple of (percentiles, primary_percentile)

    Raises:
        ValueError: If the set is empty, has duplicates, out-of-range values or a foreign primary
    """
    if not percentiles:
        raise ValueError("At least one percentile is required")

    values = tuple(int(p) for p in percentiles)
    if len(set(values)) != len(values):
        raise ValueError(f"Duplicate percentiles: {list(values)}")
    for p in values:
        if not 0 <= p <= 100:
            raise ValueError(f"Percentile must be between 0 and 100, got {p}")

    if primary_percentile is None:
        primary_percentile = 50 if 50 in values else sorted(values)[len(values) // 2]
    if primary_percentile not in values:
        raise ValueError(f"Primary percentile {primary_percentile} not in available percentiles {list(values)}")

    return values, int(primary_percentile)


def declared_dependencies(definition: SourceDefinition, registry: SourceRegistry) -> List[str]:
    """Registry source ids a source reads (multiplier operands and transformer inputs)."""
    dependencies: List[str] = []
    for multiplier in definition.multipliers:
        if multiplier.id in registry and multiplier.id not in dependencies:
            dependencies.append(multiplier.id)
    if definition.transformer is not None:
        for dependency in transformer_dependencies(definition.transformer, registry.sources, definition.id):
            if dependency not in dependencies:
                dependencies.append(dependency)
    return dependencies


def resolution_order(registry: SourceRegistry) -> Tuple[List[str], Dict[str, CubeError]]:
    """
    Topologically sort sources over their declared dependencies.

    Ready sources are taken by (stage, priority, id), so the direct -> indirect
    -> virtual split and priorities only break ties.

    Args:
        registry: Source registry

    Returns:
        Tuple of (ordered source ids, source id -> UnresolvedDependency for
        sources with unknown dependencies or caught in a cycle)
    """
    failures: Dict[str, CubeError] = {}
    dependencies = {source.id: declared_dependencies(source, registry) for source in registry}
    dependents: Dict[str, List[str]] = {source.id: [] for source in registry}
    pending = {}

    for source in registry:
        unknown = [dep for dep in dependencies[source.id] if dep not in registry]
        if unknown:
            failures[source.id] = UnresolvedDependency(f"Unknown dependencies: {unknown}", source.id)
        known = [dep for dep in dependencies[source.id] if dep in registry]
        for dependency in known:
            dependents[dependency].append(source.id)
        pending[source.id] = len(known)

    ready = [
        (source.stage, source.priority, source.id)
        for source in registry if pending[source.id] == 0
    ]
    heapq.heapify(ready)

    order: List[str] = []
    while ready:
        _, _, source_id = heapq.heappop(ready)
        order.append(source_id)
        for dependent in dependents[source_id]:
            pending[dependent] -= 1
            if pending[dependent] == 0:
                definition = registry.get(dependent)
                heapq.heappush(ready, (definition.stage, definition.priority, dependent))

    cyclic = [source.id for source in registry if source.id not in order]
    for source_id in cyclic:
        failures.setdefault(
            source_id,
            UnresolvedDependency(f"Cyclic or blocked dependency chain: {sorted(cyclic)}", source_id)
        )

    return order, failures


def _year_axis(
    years: Optional[Sequence[int]],
    references: ReferenceTable,
    default_years: Optional[Sequence[int]] = None
) -> Optional[Tuple[int, ...]]:
    if years:
        return tuple(sorted(int(year) for year in years))
    if PROJECT_LIFE_REFERENCE in references and PROJECT_LIFE_REFERENCE not in references.errors:
        project_life = references[PROJECT_LIFE_REFERENCE]
        if isinstance(project_life, (int, float)) and project_life > 0:
            return tuple(range(1, int(project_life) + 1))
    if default_years:
        return tuple(sorted(int(year) for year in default_years))
    return None


def _resolve_operand(
    multiplier: MultiplierDefinition,
    processed: Mapping[str, ProcessedSource],
    references: ReferenceTable,
    bands: Sequence[int],
    series: Sequence[PercentileSeries],
    primary_percentile: int,
    source_id: str
) -> Dict[int, Dict[int, float]]:
    """Operand per band: prior cube entries take precedence over references."""
    if multiplier.id in processed:
        return {band.percentile: band.as_dict() for band in processed[multiplier.id].percentile_source}

    if multiplier.id in references:
        value = references.get_value(multiplier.id, source_id)
        years = sorted({year for band in series for year in band.years})
        expanded = expand_raw_value(value, bands, years, source_id, {CUSTOM_PERCENTILE: primary_percentile})
        return {band.percentile: band.as_dict() for band in expanded}

    raise UnresolvedDependency(
        f"Multiplier operand '{multiplier.id}' is neither a processed source nor a reference", source_id
    )


def process_source(
    definition: SourceDefinition,
    document: Mapping[str, Any],
    global_references: ReferenceTable,
    processed: Mapping[str, ProcessedSource],
    registry: SourceRegistry,
    bands: Tuple[int, ...],
    primary_percentile: int,
    years: Optional[Tuple[int, ...]] = None,
    custom_percentiles: Optional[Mapping[str, int]] = None
) -> ProcessedSource:
    """
    Resolve one source into a cube entry.

    Reads the raw value, merges references, runs the transformer or Fixed
    expansion, applies multipliers in declared order and attaches the audit.

    Raises:
        ReferenceNotFound: If the source path or a used reference does not resolve
        UnresolvedDependency: If an operand cannot be found
        OperatorError: If a transformer or multiplier fails
    """
    source_id = definition.id
    recorder = AuditRecorder(source_id, sample_percentile=primary_percentile)

    local_references = resolve_references(definition.references, document, source_id)
    references = merge_reference_tables(global_references, local_references)
    if definition.references:
        recorder.record(
            'references',
            f"Merged {len(definition.references)} local references over global scope",
            dependencies=[ref.id for ref in definition.references],
        )

    raw_value = None
    if definition.path is not None:
        raw_value = resolve_reference(Reference(id=source_id, path=definition.path), document, source_id)
        recorder.record('read', f"Read value at {'.'.join(str(p) for p in definition.path)}")

    # The custom band reads raw percentile data at the override (or primary);
    # derived values then follow from their operands' custom bands.
    band_fallbacks = None
    if custom_percentiles is not None:
        band_fallbacks = {CUSTOM_PERCENTILE: custom_percentiles.get(source_id, primary_percentile)}
        if source_id in custom_percentiles:
            recorder.record('custom_percentile', f"Custom band reads P{custom_percentiles[source_id]}")

    transformer_inputs = []
    if definition.transformer is not None:
        transformer_inputs = transformer_dependencies(definition.transformer, registry.sources, source_id)

    context = TransformerContext(
        source_id=source_id,
        processed=processed,
        references=references,
        percentiles=bands,
        primary_percentile=primary_percentile,
        years=years,
        raw_value=raw_value,
        definitions=registry.sources,
    )
    series = transform(
        raw_value,
        definition.has_percentiles,
        bands,
        references,
        years=years,
        transformer=definition.transformer,
        context=context,
        primary_percentile=primary_percentile,
        band_fallbacks=band_fallbacks,
        source_id=source_id,
    )
    if definition.transformer is not None:
        recorder.record(
            f"transform:{definition.transformer.name}",
            f"Applied transformer '{definition.transformer.name}'",
            dependencies=transformer_inputs,
            series=series,
        )
    else:
        recorder.record('expand', f"Expanded raw value across {len(bands)} bands", series=series)

    cumulative: Dict[int, float] = {}
    for multiplier in definition.multipliers:
        operand = _resolve_operand(
            multiplier, processed, references, bands, series, primary_percentile, source_id
        )
        series, applied = apply_multiplier(
            series, multiplier, operand,
            audit_percentile=primary_percentile,
            cumulative=cumulative,
            source_id=source_id,
        )
        audit_band = next(band for band in series if band.percentile == primary_percentile)
        cumulative = cumulative_by_year(audit_band, applied)
        recorder.record_multiplier(applied, series)

    return ProcessedSource(
        id=source_id,
        percentile_source=tuple(series),
        metadata=definition.metadata,
        has_percentiles=definition.has_percentiles,
        audit=recorder.finish(),
    )


def build_cube(
    registry: Union[SourceRegistry, Mapping[str, Any], str, None],
    scenario: Mapping[str, Any],
    percentiles: Sequence[int],
    primary_percentile: Optional[int] = None,
    years: Optional[Sequence[int]] = None,
    custom_percentiles: Optional[Mapping[str, int]] = None,
    default_years: Optional[Sequence[int]] = None
) -> Cube:
    """
    Run a full resolution pass of a registry against a scenario.

    Args:
        registry: SourceRegistry, registry mapping, or YAML path
        scenario: Scenario document (deep-copied, never mutated)
        percentiles: Available percentiles
        primary_percentile: Primary band (default 50 when available)
        years: Year axis for scalar expansion (default 1..projectLife)
        custom_percentiles: Source id -> percentile for the custom band;
            when given (even empty) the cube carries an extra CUSTOM_PERCENTILE band
        default_years: Year axis used only when neither years nor projectLife is given

    Returns:
        Immutable Cube; per-source failures are listed in cube.errors

    Raises:
        SchemaViolation: If the registry is malformed
        ValueError: If percentiles or custom percentiles are invalid
    """
    started = time.perf_counter()
    registry = load_registry(registry)
    percentiles, primary_percentile = validate_percentiles(percentiles, primary_percentile)

    if custom_percentiles is not None:
        custom_percentiles = dict(custom_percentiles)
        for source_id, percentile in custom_percentiles.items():
            if source_id not in registry:
                raise ValueError(f"Custom percentile for unknown source '{source_id}'")
            if percentile not in percentiles:
                raise ValueError(f"Custom percentile {percentile} for '{source_id}' not in {list(percentiles)}")
        bands = percentiles + (CUSTOM_PERCENTILE,)
    else:
        bands = percentiles

    document = copy.deepcopy(dict(scenario))
    global_references = resolve_references(registry.references, document)
    year_axis = _year_axis(years, global_references, default_years)

    order, failures = resolution_order(registry)
    errors: Dict[str, str] = {}
    failed: Set[str] = set()
    for source_id, error in failures.items():
        logger.warning(f"Source {source_id} unresolved: {error}")
        errors[source_id] = str(error)
        failed.add(source_id)

    processed: Dict[str, ProcessedSource] = {}
    for source_id in order:
        if source_id in failed:
            continue
        definition = registry.get(source_id)
        blocked = [dep for dep in declared_dependencies(definition, registry) if dep in failed]
        if blocked:
            error = UnresolvedDependency(f"Depends on failed sources: {blocked}", source_id)
            logger.warning(str(error))
            errors[source_id] = str(error)
            failed.add(source_id)
            continue

        try:
            processed[source_id] = process_source(
                definition,
                document,
                global_references,
                processed,
                registry,
                bands,
                primary_percentile,
                years=year_axis,
                custom_percentiles=custom_percentiles,
            )
            logger.debug(f"Processed source {source_id}")
        except CubeError as e:
            logger.warning(f"Source {source_id} failed: {e}")
            errors[source_id] = str(e)
            failed.add(source_id)
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            error = OperatorError(f"Malformed scenario data: {e}", source_id)
            logger.warning(f"Source {source_id} failed: {error}")
            errors[source_id] = str(error)
            failed.add(source_id)

    elapsed = time.perf_counter() - started
    logger.info(
        f"Built cube: {len(processed)} sources, {len(errors)} errors, "
        f"percentiles {list(percentiles)} in {elapsed:.3f}s"
    )

    return Cube(
        sources=processed,
        registry=registry,
        scenario=document,
        percentiles=percentiles,
        primary_percentile=primary_percentile,
        years=year_axis,
        custom_percentiles=custom_percentiles,
        errors=errors,
        references={key: global_references[key] for key in global_references if key not in global_references.errors},
    )


def rebuild_with_custom_percentiles(cube: Cube, custom_percentiles: Mapping[str, int]) -> Cube:
    """Build a variant of a cube whose custom band uses the given per-source percentiles."""
    return build_cube(
        cube.registry,
        cube.scenario,
        cube.percentiles,
        primary_percentile=cube.primary_percentile,
        years=cube.years,
        custom_percentiles=custom_percentiles,
    )
