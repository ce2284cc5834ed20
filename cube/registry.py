"""
Source registry - declarative list of cashflow sources.
Loaded from YAML (or a mapping) and validated before any scenario is touched.
"""

import logging
import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, Any, Optional, List, Mapping, Tuple, Union

import yaml

from cube.errors import SchemaViolation
from cube.multipliers import MultiplierDefinition
from cube.references import Reference
from cube.transformers import TransformerSpec, get_transformer, transformer_dependencies

logger = logging.getLogger(__name__)

DEFAULT_REGISTRY_PATH = Path(__file__).parent / 'config' / 'cashflow_sources.yml'


class SourceType(str, Enum):
    """Resolution stage of a source; also the default ordering tie-break."""
    DIRECT = "direct"
    INDIRECT = "indirect"
    VIRTUAL = "virtual"


STAGE_ORDER = {SourceType.DIRECT: 0, SourceType.INDIRECT: 1, SourceType.VIRTUAL: 2}


@dataclass(frozen=True)
class SourceMetadata:
    name: str
    cashflow_group: Optional[str] = None
    category: Optional[str] = None
    description: str = ""
    formatter: Optional[str] = None


@dataclass(frozen=True)
class SourceDefinition:
    """
    One registry entry.

    direct sources read a path; indirect sources read a path and apply at
    least one multiplier; virtual sources are pure transformer output.
    """
    id: str
    type: SourceType
    priority: int
    metadata: SourceMetadata
    path: Optional[Tuple[Union[str, int], ...]] = None
    has_percentiles: bool = False
    references: Tuple[Reference, ...] = ()
    transformer: Optional[TransformerSpec] = None
    multipliers: Tuple[MultiplierDefinition, ...] = ()

    @property
    def stage(self) -> int:
        return STAGE_ORDER[self.type]


@dataclass(frozen=True)
class SourceRegistry:
    """Validated registry passed explicitly into every cube build."""
    sources: Tuple[SourceDefinition, ...]
    references: Tuple[Reference, ...] = ()
    _index: Dict[str, SourceDefinition] = field(default_factory=dict, compare=False, repr=False)

    def __post_init__(self):
        self._index.update({source.id: source for source in self.sources})

    def __iter__(self):
        return iter(self.sources)

    def __len__(self) -> int:
        return len(self.sources)

    def __contains__(self, source_id: object) -> bool:
        return source_id in self._index

    def get(self, source_id: str) -> Optional[SourceDefinition]:
        return self._index.get(source_id)

    @property
    def ids(self) -> List[str]:
        return [source.id for source in self.sources]

    def percentile_sources(self) -> List[str]:
        """Ids of sources that vary by percentile, in registry order."""
        return [source.id for source in self.sources if source.has_percentiles]


def _parse_path(path: Any) -> Optional[Tuple[Union[str, int], ...]]:
    if path is None or path == '' or path == []:
        return None
    if isinstance(path, str):
        return tuple(path.split('.'))
    return tuple(path)


def _parse_metadata(source_id: str, config: Mapping[str, Any]) -> SourceMetadata:
    metadata = config.get('metadata') or {}
    return SourceMetadata(
        name=metadata.get('name', source_id),
        cashflow_group=metadata.get('cashflow_group'),
        category=metadata.get('category'),
        description=metadata.get('description', ''),
        formatter=metadata.get('formatter'),
    )


def parse_source(config: Mapping[str, Any]) -> SourceDefinition:
    """
    Parse and validate one source definition.

    Args:
        config: Source configuration mapping

    Returns:
        SourceDefinition

    Raises:
        SchemaViolation: If the definition breaks a declaration rule
    """
    source_id = config.get('id')
    if not source_id:
        raise SchemaViolation(f"Source definition missing 'id': {dict(config)}")
    source_id = str(source_id)

    try:
        source_type = SourceType(config.get('type'))
    except ValueError:
        raise SchemaViolation(f"Invalid source type '{config.get('type')}'", source_id)

    try:
        priority = int(config.get('priority', 0))
        references = tuple(Reference.from_config(ref) for ref in config.get('references') or [])
        multipliers = tuple(MultiplierDefinition.from_config(m) for m in config.get('multipliers') or [])
        transformer = None
        if config.get('transformer'):
            transformer = TransformerSpec.from_config(config['transformer'])
    except (TypeError, ValueError) as e:
        raise SchemaViolation(str(e), source_id)

    path = _parse_path(config.get('path'))

    if source_type == SourceType.DIRECT:
        if path is None:
            raise SchemaViolation("Direct source requires a path", source_id)
        if multipliers:
            raise SchemaViolation("Direct source cannot declare multipliers", source_id)
    elif source_type == SourceType.INDIRECT:
        if path is None:
            raise SchemaViolation("Indirect source requires a path", source_id)
        if not multipliers:
            raise SchemaViolation("Indirect source requires at least one multiplier", source_id)
    elif source_type == SourceType.VIRTUAL:
        if path is not None:
            raise SchemaViolation("Virtual source cannot declare a path", source_id)
        if transformer is None:
            raise SchemaViolation("Virtual source requires a transformer", source_id)

    if transformer is not None:
        try:
            get_transformer(transformer.name)
        except KeyError:
            raise SchemaViolation(f"Unknown transformer '{transformer.name}'", source_id)

    for multiplier in multipliers:
        if multiplier.id == source_id:
            raise SchemaViolation("Source cannot multiply by itself", source_id)

    return SourceDefinition(
        id=source_id,
        type=source_type,
        priority=priority,
        metadata=_parse_metadata(source_id, config),
        path=path,
        has_percentiles=bool(config.get('has_percentiles', False)),
        references=references,
        transformer=transformer,
        multipliers=multipliers,
    )


def parse_registry(config: Mapping[str, Any]) -> SourceRegistry:
    """
    Build a SourceRegistry from a configuration mapping.

    Args:
        config: Mapping with 'sources' and optional global 'references'

    Returns:
        Validated SourceRegistry

    Raises:
        SchemaViolation: If any source or reference is malformed
    """
    if not isinstance(config, Mapping) or not isinstance(config.get('sources'), list):
        raise SchemaViolation("Registry config must contain a 'sources' list")

    try:
        references = tuple(Reference.from_config(ref) for ref in config.get('references') or [])
    except (TypeError, ValueError) as e:
        raise SchemaViolation(f"Invalid global reference: {e}")

    reference_ids = [ref.id for ref in references]
    duplicates = {ref_id for ref_id in reference_ids if reference_ids.count(ref_id) > 1}
    if duplicates:
        raise SchemaViolation(f"Duplicate global reference ids: {sorted(duplicates)}")

    sources: List[SourceDefinition] = []
    seen = set()
    for source_config in config['sources']:
        source = parse_source(source_config)
        if source.id in seen:
            raise SchemaViolation("Duplicate source id", source.id)
        seen.add(source.id)
        sources.append(source)

    for source in sources:
        if source.transformer is None:
            continue
        try:
            transformer_dependencies(source.transformer, sources, source.id)
        except (KeyError, TypeError) as e:
            raise SchemaViolation(f"Transformer '{source.transformer.name}' missing parameter {e}", source.id)

    logger.debug(f"Parsed registry with {len(sources)} sources and {len(references)} global references")
    return SourceRegistry(sources=tuple(sources), references=references)


def load_registry(source: Union[str, Path, Mapping[str, Any], SourceRegistry, None] = None) -> SourceRegistry:
    """
    Load a source registry from a YAML file, a mapping, or the packaged default.

    Args:
        source: Path to YAML file, parsed mapping, existing registry, or None
            (CUBE_SOURCE_REGISTRY or the packaged registry)

    Returns:
        Validated SourceRegistry

    Raises:
        SchemaViolation: If the file is missing, unreadable or invalid
    """
    if isinstance(source, SourceRegistry):
        return source
    if isinstance(source, Mapping):
        return parse_registry(source)

    if source is None:
        source = os.getenv('CUBE_SOURCE_REGISTRY') or DEFAULT_REGISTRY_PATH

    registry_file = Path(source)
    if not registry_file.exists():
        raise SchemaViolation(f"Source registry file not found: {registry_file}")

    try:
        with open(registry_file, 'r', encoding='utf-8') as f:
            config = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise SchemaViolation(f"Failed to parse source registry {registry_file}: {e}")

    registry = parse_registry(config or {})
    logger.info(f"Loaded {len(registry)} sources from {registry_file}")
    return registry
