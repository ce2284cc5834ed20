"""
Reference resolver - named lookups into the scenario document.
Global references are visible to every source; local references shadow them by id.
"""

import logging
from dataclasses import dataclass
from typing import Dict, Any, Iterable, Iterator, Mapping, Optional, Tuple, Union

from cube.errors import ReferenceNotFound

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Reference:
    """Named pointer into the scenario document."""
    id: str
    path: Tuple[Union[str, int], ...]

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> 'Reference':
        path = config.get('path')
        if isinstance(path, str):
            path = path.split('.')
        if not config.get('id') or not path:
            raise ValueError(f"Reference requires 'id' and 'path': {dict(config)}")
        return cls(id=str(config['id']), path=tuple(path))


def resolve_reference(reference: Reference, document: Any, source_id: Optional[str] = None) -> Any:
    """
    Walk a reference path through the scenario document.

    Mapping keys are matched as-is; list segments accept integer indices
    (given as int or digit string).

    Args:
        reference: Reference to resolve
        document: Scenario document root
        source_id: Source requesting the value, for error reporting

    Returns:
        Value stored at the reference path

    Raises:
        ReferenceNotFound: If any path segment is missing or the value is None
    """
    current = document
    for segment in reference.path:
        if isinstance(current, Mapping):
            if segment not in current:
                raise ReferenceNotFound(reference.id, list(reference.path), source_id)
            current = current[segment]
        elif isinstance(current, (list, tuple)):
            try:
                current = current[int(segment)]
            except (ValueError, IndexError):
                raise ReferenceNotFound(reference.id, list(reference.path), source_id)
        else:
            raise ReferenceNotFound(reference.id, list(reference.path), source_id)

    if current is None:
        raise ReferenceNotFound(reference.id, list(reference.path), source_id)

    return current


class ReferenceTable(Mapping):
    """
    Read-only merged reference scope.

    Failed lookups are kept as errors and only raised when a consumer reads
    that id, so one unresolvable global does not break unrelated sources.
    """

    def __init__(self, values: Dict[str, Any], errors: Optional[Dict[str, ReferenceNotFound]] = None):
        self._values = dict(values)
        self._errors = dict(errors or {})

    def __getitem__(self, key: str) -> Any:
        if key in self._values:
            return self._values[key]
        if key in self._errors:
            raise self._errors[key]
        raise KeyError(key)

    def __contains__(self, key: object) -> bool:
        return key in self._values or key in self._errors

    def __iter__(self) -> Iterator[str]:
        yield from self._values
        yield from (k for k in self._errors if k not in self._values)

    def __len__(self) -> int:
        return len(set(self._values) | set(self._errors))

    @property
    def errors(self) -> Dict[str, ReferenceNotFound]:
        return dict(self._errors)

    def get_value(self, key: str, source_id: Optional[str] = None) -> Any:
        """Return a resolved value, raising ReferenceNotFound attributed to source_id."""
        if key in self._values:
            return self._values[key]
        if key in self._errors:
            error = self._errors[key]
            raise ReferenceNotFound(error.reference_id, error.path, source_id)
        raise ReferenceNotFound(key, [], source_id)


def resolve_references(
    references: Iterable[Reference],
    document: Any,
    source_id: Optional[str] = None
) -> ReferenceTable:
    """
    Resolve a list of references, recording failures instead of raising.

    Args:
        references: References to resolve
        document: Scenario document root
        source_id: Owning source (None for global scope)

    Returns:
        ReferenceTable with values and deferred errors
    """
    values: Dict[str, Any] = {}
    errors: Dict[str, ReferenceNotFound] = {}

    for reference in references:
        try:
            values[reference.id] = resolve_reference(reference, document, source_id)
        except ReferenceNotFound as e:
            scope = f"source {source_id}" if source_id else "global scope"
            logger.warning(f"Reference '{reference.id}' unresolved in {scope}: {e}")
            errors[reference.id] = e

    return ReferenceTable(values, errors)


def merge_reference_tables(global_table: ReferenceTable, local_table: ReferenceTable) -> ReferenceTable:
    """Merge global and local scopes; local entries (values or errors) shadow globals."""
    values = {k: v for k, v in global_table._values.items() if k not in local_table}
    errors = {k: v for k, v in global_table._errors.items() if k not in local_table}
    values.update(local_table._values)
    errors.update(local_table._errors)
    return ReferenceTable(values, errors)


def resolve_numeric_option(
    option: Any,
    references: Mapping[str, Any],
    source_id: Optional[str] = None,
    default: Optional[float] = None
) -> float:
    """
    Resolve a numeric option given as a number or as {reference, scale}.

    Args:
        option: Number, reference id string, or mapping with 'reference' and optional 'scale'
        references: Reference table to read from
        source_id: Requesting source or metric, for error reporting
        default: Value used when option is None or the reference is absent

    Returns:
        Float value of the option

    Raises:
        ReferenceNotFound: If the reference is missing and no default is given
        ValueError: If the option or referenced value is not numeric
    """
    if option is None:
        if default is None:
            raise ValueError("Numeric option is missing")
        return float(default)

    if isinstance(option, bool):
        raise ValueError(f"Numeric option must be a number, got {option!r}")
    if isinstance(option, (int, float)):
        return float(option)

    if isinstance(option, str):
        option = {'reference': option}
    if not isinstance(option, Mapping) or 'reference' not in option:
        raise ValueError(f"Numeric option must be a number or {{reference, scale}}: {option!r}")

    reference_id = option['reference']
    if isinstance(references, ReferenceTable):
        if reference_id not in references and default is not None:
            return float(default)
        value = references.get_value(reference_id, source_id)
    elif reference_id in references:
        value = references[reference_id]
    elif default is not None:
        return float(default)
    else:
        raise ReferenceNotFound(reference_id, [], source_id)

    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"Reference '{reference_id}' is not numeric: {value!r}")
    return float(value) * float(option.get('scale', 1.0))
