"""
Error types raised while loading a source registry and building a cube.
Every error carries the id of the source it originated from, when known.
"""

from typing import Optional


class CubeError(Exception):
    """Base class for cube build errors."""

    def __init__(self, message: str, source_id: Optional[str] = None):
        self.source_id = source_id
        if source_id:
            message = f"[{source_id}] {message}"
        super().__init__(message)


class SchemaViolation(CubeError):
    """Raised when a source definition is malformed. Aborts the build before any scenario work."""
    pass


class ReferenceNotFound(CubeError):
    """Raised when a reference path does not resolve inside the scenario document."""

    def __init__(self, reference_id: str, path, source_id: Optional[str] = None):
        self.reference_id = reference_id
        self.path = path
        super().__init__(f"Reference '{reference_id}' not found at path {path}", source_id)


class UnresolvedDependency(CubeError):
    """Raised when a source depends on a source that is unknown, failed, or part of a cycle."""
    pass


class OperatorError(CubeError):
    """Raised when a transformer or multiplier cannot be applied to its input."""
    pass
