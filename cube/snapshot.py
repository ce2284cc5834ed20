"""
Snapshot slot holding the current cube for one scenario.
Builds run outside the lock; only the newest build may replace the snapshot.
"""

import logging
import threading
from typing import Any, Callable, Optional

from cube.store import Cube

logger = logging.getLogger(__name__)


class CubeSlot:
    """
    Holder of the latest completed cube.

    Each rebuild takes a generation number when it starts. A finished build is
    published only if no newer build started meanwhile; otherwise it is dropped.
    Readers get whichever immutable snapshot is current at call time.
    """

    def __init__(self, builder: Callable[..., Cube], name: str = "default"):
        self._builder = builder
        self._name = name
        self._lock = threading.Lock()
        self._generation = 0
        self._current: Optional[Cube] = None

    @property
    def current(self) -> Optional[Cube]:
        return self._current

    @property
    def generation(self) -> int:
        return self._generation

    def rebuild(self, *args: Any, **kwargs: Any) -> Optional[Cube]:
        """
        Build a new cube and publish it if still the latest request.

        Args:
            *args: Passed to the builder
            **kwargs: Passed to the builder

        Returns:
            The published cube, or None when superseded by a newer build
        """
        with self._lock:
            self._generation += 1
            generation = self._generation

        cube = self._builder(*args, **kwargs)

        with self._lock:
            if generation != self._generation:
                logger.warning(
                    f"Discarding superseded build {generation} of slot {self._name} "
                    f"(latest {self._generation})"
                )
                return None
            self._current = cube

        logger.info(f"Published cube generation {generation} for slot {self._name}")
        return cube
