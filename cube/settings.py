"""
Runtime settings read from the environment (.env supported) and logging setup.
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv

load_dotenv()

PACKAGE_ROOT = Path(__file__).parent.parent


def _parse_percentiles(raw: str) -> List[int]:
    try:
        return [int(part) for part in raw.split(',') if part.strip()]
    except ValueError:
        raise ValueError(f"CUBE_PERCENTILES must be comma separated integers, got '{raw}'")


@dataclass
class CubeSettings:
    """Defaults for cube builds, metric registry and logging."""
    percentiles: List[int] = field(default_factory=lambda: [10, 25, 50, 75, 90])
    primary_percentile: int = 50
    source_registry: Path = PACKAGE_ROOT / 'cube' / 'config' / 'cashflow_sources.yml'
    metrics_registry: Path = PACKAGE_ROOT / 'metrics' / 'config' / 'metrics.yml'
    project_life: Optional[int] = None
    log_level: str = "INFO"

    def __post_init__(self):
        """Validate settings after initialization."""
        if not self.percentiles:
            raise ValueError("percentiles cannot be empty")
        for p in self.percentiles:
            if not 0 <= p <= 100:
                raise ValueError(f"percentile must be between 0 and 100, got {p}")
        if self.primary_percentile not in self.percentiles:
            raise ValueError(f"primary_percentile {self.primary_percentile} not in percentiles")
        if self.project_life is not None and self.project_life <= 0:
            raise ValueError("project_life must be positive")
        if self.log_level.upper() not in ('DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'):
            raise ValueError(f"Invalid log level: {self.log_level}")

        self.source_registry = Path(self.source_registry)
        self.metrics_registry = Path(self.metrics_registry)

    @property
    def years(self) -> Optional[List[int]]:
        if self.project_life is None:
            return None
        return list(range(1, self.project_life + 1))


def load_settings() -> CubeSettings:
    """
    Build settings from environment variables.

    Environment:
        CUBE_PERCENTILES: Comma separated percentiles (default 10,25,50,75,90)
        CUBE_PRIMARY_PERCENTILE: Primary band (default 50)
        CUBE_SOURCE_REGISTRY: Source registry YAML path
        CUBE_METRICS_REGISTRY: Metric registry YAML path
        CUBE_PROJECT_LIFE: Year axis fallback when the scenario has no project life
        LOG_LEVEL: Logging level (default INFO)

    Returns:
        Validated CubeSettings
    """
    defaults = CubeSettings()
    project_life = os.getenv('CUBE_PROJECT_LIFE')

    return CubeSettings(
        percentiles=_parse_percentiles(os.getenv('CUBE_PERCENTILES', '10,25,50,75,90')),
        primary_percentile=int(os.getenv('CUBE_PRIMARY_PERCENTILE', '50')),
        source_registry=Path(os.getenv('CUBE_SOURCE_REGISTRY', str(defaults.source_registry))),
        metrics_registry=Path(os.getenv('CUBE_METRICS_REGISTRY', str(defaults.metrics_registry))),
        project_life=int(project_life) if project_life else None,
        log_level=os.getenv('LOG_LEVEL', 'INFO'),
    )


def configure_logging(level: Optional[str] = None):
    """Configure root logging for command line use."""
    level = (level or os.getenv('LOG_LEVEL', 'INFO')).upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
