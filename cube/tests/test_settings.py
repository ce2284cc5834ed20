"""
Tests for environment-driven settings.
"""

import pytest

from cube.settings import CubeSettings, load_settings

ENV_VARS = (
    'CUBE_PERCENTILES',
    'CUBE_PRIMARY_PERCENTILE',
    'CUBE_SOURCE_REGISTRY',
    'CUBE_METRICS_REGISTRY',
    'CUBE_PROJECT_LIFE',
    'LOG_LEVEL',
)


@pytest.fixture
def clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


class TestCubeSettings:
    """Tests for settings validation."""

    def test_defaults(self):
        settings = CubeSettings()

        assert settings.percentiles == [10, 25, 50, 75, 90]
        assert settings.primary_percentile == 50
        assert settings.source_registry.name == 'cashflow_sources.yml'
        assert settings.metrics_registry.name == 'metrics.yml'
        assert settings.years is None

    def test_primary_must_be_listed(self):
        with pytest.raises(ValueError, match="not in percentiles"):
            CubeSettings(percentiles=[10, 90], primary_percentile=50)

    def test_percentile_range(self):
        with pytest.raises(ValueError, match="between 0 and 100"):
            CubeSettings(percentiles=[50, 101])

    def test_zeroth_percentile_allowed(self):
        settings = CubeSettings(percentiles=[0, 50, 100])

        assert settings.percentiles == [0, 50, 100]

    def test_empty_percentiles(self):
        with pytest.raises(ValueError, match="cannot be empty"):
            CubeSettings(percentiles=[])

    def test_invalid_log_level(self):
        with pytest.raises(ValueError, match="Invalid log level"):
            CubeSettings(log_level='LOUD')

    def test_years_from_project_life(self):
        assert CubeSettings(project_life=3).years == [1, 2, 3]


class TestLoadSettings:
    def test_environment_defaults(self, clean_env):
        settings = load_settings()

        assert settings.percentiles == [10, 25, 50, 75, 90]
        assert settings.project_life is None
        assert settings.log_level == 'INFO'

    def test_environment_overrides(self, clean_env, tmp_path):
        clean_env.setenv('CUBE_PERCENTILES', '5, 50, 95')
        clean_env.setenv('CUBE_PRIMARY_PERCENTILE', '50')
        clean_env.setenv('CUBE_PROJECT_LIFE', '25')
        clean_env.setenv('CUBE_SOURCE_REGISTRY', str(tmp_path / 'sources.yml'))

        settings = load_settings()

        assert settings.percentiles == [5, 50, 95]
        assert settings.project_life == 25
        assert settings.source_registry == tmp_path / 'sources.yml'

    def test_malformed_percentiles(self, clean_env):
        clean_env.setenv('CUBE_PERCENTILES', '10,fifty')

        with pytest.raises(ValueError, match="comma separated integers"):
            load_settings()
