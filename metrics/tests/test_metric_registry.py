"""
Tests for metric registry parsing.
"""

import pytest
import yaml

from metrics.registry import (
    CombineOperation,
    MetricRegistryError,
    load_metric_registry,
    parse_metric,
    parse_metric_registry,
)


class TestParseMetric:
    def test_aggregation_metric(self):
        metric = parse_metric('npv', {
            'name': 'Project NPV',
            'formatter': 'currency',
            'aggregation': {'method': 'npv', 'source': 'projectCashflow', 'options': {'discount_rate': 0.08}},
        })

        assert metric.name == 'Project NPV'
        assert metric.aggregation.source == 'projectCashflow'
        assert metric.aggregation.options['discount_rate'] == 0.08
        assert metric.calculation_method == 'npv'

    def test_combine_metric(self):
        metric = parse_metric('llcr', {'combine': {'operation': 'ratio', 'operands': ['a', 'b']}})

        assert metric.combine.operation == CombineOperation.RATIO
        assert metric.combine.operands == ('a', 'b')
        assert metric.calculation_method == 'combine:ratio'
        assert metric.name == 'llcr'

    def test_requires_exactly_one_kind(self):
        with pytest.raises(MetricRegistryError, match="exactly one"):
            parse_metric('x', {})
        with pytest.raises(MetricRegistryError, match="exactly one"):
            parse_metric('x', {
                'aggregation': {'method': 'sum', 'source': 's'},
                'combine': {'operation': 'sum', 'operands': ['a']},
            })

    def test_unknown_method(self):
        with pytest.raises(MetricRegistryError, match="unknown aggregation method"):
            parse_metric('x', {'aggregation': {'method': 'median', 'source': 's'}})

    def test_missing_source(self):
        with pytest.raises(MetricRegistryError, match="requires a source"):
            parse_metric('x', {'aggregation': {'method': 'sum'}})

    def test_npv_requires_discount_rate(self):
        with pytest.raises(MetricRegistryError, match="discount_rate"):
            parse_metric('x', {'aggregation': {'method': 'npv', 'source': 's'}})

    def test_weighted_mean_requires_weights(self):
        with pytest.raises(MetricRegistryError, match="weights_source"):
            parse_metric('x', {'aggregation': {'method': 'weighted_mean', 'source': 's'}})

    def test_year_window_must_be_mapping(self):
        with pytest.raises(MetricRegistryError, match="options.years must be a mapping"):
            parse_metric('x', {'aggregation': {'method': 'sum', 'source': 's', 'options': {'years': [1, 2]}}})
        with pytest.raises(MetricRegistryError, match="options must be a mapping"):
            parse_metric('x', {'aggregation': {'method': 'sum', 'source': 's', 'options': [1]}})

    def test_ratio_needs_two_operands(self):
        with pytest.raises(MetricRegistryError, match="exactly two operands"):
            parse_metric('x', {'combine': {'operation': 'ratio', 'operands': ['a', 'b', 'c']}})

    def test_unknown_combine_operation(self):
        with pytest.raises(MetricRegistryError, match="unknown combine operation"):
            parse_metric('x', {'combine': {'operation': 'power', 'operands': ['a', 'b']}})


class TestMetricRegistry:
    def test_unknown_combine_operand(self):
        config = {'metrics': {'x': {'combine': {'operation': 'sum', 'operands': ['ghost']}}}}

        with pytest.raises(MetricRegistryError, match="unknown metrics"):
            parse_metric_registry(config)

    def test_metrics_section_required(self):
        with pytest.raises(MetricRegistryError, match="'metrics' mapping"):
            parse_metric_registry({'metric': []})

    def test_packaged_registry(self, monkeypatch):
        monkeypatch.delenv('CUBE_METRICS_REGISTRY', raising=False)
        registry = load_metric_registry()

        for key in ('npv', 'irr', 'payback_period', 'min_dscr', 'llcr', 'lcoe'):
            assert key in registry
        assert registry.get('lcoe').dependencies == ('energyProduction',)

    def test_yaml_file(self, tmp_path):
        metrics_file = tmp_path / 'metrics.yml'
        metrics_file.write_text(yaml.safe_dump(
            {'metrics': {'total': {'aggregation': {'method': 'sum', 'source': 'revenue'}}}}
        ))

        registry = load_metric_registry(metrics_file)

        assert registry.keys == ['total']
        assert load_metric_registry(registry) is registry

    def test_missing_file(self, tmp_path):
        with pytest.raises(MetricRegistryError, match="not found"):
            load_metric_registry(tmp_path / 'absent.yml')
