"""
Tests for multiplier operators - per-band, per-year application with audit records.
"""

import pytest

from cube.errors import OperatorError
from cube.multipliers import (
    MultiplierDefinition,
    MultiplierFilter,
    MultiplierOperation,
    apply_multiplier,
)
from cube.series import broadcast_scalar


def constant_operand(value, percentiles, years):
    return {p: {year: value for year in years} for p in percentiles}


def assert_values(series, expected, tolerance=1e-9):
    assert len(series.values) == len(expected)
    for actual, wanted in zip(series.values, expected):
        assert abs(actual - wanted) < tolerance


class TestMultiplierOperations:
    """Tests for the four multiplier operations."""

    def setup_method(self):
        self.years = [1, 2, 3]
        self.series = broadcast_scalar(100.0, [50], self.years)

    def test_compound_growth(self):
        """Compound escalation from base year 1."""
        multiplier = MultiplierDefinition(id='rate', operation=MultiplierOperation.COMPOUND, base_year=1)
        result, _ = apply_multiplier(self.series, multiplier, constant_operand(0.05, [50], self.years))

        assert_values(result[0], [100.0, 105.0, 110.25])

    def test_simple_growth(self):
        """Linear, non-compounding growth."""
        multiplier = MultiplierDefinition(id='rate', operation=MultiplierOperation.SIMPLE, base_year=1)
        result, _ = apply_multiplier(self.series, multiplier, constant_operand(0.05, [50], self.years))

        assert_values(result[0], [100.0, 105.0, 110.0])

    def test_multiply_by_scalar_operand(self):
        multiplier = MultiplierDefinition(id='factor', operation=MultiplierOperation.MULTIPLY)
        result, _ = apply_multiplier(self.series, multiplier, constant_operand(1.5, [50], self.years))

        assert_values(result[0], [150.0, 150.0, 150.0])

    def test_summation_adds_operand(self):
        multiplier = MultiplierDefinition(id='extra', operation=MultiplierOperation.SUMMATION)
        operand = {50: {1: 1.0, 2: 2.0, 3: 3.0}}
        result, _ = apply_multiplier(self.series, multiplier, operand)

        assert_values(result[0], [101.0, 102.0, 103.0])

    def test_identity_before_base_year(self):
        """Years before the base year are left unchanged."""
        multiplier = MultiplierDefinition(id='rate', operation=MultiplierOperation.COMPOUND, base_year=2)
        result, _ = apply_multiplier(self.series, multiplier, constant_operand(0.1, [50], self.years))

        assert_values(result[0], [100.0, 100.0, 110.0])

    def test_simple_identity_before_base_year(self):
        multiplier = MultiplierDefinition(id='rate', operation=MultiplierOperation.SIMPLE, base_year=3)
        result, _ = apply_multiplier(self.series, multiplier, constant_operand(0.1, [50], self.years))

        assert_values(result[0], [100.0, 100.0, 100.0])


class TestMultiplierApplication:
    """Tests for filters, missing operand years and per-band operands."""

    def test_year_filter_passes_points_through(self):
        series = broadcast_scalar(100.0, [50], [1, 2, 3])
        multiplier = MultiplierDefinition(
            id='factor',
            operation=MultiplierOperation.MULTIPLY,
            filter=MultiplierFilter(min_year=2),
        )
        result, applied = apply_multiplier(series, multiplier, constant_operand(2.0, [50], [1, 2, 3]))

        assert_values(result[0], [100.0, 200.0, 200.0])
        assert applied.years == (2, 3)

    def test_missing_operand_year_leaves_point_unchanged(self):
        series = broadcast_scalar(100.0, [50], [1, 2, 3])
        multiplier = MultiplierDefinition(id='factor', operation=MultiplierOperation.MULTIPLY)
        result, applied = apply_multiplier(series, multiplier, {50: {1: 2.0, 3: 2.0}})

        assert_values(result[0], [200.0, 100.0, 200.0])
        assert applied.values == (2.0, 2.0)

    def test_operand_band_applies_to_matching_band(self):
        """Each band is multiplied by the operand's own band."""
        series = broadcast_scalar(100.0, [10, 90], [1, 2])
        multiplier = MultiplierDefinition(id='rate', operation=MultiplierOperation.COMPOUND)
        operand = {10: {1: 0.01, 2: 0.01}, 90: {1: 0.03, 2: 0.03}}

        result, _ = apply_multiplier(series, multiplier, operand)

        assert_values(result[0], [100.0, 101.0])
        assert_values(result[1], [100.0, 103.0])

    def test_missing_operand_band_raises(self):
        series = broadcast_scalar(100.0, [10, 90], [1])
        multiplier = MultiplierDefinition(id='rate', operation=MultiplierOperation.MULTIPLY)

        with pytest.raises(OperatorError, match="no percentile 90"):
            apply_multiplier(series, multiplier, {10: {1: 1.0}}, source_id='revenue')

    def test_audit_records_operand_and_cumulative(self):
        series = broadcast_scalar(100.0, [10, 50], [1, 2, 3])
        compound = MultiplierDefinition(id='rate', operation=MultiplierOperation.COMPOUND)
        double = MultiplierDefinition(id='factor', operation=MultiplierOperation.MULTIPLY)

        series, first = apply_multiplier(
            series, compound, constant_operand(0.05, [10, 50], [1, 2, 3]), audit_percentile=50
        )
        cumulative = dict(zip([1, 2, 3], first.cumulative))
        series, second = apply_multiplier(
            series, double, constant_operand(2.0, [10, 50], [1, 2, 3]),
            audit_percentile=50, cumulative=cumulative
        )

        assert first.id == 'rate'
        assert first.operation == MultiplierOperation.COMPOUND
        assert first.values == (0.05, 0.05, 0.05)
        assert abs(first.cumulative[2] - 1.1025) < 1e-12
        assert abs(second.cumulative[0] - 2.0) < 1e-12
        assert abs(second.cumulative[2] - 2.205) < 1e-12


class TestMultiplierDefinition:
    """Tests for parsing multiplier configuration."""

    def test_from_config_defaults(self):
        multiplier = MultiplierDefinition.from_config({'id': 'escalationRate', 'operation': 'compound'})

        assert multiplier.operation == MultiplierOperation.COMPOUND
        assert multiplier.base_year == 1
        assert multiplier.filter is None

    def test_from_config_with_filter(self):
        multiplier = MultiplierDefinition.from_config({
            'id': 'factor', 'operation': 'multiply', 'base_year': 2,
            'filter': {'min_year': 3, 'max_year': 10},
        })

        assert multiplier.base_year == 2
        assert multiplier.filter.applies(3)
        assert not multiplier.filter.applies(11)

    def test_unknown_operation_rejected(self):
        with pytest.raises(ValueError, match="Unknown multiplier operation"):
            MultiplierDefinition.from_config({'id': 'x', 'operation': 'divide'})

    def test_missing_id_rejected(self):
        with pytest.raises(ValueError, match="missing 'id'"):
            MultiplierDefinition.from_config({'operation': 'multiply'})
