"""
Tests for the transformer plugin table and built-in transformers.
"""

import pytest

from cube.errors import OperatorError
from cube.references import ReferenceTable
from cube.registry import SourceMetadata
from cube.series import make_series
from cube.store import ProcessedSource
from cube.transformers import (
    TransformerContext,
    TransformerSpec,
    annuity_payment,
    available_transformers,
    get_transformer,
    register_transformer,
    sum_series,
    summation,
    transform,
)

PERCENTILES = (10, 50, 90)


def processed(source_id, values_by_band, category=None, cashflow_group=None):
    return ProcessedSource(
        id=source_id,
        percentile_source=tuple(make_series(p, values) for p, values in values_by_band.items()),
        metadata=SourceMetadata(name=source_id, category=category, cashflow_group=cashflow_group),
    )


def context(raw_value=None, references=None, processed_sources=None, years=(1, 2, 3)):
    return TransformerContext(
        source_id='test',
        processed=processed_sources or {},
        references=ReferenceTable(references or {}),
        percentiles=PERCENTILES,
        primary_percentile=50,
        years=years,
        raw_value=raw_value,
    )


class TestSummation:
    """Tests for reducing cube entries by per-year sum."""

    def test_sum_of_two_entries(self):
        """A:[10,20] + B:[5,5] -> [15,25]."""
        a = processed('A', {50: {1: 10.0, 2: 20.0}})
        b = processed('B', {50: {1: 5.0, 2: 5.0}})

        result = summation([a, b], 50)

        assert result.values == [15.0, 25.0]
        assert result.percentile == 50

    def test_missing_years_count_as_zero(self):
        assert sum_series([{1: 1.0, 2: 2.0}, {2: 3.0, 3: 4.0}]) == {1: 1.0, 2: 5.0, 3: 4.0}

    def test_weighted_sum(self):
        assert sum_series([{1: 10.0}, {1: 4.0}], weights=[1.0, -1.0]) == {1: 6.0}

    def test_missing_band_raises(self):
        a = processed('A', {50: {1: 10.0}})
        with pytest.raises(OperatorError, match="no percentile 90"):
            summation([a], 90)


class TestTransformEntryPoint:
    """Tests for transform() expansion rules."""

    def test_scalar_broadcast_to_every_band(self):
        """Scalar sources carry the same series in every band."""
        series = transform(7.5, False, PERCENTILES, ReferenceTable({}), years=[1, 2, 3])

        assert len(series) == len(PERCENTILES)
        assert all(band.values == [7.5, 7.5, 7.5] for band in series)

    def test_non_percentile_source_uses_primary_band(self):
        raw = {'P10': 1.0, 'P50': 2.0, 'P90': 3.0}
        series = transform(raw, False, PERCENTILES, ReferenceTable({}), years=[1], primary_percentile=50)

        assert [band.values for band in series] == [[2.0], [2.0], [2.0]]

    def test_percentile_source_keeps_bands(self):
        raw = {'P10': 1.0, 'P50': 2.0, 'P90': 3.0}
        series = transform(raw, True, PERCENTILES, ReferenceTable({}), years=[1])

        assert [band.values for band in series] == [[1.0], [2.0], [3.0]]

    def test_transformer_output_is_normalized(self):
        spec = TransformerSpec(name='repair_events')
        raw = [{'year': 2, 'cost': 100.0, 'probability': 50}]
        series = transform(raw, False, PERCENTILES, ReferenceTable({}), years=[1, 2, 3], transformer=spec)

        assert all(band.values == [0.0, 50.0, 0.0] for band in series)

    def test_transformer_failure_becomes_operator_error(self):
        spec = TransformerSpec(name='repair_events')
        with pytest.raises(OperatorError, match="repair_events"):
            transform([{'year': 1}], False, PERCENTILES, ReferenceTable({}), years=[1], transformer=spec)

    def test_non_mapping_contract_becomes_operator_error(self):
        spec = TransformerSpec(name='annual_schedule', params={'turbines': 1})
        with pytest.raises(OperatorError, match="annual_schedule") as exc_info:
            transform([5], False, PERCENTILES, ReferenceTable({}), years=[1], transformer=spec, source_id='fees')

        assert exc_info.value.source_id == 'fees'


class TestBuiltinTransformers:
    """Tests for wind farm cashflow transformers."""

    def test_annual_schedule_per_turbine(self):
        contracts = [
            {'years': {'start': 1, 'end': 2}, 'fixed_fee': 100.0, 'per_turbine': True},
            {'years': [3], 'fixed_fee': 500.0},
        ]
        plugin = get_transformer('annual_schedule')
        series = plugin.func({}, context(contracts, references={'numWTGs': 10}))

        assert series[0].as_dict() == {1: 1000.0, 2: 1000.0, 3: 500.0}

    def test_annual_schedule_fee_series(self):
        contracts = [{'fee_series': [{'year': 1, 'value': 10.0}, {'year': 2, 'value': 12.0}]}]
        plugin = get_transformer('annual_schedule')
        series = plugin.func({}, context(contracts, years=None))

        assert series[0].as_dict() == {1: 10.0, 2: 12.0}

    def test_repair_events_weighted_by_probability(self):
        events = [
            {'year': 2, 'cost': 1000.0, 'probability': 40},
            {'year': 2, 'cost': 500.0, 'probability': 100},
        ]
        series = get_transformer('repair_events').func({}, context(events))

        assert series[1].as_dict() == {1: 0.0, 2: 900.0, 3: 0.0}

    def test_reserve_provision_capped_by_project_life(self):
        funds = [{'amount': 900.0}]
        series = get_transformer('reserve_provision').func(
            {'spread_years': 5}, context(funds, references={'projectLife': 3})
        )

        assert series[0].as_dict() == {1: 300.0, 2: 300.0, 3: 300.0}

    def test_drawdown_with_debt_ratio(self):
        items = [{'total_amount': 1000.0, 'drawdown_schedule': [{'year': -1, 'value': 40}, {'year': 0, 'value': 60}]}]
        series = get_transformer('drawdown').func(
            {'ratio': {'reference': 'debtRatio', 'scale': 0.01}},
            context(items, references={'debtRatio': 50})
        )

        assert abs(series[0].as_dict()[-1] - 200.0) < 1e-9
        assert abs(series[0].as_dict()[0] - 300.0) < 1e-9

    def test_drawdown_without_schedule_raises(self):
        with pytest.raises(OperatorError, match="no drawdown schedule"):
            get_transformer('drawdown').func({}, context([{'total_amount': 10.0}]))

    def test_debt_service_from_principal_source(self):
        debt = processed('debt', {p: {0: 1000.0} for p in PERCENTILES})
        series = get_transformer('debt_service').func(
            {'principal_source': 'debt', 'interest_rate': 0.0, 'term': 2},
            context(processed_sources={'debt': debt})
        )

        assert series[1].as_dict() == {1: 500.0, 2: 500.0, 3: 0.0}

    def test_cumulative(self):
        source = processed('cash', {p: {0: -10.0, 1: 4.0, 2: 8.0} for p in PERCENTILES})
        series = get_transformer('cumulative').func(
            {'source': 'cash'}, context(processed_sources={'cash': source})
        )

        assert series[0].values == [-10.0, -6.0, 2.0]

    def test_ratio_drops_zero_denominators(self):
        num = processed('num', {p: {1: 10.0, 2: 10.0} for p in PERCENTILES})
        den = processed('den', {p: {1: 5.0, 2: 0.0} for p in PERCENTILES})
        series = get_transformer('ratio').func(
            {'numerator': 'num', 'denominator': 'den'},
            context(processed_sources={'num': num, 'den': den})
        )

        assert series[2].as_dict() == {1: 2.0}


class TestAnnuity:
    def test_annuity_payment(self):
        payment = annuity_payment(1000.0, 0.05, 2)
        # 1000 * 0.05 / (1 - 1.05 ** -2)
        assert abs(payment - 537.8048780487804) < 1e-9

    def test_zero_rate(self):
        assert annuity_payment(1200.0, 0.0, 12) == 100.0

    def test_non_positive_term_raises(self):
        with pytest.raises(ValueError):
            annuity_payment(1000.0, 0.05, 0)


class TestPluginTable:
    """Tests for registering custom transformers by name."""

    def test_builtins_registered(self):
        names = available_transformers()
        for name in ('summation', 'cumulative', 'ratio', 'annual_schedule',
                     'repair_events', 'reserve_provision', 'drawdown', 'debt_service'):
            assert name in names

    def test_custom_transformer_usable_through_transform(self):
        @register_transformer('test_double_raw')
        def double_raw(params, ctx):
            return ctx.broadcast({year: ctx.raw_value * 2 for year in ctx.years})

        series = transform(
            4.0, False, PERCENTILES, ReferenceTable({}),
            years=[1, 2], transformer=TransformerSpec(name='test_double_raw')
        )

        assert all(band.values == [8.0, 8.0] for band in series)

    def test_unknown_transformer(self):
        with pytest.raises(KeyError):
            get_transformer('does_not_exist')

    def test_spec_from_config(self):
        assert TransformerSpec.from_config('drawdown') == TransformerSpec(name='drawdown', params={})
        spec = TransformerSpec.from_config({'name': 'summation', 'params': {'sources': ['a']}})
        assert spec.params == {'sources': ['a']}
        with pytest.raises(ValueError):
            TransformerSpec.from_config({'params': {}})
