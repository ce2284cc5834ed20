"""
Tests for reference resolution and scoped reference tables.
"""

import pytest

from cube.errors import ReferenceNotFound
from cube.references import (
    Reference,
    ReferenceTable,
    merge_reference_tables,
    resolve_numeric_option,
    resolve_reference,
    resolve_references,
)

DOCUMENT = {
    'settings': {
        'general': {'projectLife': 20, 'currency': 'EUR'},
        'turbines': [{'model': 'V150', 'capacity': 4.2}, {'model': 'SG145', 'capacity': 5.0}],
        'unset': None,
    }
}


class TestResolveReference:
    """Tests for walking reference paths."""

    def test_nested_mapping_path(self):
        reference = Reference(id='projectLife', path=('settings', 'general', 'projectLife'))
        assert resolve_reference(reference, DOCUMENT) == 20

    def test_list_index_segment(self):
        reference = Reference.from_config({'id': 'capacity', 'path': 'settings.turbines.1.capacity'})
        assert resolve_reference(reference, DOCUMENT) == 5.0

    def test_missing_key_raises(self):
        reference = Reference.from_config({'id': 'rate', 'path': 'settings.financing.rate'})

        with pytest.raises(ReferenceNotFound) as exc_info:
            resolve_reference(reference, DOCUMENT, source_id='debtService')

        assert exc_info.value.reference_id == 'rate'
        assert exc_info.value.source_id == 'debtService'
        assert 'debtService' in str(exc_info.value)

    def test_none_value_raises(self):
        reference = Reference.from_config({'id': 'unset', 'path': 'settings.unset'})
        with pytest.raises(ReferenceNotFound):
            resolve_reference(reference, DOCUMENT)

    def test_index_out_of_range_raises(self):
        reference = Reference.from_config({'id': 'turbine', 'path': 'settings.turbines.5'})
        with pytest.raises(ReferenceNotFound):
            resolve_reference(reference, DOCUMENT)

    def test_reference_requires_id_and_path(self):
        with pytest.raises(ValueError, match="requires 'id' and 'path'"):
            Reference.from_config({'id': 'projectLife'})


class TestReferenceTables:
    """Tests for deferred errors and scope merging."""

    def test_failed_reference_is_deferred(self):
        references = [
            Reference.from_config({'id': 'projectLife', 'path': 'settings.general.projectLife'}),
            Reference.from_config({'id': 'missing', 'path': 'settings.nothing'}),
        ]
        table = resolve_references(references, DOCUMENT)

        assert table['projectLife'] == 20
        assert 'missing' in table
        assert 'missing' in table.errors

    def test_get_value_attributes_error_to_reader(self):
        table = resolve_references(
            [Reference.from_config({'id': 'missing', 'path': 'settings.nothing'})], DOCUMENT
        )

        with pytest.raises(ReferenceNotFound) as exc_info:
            table.get_value('missing', source_id='reserveFunds')

        assert exc_info.value.source_id == 'reserveFunds'

    def test_local_scope_shadows_global(self):
        global_table = ReferenceTable({'currency': 'USD', 'projectLife': 25})
        local_table = ReferenceTable({'currency': 'EUR'})

        merged = merge_reference_tables(global_table, local_table)

        assert merged['currency'] == 'EUR'
        assert merged['projectLife'] == 25
        assert len(merged) == 2

    def test_local_value_shadows_global_error(self):
        global_table = ReferenceTable({}, {'rate': ReferenceNotFound('rate', ['x'])})
        local_table = ReferenceTable({'rate': 0.05})

        merged = merge_reference_tables(global_table, local_table)

        assert merged.get_value('rate') == 0.05
        assert merged.errors == {}


class TestNumericOptions:
    """Tests for number-or-reference options."""

    def setup_method(self):
        self.table = ReferenceTable({'costOfEquity': 8, 'currency': 'USD'})

    def test_plain_number(self):
        assert resolve_numeric_option(0.07, self.table) == 0.07

    def test_scaled_reference(self):
        value = resolve_numeric_option({'reference': 'costOfEquity', 'scale': 0.01}, self.table)
        assert abs(value - 0.08) < 1e-12

    def test_reference_id_string(self):
        assert resolve_numeric_option('costOfEquity', self.table) == 8.0

    def test_default_for_missing_reference(self):
        assert resolve_numeric_option({'reference': 'numWTGs'}, self.table, default=1.0) == 1.0

    def test_missing_reference_without_default_raises(self):
        with pytest.raises(ReferenceNotFound):
            resolve_numeric_option({'reference': 'numWTGs'}, self.table)

    def test_non_numeric_reference_raises(self):
        with pytest.raises(ValueError, match="not numeric"):
            resolve_numeric_option({'reference': 'currency'}, self.table)

    def test_plain_mapping_references(self):
        assert resolve_numeric_option({'reference': 'rate', 'scale': 2}, {'rate': 3}) == 6.0
