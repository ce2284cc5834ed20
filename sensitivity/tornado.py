"""
Tornado views of ranked sensitivity results.
"""

from typing import Dict, Any, Optional, List, Mapping, Sequence

import pandas as pd

from sensitivity.engine import SensitivityResult, rank_results

TORNADO_COLUMNS = [
    'rank', 'variable_id', 'name', 'metric_key', 'lower_percentile', 'upper_percentile',
    'lower_value', 'upper_value', 'baseline', 'absolute', 'percentage', 'normalized', 'error',
]


def tornado_table(
    results: Sequence[SensitivityResult],
    names: Optional[Mapping[str, str]] = None
) -> pd.DataFrame:
    """
    Ranked tornado table.

    Args:
        results: Sensitivity results (re-ranked here)
        names: Optional variable id -> display name

    Returns:
        DataFrame with one row per variable, rank starting at 1
    """
    names = names or {}
    rows = []
    for rank, result in enumerate(rank_results(results), start=1):
        rows.append({
            'rank': rank,
            'variable_id': result.variable_id,
            'name': names.get(result.variable_id, result.variable_id),
            'metric_key': result.metric_key,
            'lower_percentile': result.percentile_range.lower,
            'upper_percentile': result.percentile_range.upper,
            'lower_value': result.values.lower,
            'upper_value': result.values.upper,
            'baseline': result.values.baseline,
            'absolute': result.impact.absolute,
            'percentage': result.impact.percentage,
            'normalized': result.impact.normalized,
            'error': result.error,
        })
    return pd.DataFrame(rows, columns=TORNADO_COLUMNS)


def tornado_chart_data(
    results: Sequence[SensitivityResult],
    max_results: Optional[int] = None
) -> List[Dict[str, Any]]:
    """
    Bars for a tornado chart: low/high values and their deltas from the baseline.

    Unavailable results are left out.
    """
    bars = []
    for result in rank_results(results):
        if result.error or result.impact.absolute is None:
            continue
        baseline = result.values.baseline
        bars.append({
            'variable_id': result.variable_id,
            'low': result.values.lower,
            'high': result.values.upper,
            'baseline': baseline,
            'low_delta': result.values.lower - baseline if baseline is not None else None,
            'high_delta': result.values.upper - baseline if baseline is not None else None,
            'impact': result.impact.absolute,
        })
    if max_results is not None:
        bars = bars[:max_results]
    return bars
