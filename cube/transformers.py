"""
Time-series operator engine: transformer plugin table and the transform entry point.
Transformers are registered by name and configured with plain parameters.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, Any, Callable, Optional, List, Mapping, Sequence, Tuple

from cube.errors import OperatorError, UnresolvedDependency
from cube.references import ReferenceTable, resolve_numeric_option
from cube.series import (
    PercentileSeries,
    expand_raw_value,
    is_scalar,
    make_series,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TransformerSpec:
    """Named transformer plus its parameters."""
    name: str
    params: Mapping[str, Any] = field(default_factory=dict)

    @classmethod
    def from_config(cls, config: Any) -> 'TransformerSpec':
        if isinstance(config, str):
            return cls(name=config, params={})
        if isinstance(config, Mapping) and config.get('name'):
            return cls(name=str(config['name']), params=dict(config.get('params') or {}))
        raise ValueError(f"Transformer must be a name or {{name, params}}: {config!r}")


@dataclass
class TransformerContext:
    """What a transformer may read: prior cube entries, references and the band/year axes."""
    source_id: str
    processed: Mapping[str, Any]
    references: ReferenceTable
    percentiles: Tuple[int, ...]
    primary_percentile: int
    years: Optional[Tuple[int, ...]] = None
    raw_value: Any = None
    definitions: Tuple[Any, ...] = ()

    def bands(self, source_id: str) -> Dict[int, Dict[int, float]]:
        """Band -> (year -> value) of a processed source."""
        entry = self.processed.get(source_id)
        if entry is None:
            raise UnresolvedDependency(f"Source '{source_id}' has not been processed", self.source_id)
        return {band.percentile: band.as_dict() for band in entry.percentile_source}

    def number(self, option: Any, default: Optional[float] = None) -> float:
        return resolve_numeric_option(option, self.references, self.source_id, default)

    def broadcast(self, values_by_year: Mapping[int, float]) -> List[PercentileSeries]:
        return [make_series(p, values_by_year) for p in self.percentiles]

    def per_band(self, values: Mapping[int, Mapping[int, float]]) -> List[PercentileSeries]:
        return [make_series(p, values[p]) for p in self.percentiles]


TransformerFn = Callable[[Mapping[str, Any], TransformerContext], List[PercentileSeries]]
DependencyFn = Callable[[Mapping[str, Any], Sequence[Any], str], List[str]]


@dataclass(frozen=True)
class TransformerPlugin:
    name: str
    func: TransformerFn
    dependencies: Optional[DependencyFn] = None


_TRANSFORMERS: Dict[str, TransformerPlugin] = {}


def register_transformer(name: str, dependencies: Optional[DependencyFn] = None):
    """
    Register a transformer under a name usable from registry configuration.

    Args:
        name: Transformer name
        dependencies: Optional function (params, definitions, source_id) -> source ids
            the transformer reads, used for build ordering

    Returns:
        Decorator registering the wrapped function
    """
    def decorator(func: TransformerFn) -> TransformerFn:
        if name in _TRANSFORMERS:
            logger.warning(f"Transformer '{name}' re-registered")
        _TRANSFORMERS[name] = TransformerPlugin(name=name, func=func, dependencies=dependencies)
        return func
    return decorator


def get_transformer(name: str) -> TransformerPlugin:
    if name not in _TRANSFORMERS:
        raise KeyError(f"Unknown transformer: {name}")
    return _TRANSFORMERS[name]


def available_transformers() -> List[str]:
    return sorted(_TRANSFORMERS)


def transformer_dependencies(spec: TransformerSpec, definitions: Sequence[Any], source_id: str) -> List[str]:
    """Source ids a transformer declares it reads."""
    plugin = get_transformer(spec.name)
    if plugin.dependencies is None:
        return []
    return plugin.dependencies(spec.params, definitions, source_id)


def transform(
    raw_value: Any,
    has_percentiles: bool,
    available_percentiles: Sequence[int],
    references: ReferenceTable,
    years: Optional[Sequence[int]] = None,
    transformer: Optional[TransformerSpec] = None,
    context: Optional[TransformerContext] = None,
    primary_percentile: Optional[int] = None,
    band_fallbacks: Optional[Mapping[int, int]] = None,
    source_id: Optional[str] = None
) -> List[PercentileSeries]:
    """
    Turn a raw value into a full percentile-series collection.

    With a transformer, the transformer output is normalized; otherwise the raw
    value is expanded directly (scalars broadcast to every year and band).
    Raw values of sources without percentiles carry the primary band in every
    band; transformer output is kept per band since it may combine bands.

    Args:
        raw_value: Value read from the scenario (None for virtual sources)
        has_percentiles: Whether the source varies by percentile
        available_percentiles: Bands to produce
        references: Merged reference table of the source
        years: Year axis for scalar expansion
        transformer: Optional transformer to run first
        context: Transformer context (built from the other arguments when omitted)
        primary_percentile: Band used for sources without percentiles
        band_fallbacks: Band -> band copied when the input lacks that band
        source_id: Owning source, for error reporting

    Returns:
        One PercentileSeries per available percentile, in order

    Raises:
        OperatorError: If the value or transformer output is malformed
    """
    percentiles = tuple(available_percentiles)
    if primary_percentile is None:
        primary_percentile = percentiles[0]

    if transformer is not None:
        if context is None:
            context = TransformerContext(
                source_id=source_id or '',
                processed={},
                references=references,
                percentiles=percentiles,
                primary_percentile=primary_percentile,
                years=tuple(years) if years else None,
                raw_value=raw_value,
            )
        plugin = get_transformer(transformer.name)
        try:
            raw_value = plugin.func(transformer.params, context)
        except (AttributeError, KeyError, TypeError, ValueError, ZeroDivisionError) as e:
            raise OperatorError(f"Transformer '{transformer.name}' failed: {e}", source_id)

    expanded = expand_raw_value(raw_value, percentiles, years, source_id, band_fallbacks)

    if not has_percentiles and transformer is None:
        reference_band = next((s for s in expanded if s.percentile == primary_percentile), expanded[0])
        expanded = [reference_band.with_percentile(p) for p in percentiles]

    return expanded


def _axis_years(ctx: TransformerContext, *extra: Sequence[int]) -> List[int]:
    years = set(ctx.years or ())
    for group in extra:
        years.update(group)
    return sorted(years)


def _matches(value: Any, expected: Any) -> bool:
    if isinstance(expected, (list, tuple)):
        return value in expected
    return value == expected


def _summation_members(params: Mapping[str, Any], definitions: Sequence[Any], source_id: str) -> List[str]:
    members = list(params.get('sources') or [])
    criteria = params.get('filter') or {}
    exclude = set(params.get('exclude') or [])

    if criteria:
        for definition in definitions:
            if definition.id == source_id or definition.id in members:
                continue
            metadata = definition.metadata
            if 'category' in criteria and not _matches(metadata.category, criteria['category']):
                continue
            if 'cashflow_group' in criteria and not _matches(metadata.cashflow_group, criteria['cashflow_group']):
                continue
            members.append(definition.id)

    return [member for member in members if member not in exclude and member != source_id]


def sum_series(series: Sequence[Mapping[int, float]], weights: Optional[Sequence[float]] = None) -> Dict[int, float]:
    """Per-year weighted sum over the union of years; missing years count as zero."""
    if weights is None:
        weights = [1.0] * len(series)
    totals: Dict[int, float] = {}
    for values, weight in zip(series, weights):
        for year, value in values.items():
            totals[year] = totals.get(year, 0.0) + weight * value
    return dict(sorted(totals.items()))


def summation(entries: Sequence[Any], percentile: int) -> PercentileSeries:
    """
    Reduce processed cube entries into one series by per-year sum.

    Args:
        entries: ProcessedSource records to add up
        percentile: Band to reduce

    Returns:
        PercentileSeries of the per-year totals
    """
    bands = []
    for entry in entries:
        band = next((s for s in entry.percentile_source if s.percentile == percentile), None)
        if band is None:
            raise OperatorError(f"Source '{entry.id}' has no percentile {percentile}")
        bands.append(band.as_dict())
    return make_series(percentile, sum_series(bands))


@register_transformer('summation', dependencies=_summation_members)
def summation_transformer(params: Mapping[str, Any], ctx: TransformerContext) -> List[PercentileSeries]:
    """Sum explicit and filter-matched sources, optionally weighted (e.g. revenue - cost)."""
    members = _summation_members(params, ctx.definitions, ctx.source_id)
    if not members:
        raise OperatorError("Summation matched no sources", ctx.source_id)

    weights_config = params.get('weights') or {}
    weights = [float(weights_config.get(member, 1.0)) for member in members]
    member_bands = [ctx.bands(member) for member in members]

    totals = {}
    for p in ctx.percentiles:
        totals[p] = sum_series([bands[p] for bands in member_bands], weights)
        if ctx.years:
            totals[p] = {year: totals[p].get(year, 0.0) for year in _axis_years(ctx, totals[p])}
    return ctx.per_band(totals)


@register_transformer('cumulative', dependencies=lambda params, definitions, source_id: [params['source']])
def cumulative_transformer(params: Mapping[str, Any], ctx: TransformerContext) -> List[PercentileSeries]:
    """Running total of another source."""
    bands = ctx.bands(params['source'])
    totals = {}
    for p in ctx.percentiles:
        running = 0.0
        totals[p] = {}
        for year in sorted(bands[p]):
            running += bands[p][year]
            totals[p][year] = running
    return ctx.per_band(totals)


@register_transformer(
    'ratio',
    dependencies=lambda params, definitions, source_id: [params['numerator'], params['denominator']]
)
def ratio_transformer(params: Mapping[str, Any], ctx: TransformerContext) -> List[PercentileSeries]:
    """Per-year numerator / denominator; years with a zero or missing denominator are dropped."""
    numerator = ctx.bands(params['numerator'])
    denominator = ctx.bands(params['denominator'])
    ratios = {}
    for p in ctx.percentiles:
        ratios[p] = {
            year: value / denominator[p][year]
            for year, value in numerator[p].items()
            if denominator[p].get(year)
        }
    return ctx.per_band(ratios)


def _contract_years(contract: Mapping[str, Any]) -> List[int]:
    years = contract.get('years')
    if isinstance(years, Mapping):
        return list(range(int(years['start']), int(years['end']) + 1))
    return [int(year) for year in (years or [])]


@register_transformer('annual_schedule')
def annual_schedule_transformer(params: Mapping[str, Any], ctx: TransformerContext) -> List[PercentileSeries]:
    """
    Contract fees from a list of contracts.

    Each contract covers a list of years (or {start, end}) and pays either a
    fixed annual fee or a per-year fee series; per-turbine contracts scale by
    the turbine count reference.
    """
    contracts = ctx.raw_value
    if not isinstance(contracts, (list, tuple)):
        raise OperatorError("Contract schedule must be a list of contracts", ctx.source_id)

    turbines = ctx.number(params.get('turbines', {'reference': 'numWTGs'}), default=1.0)
    fees: Dict[int, float] = {}

    for contract in contracts:
        scale = turbines if contract.get('per_turbine') else 1.0
        if contract.get('fee_series'):
            schedule = {int(point['year']): float(point['value']) for point in contract['fee_series']}
        else:
            fixed_fee = float(contract.get('fixed_fee', 0.0))
            schedule = {year: fixed_fee for year in _contract_years(contract)}
        for year, fee in schedule.items():
            fees[year] = fees.get(year, 0.0) + fee * scale

    years = _axis_years(ctx, fees)
    return ctx.broadcast({year: fees.get(year, 0.0) for year in years})


@register_transformer('repair_events')
def repair_events_transformer(params: Mapping[str, Any], ctx: TransformerContext) -> List[PercentileSeries]:
    """Expected major repair cost per year: cost x probability (percent)."""
    events = ctx.raw_value
    if not isinstance(events, (list, tuple)):
        raise OperatorError("Repair events must be a list", ctx.source_id)

    costs: Dict[int, float] = {}
    for event in events:
        year = int(event['year'])
        expected = float(event['cost']) * float(event.get('probability', 100.0)) / 100.0
        costs[year] = costs.get(year, 0.0) + expected

    years = _axis_years(ctx, costs)
    return ctx.broadcast({year: costs.get(year, 0.0) for year in years})


@register_transformer('reserve_provision')
def reserve_provision_transformer(params: Mapping[str, Any], ctx: TransformerContext) -> List[PercentileSeries]:
    """Spread each reserve amount evenly over min(spread_years, project life) years."""
    funds = ctx.raw_value
    if is_scalar(funds):
        funds = [{'amount': funds}]
    if not isinstance(funds, (list, tuple)):
        raise OperatorError("Reserve funds must be a list or an amount", ctx.source_id)

    spread_years = int(params.get('spread_years', 5))
    project_life = ctx.number(params.get('project_life', {'reference': 'projectLife'}), default=spread_years)
    periods = max(1, min(spread_years, int(project_life)))

    provisions: Dict[int, float] = {}
    for fund in funds:
        start = int(fund.get('start_year', 1))
        instalment = float(fund['amount']) / periods
        for year in range(start, start + periods):
            provisions[year] = provisions.get(year, 0.0) + instalment

    years = _axis_years(ctx, provisions)
    return ctx.broadcast({year: provisions.get(year, 0.0) for year in years})


@register_transformer('drawdown')
def drawdown_transformer(params: Mapping[str, Any], ctx: TransformerContext) -> List[PercentileSeries]:
    """
    Construction spend per year from cost items with percentage drawdown schedules.

    An optional 'ratio' parameter scales the result, e.g. the debt share of capex.
    """
    items = ctx.raw_value
    if not isinstance(items, (list, tuple)):
        raise OperatorError("Construction costs must be a list", ctx.source_id)

    ratio = ctx.number(params['ratio']) if 'ratio' in params else 1.0
    spend: Dict[int, float] = {}
    for item in items:
        total = float(item['total_amount'])
        for step in item.get('drawdown_schedule') or []:
            year = int(step['year'])
            spend[year] = spend.get(year, 0.0) + total * float(step['value']) / 100.0 * ratio

    if not spend:
        raise OperatorError("Construction costs carry no drawdown schedule", ctx.source_id)
    return ctx.broadcast(spend)


def annuity_payment(principal: float, rate: float, periods: int) -> float:
    """Level payment repaying principal over periods at rate per period."""
    if periods <= 0:
        raise ValueError("Loan duration must be positive")
    if rate == 0:
        return principal / periods
    return principal * rate / (1 - (1 + rate) ** -periods)


def _debt_service_dependencies(params: Mapping[str, Any], definitions: Sequence[Any], source_id: str) -> List[str]:
    return [params['principal_source']] if params.get('principal_source') else []


@register_transformer('debt_service', dependencies=_debt_service_dependencies)
def debt_service_transformer(params: Mapping[str, Any], ctx: TransformerContext) -> List[PercentileSeries]:
    """
    Level annuity debt service from principal, interest rate and loan duration.

    The principal is either a numeric option or the total of another source
    (e.g. debt drawdown), taken per band.
    """
    rate = ctx.number(params.get('interest_rate', 0.0))
    periods = int(ctx.number(params['term']))
    start_year = int(params.get('start_year', 1))

    if params.get('principal_source'):
        source_bands = ctx.bands(params['principal_source'])
        principals = {p: sum(source_bands[p].values()) for p in ctx.percentiles}
    else:
        principal = ctx.number(params['principal'])
        principals = {p: principal for p in ctx.percentiles}

    schedule = {}
    for p in ctx.percentiles:
        payment = annuity_payment(principals[p], rate, periods)
        payments = {year: payment for year in range(start_year, start_year + periods)}
        schedule[p] = {year: payments.get(year, 0.0) for year in _axis_years(ctx, payments)}
    return ctx.per_band(schedule)
