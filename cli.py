#!/usr/bin/env python3
"""
Main CLI for the Wind Farm Risk Cube.
Usage: python cli.py {build,metrics,tornado} SCENARIO.json [options]
"""

import sys
import json
import argparse
from pathlib import Path
from typing import Dict, Any, List

# Add project root to path
project_root = Path(__file__).parent
sys.path.insert(0, str(project_root))

from cube.builder import build_cube
from cube.errors import SchemaViolation
from cube.registry import load_registry
from cube.settings import configure_logging, load_settings
from metrics.aggregator import compute_all_metrics, metrics_frame
from metrics.registry import MetricRegistryError, load_metric_registry
from sensitivity.engine import SensitivityInputInvalid, analyze_sensitivity
from sensitivity.tornado import tornado_table


def _percentile_list(raw: str) -> List[int]:
    return [int(part) for part in raw.split(',') if part.strip()]


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description='Build a cashflow cube for a wind farm scenario and analyze it',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python cli.py build tests/fixtures/wind_farm_scenario.json
  python cli.py metrics tests/fixtures/wind_farm_scenario.json --percentile 10
  python cli.py tornado tests/fixtures/wind_farm_scenario.json --metric npv --lower 10 --upper 90
        """
    )
    parser.add_argument('--registry', help='Source registry YAML (default: CUBE_SOURCE_REGISTRY or packaged)')
    parser.add_argument('--metrics-registry', help='Metric registry YAML (default: CUBE_METRICS_REGISTRY or packaged)')
    parser.add_argument('--percentiles', type=_percentile_list,
                        help='Comma separated percentiles (default: CUBE_PERCENTILES)')
    parser.add_argument('--primary', type=int, help='Primary percentile (default: CUBE_PRIMARY_PERCENTILE)')
    parser.add_argument('--json', action='store_true', help='Print JSON instead of tables')
    parser.add_argument('--log-level', help='Logging level (default: LOG_LEVEL or INFO)')

    commands = parser.add_subparsers(dest='command', required=True)

    build = commands.add_parser('build', help='Build the cube and summarize its sources')
    build.add_argument('scenario', help='Scenario JSON document')

    metrics = commands.add_parser('metrics', help='Compute all metrics at one percentile')
    metrics.add_argument('scenario', help='Scenario JSON document')
    metrics.add_argument('--percentile', type=int, help='Percentile to evaluate (default: primary)')

    tornado = commands.add_parser('tornado', help='Rank inputs by impact on a metric')
    tornado.add_argument('scenario', help='Scenario JSON document')
    tornado.add_argument('--metric', required=True, help='Target metric key')
    tornado.add_argument('--lower', type=int, default=10, help='Lower percentile (default: 10)')
    tornado.add_argument('--upper', type=int, default=90, help='Upper percentile (default: 90)')
    tornado.add_argument('--variables', help='Comma separated variable ids (default: all percentile sources)')

    return parser


def _load_scenario(path: str) -> Dict[str, Any]:
    scenario_path = Path(path)
    if not scenario_path.exists():
        print(f"ERROR: Scenario not found: {scenario_path}", file=sys.stderr)
        sys.exit(1)
    with open(scenario_path, 'r', encoding='utf-8') as f:
        return json.load(f)


def main(argv: List[str] = None):
    """Main CLI entry point."""
    args = build_parser().parse_args(argv)
    settings = load_settings()
    configure_logging(args.log_level or settings.log_level)

    percentiles = args.percentiles or settings.percentiles
    primary = args.primary or (settings.primary_percentile if settings.primary_percentile in percentiles else None)

    try:
        registry = load_registry(args.registry or settings.source_registry)
        metric_registry = load_metric_registry(args.metrics_registry or settings.metrics_registry)
        cube = build_cube(
            registry,
            _load_scenario(args.scenario),
            percentiles,
            primary_percentile=primary,
            default_years=settings.years,
        )
    except (SchemaViolation, MetricRegistryError, ValueError) as e:
        print(f"ERROR: {e}", file=sys.stderr)
        sys.exit(1)

    if args.command == 'build':
        _print_build(cube, args.json)
    elif args.command == 'metrics':
        percentile = args.percentile if args.percentile is not None else cube.primary_percentile
        results = compute_all_metrics(cube, percentile, metric_registry)
        frame = metrics_frame(results)
        if args.json:
            print(frame.to_json(orient='records', indent=2))
        else:
            print(f"Metrics at P{percentile}")
            print(frame[['metric', 'display', 'method', 'error']].to_string(index=False))
    elif args.command == 'tornado':
        variables = [v.strip() for v in args.variables.split(',')] if args.variables else None
        try:
            results = analyze_sensitivity(
                cube, args.metric, variables, (args.lower, args.upper), metric_registry
            )
        except SensitivityInputInvalid as e:
            print(f"ERROR: {e}", file=sys.stderr)
            sys.exit(1)
        names = {source.id: source.metadata.name for source in cube.registry}
        table = tornado_table(results, names)
        if args.json:
            print(table.to_json(orient='records', indent=2))
        else:
            print(f"Tornado for {args.metric} (P{args.lower} vs P{args.upper})")
            print(table[['rank', 'name', 'lower_value', 'upper_value', 'absolute', 'error']].to_string(index=False))


def _print_build(cube, as_json: bool):
    summary = cube.summary()
    if as_json:
        print(json.dumps(summary, indent=2, default=str))
        return

    print(f"Built cube with {len(cube)} sources at percentiles {list(cube.percentiles)} "
          f"(primary P{cube.primary_percentile})")
    print()
    for source_id, info in summary['sources'].items():
        steps = len(info['audit']['trail'])
        print(f"  {source_id:<22} {info['category'] or '-':<12} {len(info['years']):>3} years  {steps} audit steps")

    if cube.errors:
        print()
        print(f"WARNING: {len(cube.errors)} sources failed")
        for source_id, message in cube.errors.items():
            print(f"  {source_id}: {message}")


if __name__ == '__main__':
    main()
