"""
Test Suite for Wind Farm Risk Cube

Includes:
- Unit tests for references, operators and registry validation
- Cube build and query tests against the wind farm fixture scenario
- Metric aggregation tests
- Sensitivity and tornado ranking tests
- Command line tests
"""
