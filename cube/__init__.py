"""
Cashflow Cube Module

Resolves a declarative source registry against a scenario document:
- Reference resolution (global and per-source scope)
- Dependency-ordered source resolution (direct, indirect, virtual)
- Multiplier and transformer operators per percentile band
- Immutable, queryable cube with audit trail per source
"""

__version__ = "0.0.1"
