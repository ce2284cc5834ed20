"""
Metrics Module

Reduces cube time series into project finance metrics per percentile:
- Aggregations (sum, NPV, mean, min, max, first, last, weighted mean, IRR, payback)
- Derived metrics combining other metrics (DSCR, LLCR, LCOE)
- Display formatting
"""

__version__ = "0.0.1"
