"""
Sensitivity Module

Re-evaluates a target metric with one input at bounding percentiles
and ranks inputs by impact for tornado analysis.
"""

__version__ = "0.0.1"
