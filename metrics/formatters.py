"""
Display formatters for metric values.
Deterministic string formatting for currency, percentages, ratios and years.
"""

from typing import Optional

NOT_AVAILABLE = "Not available"

CURRENCY_SYMBOLS = {
    'USD': '$',
    'EUR': '€',
    'GBP': '£',
}


class FormatterError(Exception):
    """Raised when formatter input validation fails."""
    pass


def _check_numeric(value, kind: str):
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise FormatterError(f"{kind} value must be numeric, got {type(value)}")


def format_percentage(value: Optional[float], decimal_places: int = 1) -> str:
    """
    Format decimal as percentage with specified precision.

    Args:
        value: Decimal value (0.0845 = 8.45%)
        decimal_places: Number of decimal places (default: 1)

    Returns:
        Formatted percentage string (e.g., "8.5%")
    """
    if value is None:
        return NOT_AVAILABLE
    _check_numeric(value, "Percentage")
    return f"{value * 100:.{decimal_places}f}%"


def format_currency(value: Optional[float], currency: str = 'USD', force_scale: Optional[str] = None) -> str:
    """
    Format currency with appropriate scale (B/M/K).

    Args:
        value: Amount in project currency
        currency: ISO currency code; unknown codes are used as a prefix
        force_scale: Force specific scale ('B', 'M', 'K', None)

    Returns:
        Formatted currency string (e.g., "$12.3M", "€1,234")
    """
    if value is None:
        return NOT_AVAILABLE
    _check_numeric(value, "Currency")

    symbol = CURRENCY_SYMBOLS.get(currency, f"{currency} ")
    if value == 0:
        return f"{symbol}0"

    abs_value = abs(value)
    sign = "-" if value < 0 else ""

    if force_scale == 'B' or (force_scale is None and abs_value >= 1e9):
        return f"{sign}{symbol}{abs_value/1e9:.1f}B"
    if force_scale == 'M' or (force_scale is None and abs_value >= 1e6):
        return f"{sign}{symbol}{abs_value/1e6:.1f}M"
    if force_scale == 'K':
        return f"{sign}{symbol}{abs_value/1e3:.1f}K"
    if abs_value >= 1e3:
        return f"{sign}{symbol}{abs_value:,.0f}"
    return f"{sign}{symbol}{abs_value:.2f}"


def format_ratio(value: Optional[float], decimal_places: int = 2) -> str:
    """Coverage ratios as multiples, e.g. "1.35x"."""
    if value is None:
        return NOT_AVAILABLE
    _check_numeric(value, "Ratio")
    return f"{value:.{decimal_places}f}x"


def format_number(value: Optional[float], decimal_places: int = 0) -> str:
    if value is None:
        return NOT_AVAILABLE
    _check_numeric(value, "Number")
    return f"{value:,.{decimal_places}f}"


def format_years(value: Optional[float]) -> str:
    if value is None:
        return NOT_AVAILABLE
    _check_numeric(value, "Years")
    return f"{value:.1f} years"


def format_metric_value(value: Optional[float], formatter: Optional[str] = None, currency: str = 'USD') -> str:
    """
    Format a metric value by formatter name.

    Args:
        value: Metric value (None renders as "Not available")
        formatter: One of currency, percentage, ratio, number, years (default: number with 2 decimals)
        currency: Currency code for currency formatting

    Returns:
        Display string
    """
    if formatter == 'currency':
        return format_currency(value, currency=currency)
    if formatter == 'percentage':
        return format_percentage(value)
    if formatter == 'ratio':
        return format_ratio(value)
    if formatter == 'years':
        return format_years(value)
    if formatter == 'number':
        return format_number(value)
    if formatter is None:
        return format_number(value, decimal_places=2)
    raise FormatterError(f"Unknown formatter: {formatter}")
