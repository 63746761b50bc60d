"""
Monetary Precision Module

Decimal helpers for money and rate values. NEVER uses float for monetary
values: every amount is quantized to the minor unit at the end of each
computation step, never accumulated unrounded.
"""

from decimal import Decimal, ROUND_HALF_UP, InvalidOperation, getcontext
from typing import Union
import re

from .config import get_config
from .exceptions import ValidationError

# Set global decimal context for financial precision
getcontext().prec = 28  # High precision for financial calculations

ZERO = Decimal('0')
HUNDRED = Decimal('100')

Numeric = Union[Decimal, int, str]


def minor_unit(precision: int = None) -> Decimal:
    """Smallest representable amount, e.g. 0.01 for two-digit currencies"""
    if precision is None:
        precision = get_config().currency_precision
    return Decimal('0.1') ** precision


def round_money(value: Decimal, precision: int = None) -> Decimal:
    """Round an amount to the currency's minor unit"""
    return value.quantize(minor_unit(precision), rounding=ROUND_HALF_UP)


def round_rate(value: Decimal, precision: int = None) -> Decimal:
    """Round a percent-per-annum rate to the configured rate precision"""
    if precision is None:
        precision = get_config().rate_precision
    return value.quantize(Decimal('0.1') ** precision, rounding=ROUND_HALF_UP)


def to_decimal(value: Numeric, field_name: str = "value") -> Decimal:
    """
    Convert input to Decimal, rejecting floats and non-finite values

    Args:
        value: Decimal, int or numeric string (thousands separators allowed)
        field_name: Name used in the error message

    Returns:
        Decimal value

    Raises:
        ValidationError: If the value cannot be represented exactly
    """
    if isinstance(value, bool) or isinstance(value, float):
        raise ValidationError(f"{field_name} must be Decimal, int or str, not {type(value).__name__}")
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, int):
        result = Decimal(value)
    elif isinstance(value, str):
        clean_value = re.sub(r'[\s,_]', '', value.strip())
        try:
            result = Decimal(clean_value)
        except InvalidOperation:
            raise ValidationError(f"Cannot convert {field_name} '{value}' to Decimal")
    else:
        raise ValidationError(f"{field_name} must be Decimal, int or str, not {type(value).__name__}")

    if not result.is_finite():
        raise ValidationError(f"{field_name} must be a finite number")
    return result


def periodic_rate(annual_rate: Decimal, periods_per_year: int) -> Decimal:
    """Convert a percent-per-annum rate into a per-period fraction"""
    return annual_rate / HUNDRED / Decimal(periods_per_year)


def format_amount(value: Decimal, precision: int = None) -> str:
    """Format for display and log messages"""
    if precision is None:
        precision = get_config().currency_precision
    return f"{value:,.{precision}f}"
