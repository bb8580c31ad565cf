"""Formatting helpers for amounts stored in minor currency units."""
from decimal import Decimal

# Currencies without a minor unit
ZERO_DECIMAL_CURRENCIES = {'JPY', 'KRW', 'CLP', 'PYG', 'VND'}


def minor_unit_exponent(currency):
    return 0 if (currency or '').upper() in ZERO_DECIMAL_CURRENCIES else 2


def to_major_units(amount, currency='USD'):
    """
    Convert an integer minor-unit amount to a Decimal in major units.

    Examples:
        >>> to_major_units(1999, 'USD')
        Decimal('19.99')
    """
    exponent = minor_unit_exponent(currency)
    return (Decimal(int(amount)) / (Decimal(10) ** exponent)).quantize(Decimal(1).scaleb(-exponent))


def to_minor_units(value, currency='USD'):
    """
    Convert a gateway decimal amount ('19.99', 19.99) to integer minor units.
    """
    exponent = minor_unit_exponent(currency)
    return int((Decimal(str(value)) * (Decimal(10) ** exponent)).to_integral_value())


def format_money(amount, currency='USD'):
    """
    Format a minor-unit amount for display.

    Examples:
        >>> format_money(123456, 'USD')
        '1,234.56 USD'
    """
    if amount is None:
        return '-'
    major = to_major_units(amount, currency)
    exponent = minor_unit_exponent(currency)
    return f"{major:,.{exponent}f} {(currency or '').upper()}"
