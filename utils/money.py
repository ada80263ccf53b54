"""
Currency helpers

Amounts are carried as integer minor units everywhere inside the engine.
Conversion from user input and to display strings happens only here.
"""

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP

from flask import current_app, has_app_context


def _decimals():
    if has_app_context():
        return current_app.config.get('LEDGER_CURRENCY_DECIMALS', 0)
    return 0


def _currency():
    if has_app_context():
        return current_app.config.get('LEDGER_CURRENCY', 'XOF')
    return 'XOF'


def to_minor_units(value, decimals=None):
    """
    Convert an amount in major units (int, Decimal or numeric string) to minor units.

    Floats are refused: an amount that already went through binary floating
    point can no longer be reconciled exactly.
    """
    if decimals is None:
        decimals = _decimals()
    if isinstance(value, bool) or isinstance(value, float):
        raise TypeError(f"Amounts must be int, Decimal or str, not {type(value).__name__}")
    try:
        amount = Decimal(str(value).strip()) if isinstance(value, str) else Decimal(value)
    except (InvalidOperation, TypeError):
        raise ValueError(f"{value!r} is not a valid amount")
    if not amount.is_finite():
        raise ValueError(f"{value!r} is not a valid amount")
    scaled = amount.scaleb(decimals)
    if scaled != scaled.to_integral_value():
        raise ValueError(f"{value!r} has more than {decimals} decimal places")
    return int(scaled)


def from_minor_units(amount, decimals=None):
    if decimals is None:
        decimals = _decimals()
    return Decimal(int(amount)).scaleb(-decimals)


def format_amount(amount, decimals=None, currency=None):
    """Format minor units for display, e.g. 62000 -> '62,000 XOF'"""
    if decimals is None:
        decimals = _decimals()
    major = from_minor_units(amount, decimals)
    quantum = Decimal(1).scaleb(-decimals)
    text = f"{major.quantize(quantum, rounding=ROUND_HALF_UP):,}"
    return f"{text} {currency or _currency()}"


def percentage(part, whole):
    """Whole-number share of part in whole, 0 when whole is 0"""
    if not whole:
        return 0
    return int((Decimal(part) * 100 / Decimal(whole)).to_integral_value(rounding=ROUND_HALF_UP))
