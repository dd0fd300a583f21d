"""
Currency unit conversion between major units (19.99) and the gateway's
integer minor units (1999).

Most currencies have two decimal places. Zero-decimal currencies (JPY,
KRW, ...) are charged in whole units and three-decimal currencies (KWD,
BHD, ...) in thousandths, as Stripe expects.
"""
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Union

from order_payments.core.exceptions import ValidationError

ZERO_DECIMAL_CURRENCIES = frozenset(
    {
        "bif", "clp", "djf", "gnf", "jpy", "kmf", "krw", "mga",
        "pyg", "rwf", "ugx", "vnd", "vuv", "xaf", "xof", "xpf",
    }
)
THREE_DECIMAL_CURRENCIES = frozenset({"bhd", "jod", "kwd", "omr", "tnd"})


def minor_unit_exponent(currency: str) -> int:
    code = currency.lower()
    if code in ZERO_DECIMAL_CURRENCIES:
        return 0
    if code in THREE_DECIMAL_CURRENCIES:
        return 3
    return 2


def to_minor_units(amount: Union[Decimal, str, int], currency: str) -> int:
    """
    Convert a major-unit amount to integer minor units, rounding half-up.

    Raises:
        ValidationError: If the amount is negative or not a number
    """
    try:
        value = Decimal(str(amount))
    except InvalidOperation:
        raise ValidationError(f"Invalid amount: {amount!r}")
    if not value.is_finite() or value < 0:
        raise ValidationError(f"Amount must be a non-negative number, got {amount!r}")

    scaled = value.scaleb(minor_unit_exponent(currency))
    return int(scaled.quantize(Decimal(1), rounding=ROUND_HALF_UP))


def to_major_units(amount_minor: int, currency: str) -> Decimal:
    """Inverse of to_minor_units, quantized to the currency's precision."""
    exponent = minor_unit_exponent(currency)
    quantum = Decimal(1).scaleb(-exponent)
    return Decimal(amount_minor).scaleb(-exponent).quantize(quantum)
