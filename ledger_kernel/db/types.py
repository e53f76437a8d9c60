"""
Module: ledger_kernel.db.types
Responsibility: Annotated column types and the money helpers shared by every
    model and service.  Amounts are base-currency, 2-decimal fixed point.
Architecture position: Kernel > DB.  MUST NOT import from models/, domain/,
    services/ or selectors/.

Invariants enforced:
    - No floats anywhere.  All monetary amounts are Decimal.
    - round_money() is the only sanctioned rounding function.
    - parse_money() rejects, never rounds, amounts with sub-cent precision.
"""

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from enum import Enum
from typing import Annotated

from sqlalchemy import Numeric, String

# 38 digits total, 9 decimal places in storage; 2 places are significant.
Money = Annotated[Decimal, Numeric(38, 9)]

ShortCode = Annotated[str, String(50)]

MONEY_DECIMAL_PLACES = 2
DEFAULT_ROUNDING = ROUND_HALF_UP
ZERO = Decimal("0")


def round_money(
    value: Decimal,
    decimal_places: int = MONEY_DECIMAL_PLACES,
    rounding: str = DEFAULT_ROUNDING,
) -> Decimal:
    """
    Round a monetary value to the given number of decimal places.

    Args:
        value: The Decimal value to round.
        decimal_places: Number of decimal places to round to.
        rounding: Rounding mode (default: ROUND_HALF_UP).
    """
    quantize_str = "0." + "0" * decimal_places
    return value.quantize(Decimal(quantize_str), rounding=rounding)


def parse_money(value: Decimal | int | str | None) -> Decimal:
    """
    Convert a caller-supplied amount into a 2-decimal Decimal.

    None becomes zero.  Floats are refused outright; strings and ints go
    through Decimal.  Anything with more than two decimal places raises
    ValueError instead of being silently rounded.

    Raises:
        ValueError: non-numeric input, a float, or sub-cent precision.
    """
    if value is None:
        return round_money(ZERO)
    if isinstance(value, float):
        raise ValueError(f"Monetary amounts must not be floats: {value!r}")
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value))
    except InvalidOperation as exc:
        raise ValueError(f"Not a monetary amount: {value!r}") from exc
    if not amount.is_finite():
        raise ValueError(f"Not a monetary amount: {value!r}")
    rounded = round_money(amount)
    if rounded != amount:
        raise ValueError(
            f"Amount {value} has more than {MONEY_DECIMAL_PLACES} decimal places"
        )
    return rounded


def enum_value(value) -> str:
    """Raw string of a str-Enum column whether freshly assigned or loaded."""
    return value.value if isinstance(value, Enum) else value
