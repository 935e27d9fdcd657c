from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Union

# Amounts are stored as integer counts of 10^-8 of a currency unit.
SCALE = 8
UNITS_PER_WHOLE = 10**SCALE
QUANTUM = Decimal(1).scaleb(-SCALE)

AmountLike = Union[Decimal, int, str]


def to_decimal(value: AmountLike) -> Decimal:
    if isinstance(value, float):
        raise TypeError("Amounts must not be floats")
    try:
        amount = Decimal(str(value).strip()) if isinstance(value, str) else Decimal(value)
    except InvalidOperation as exc:
        raise ValueError("Invalid amount") from exc
    if not amount.is_finite():
        raise ValueError("Invalid amount")
    return amount


def to_units(value: AmountLike) -> int:
    amount = to_decimal(value)
    return int((amount * UNITS_PER_WHOLE).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_units(units: int) -> Decimal:
    return (Decimal(int(units)) / UNITS_PER_WHOLE).quantize(QUANTUM)


def quantize(value: AmountLike) -> Decimal:
    return from_units(to_units(value))
