"""Exact conversion between raw units and NANO."""

from decimal import Decimal, InvalidOperation, localcontext
from typing import Union

from core.exceptions import InvalidInput

RAW_PER_NANO = 10 ** 30
_PRECISION = 80


def to_raw(amount: Union[str, int, Decimal]) -> int:
    """Convert a NANO amount to raw units without rounding.

    Raises:
        InvalidInput: For non-numeric, negative or over-precise amounts.
    """
    with localcontext() as ctx:
        ctx.prec = _PRECISION
        try:
            value = Decimal(str(amount).strip())
        except (InvalidOperation, ValueError):
            raise InvalidInput(f"Invalid amount: {amount!r}") from None
        if not value.is_finite() or value < 0:
            raise InvalidInput(f"Invalid amount: {amount!r}")
        raw = value.scaleb(30)
        if raw != raw.to_integral_value():
            raise InvalidInput(f"Amount has more than 30 decimal places: {amount!r}")
        return int(raw)


def from_raw(raw: int) -> str:
    with localcontext() as ctx:
        ctx.prec = _PRECISION
        value = Decimal(int(raw)).scaleb(-30).normalize()
        return format(value, "f")
