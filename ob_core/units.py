from __future__ import annotations

from dataclasses import dataclass
from decimal import Context, Decimal
from typing import Optional


NATIVE_DECIMALS = 18

# Wide enough for any uint256 amount at any token precision.
_EXACT = Context(prec=200)


def to_decimal(value) -> Decimal:
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def from_units(amount, decimals: int) -> Decimal:
    """Convert an integer token amount into a decimal amount."""
    return Decimal(int(amount)).scaleb(-int(decimals), context=_EXACT)


def to_units(amount, decimals: int) -> int:
    """Convert a decimal amount into integer token units.

    Raises ValueError if the amount carries more fractional digits than the
    token can represent.
    """
    scaled = to_decimal(amount).scaleb(int(decimals), context=_EXACT)
    integral = scaled.to_integral_value(context=_EXACT)
    if scaled != integral:
        raise ValueError(f"amount {amount!r} has more than {decimals} decimals")
    return int(integral)


def same_address(a: Optional[str], b: Optional[str]) -> bool:
    if a is None or b is None:
        return a is b
    return a.lower() == b.lower()


@dataclass(frozen=True)
class TokenInfo:
    name: str
    address: str
    decimals: int

    def from_units(self, amount) -> Decimal:
        return from_units(amount, self.decimals)

    def to_units(self, amount) -> int:
        return to_units(amount, self.decimals)
