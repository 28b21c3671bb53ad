"""
金额与币种最小单位

所有金额在进入账本之前必须能精确表示为该币种的最小单位，
账本、幂等缓存与渠道扣款因此始终看到同一个金额。
"""
from __future__ import annotations

from decimal import Decimal
from typing import Union

# Currencies without a minor unit
ZERO_DECIMAL_CURRENCIES = frozenset({"JPY", "KRW", "CLP"})

Amount = Union[Decimal, int, str]


def minor_unit_exponent(currency: str) -> int:
    return 0 if (currency or "").upper() in ZERO_DECIMAL_CURRENCIES else 2


def fits_minor_units(amount: Amount, currency: str) -> bool:
    """amount 是否能被 currency 的最小单位精确表示"""
    value = Decimal(amount)
    quantum = Decimal(1).scaleb(-minor_unit_exponent(currency))
    return value == value.quantize(quantum)


def to_minor_units(amount: Amount, currency: str) -> int:
    value = Decimal(amount).scaleb(minor_unit_exponent(currency))
    if value != value.to_integral_value():
        raise ValueError(f"{amount} {currency} is not a whole number of minor units")
    return int(value)


def from_minor_units(minor: int, currency: str) -> Decimal:
    return Decimal(int(minor)).scaleb(-minor_unit_exponent(currency))
