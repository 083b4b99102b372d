# storefront/utils/money.py

from decimal import Decimal, ROUND_HALF_UP

Money = Decimal

CENT = Decimal("0.01")


def D(x) -> Money:
    return x if isinstance(x, Decimal) else Decimal(str(x or "0"))


def round_money(x: Money) -> Money:
    return D(x).quantize(CENT, rounding=ROUND_HALF_UP)


def to_cents(x) -> int:
    return int((round_money(x) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_cents(cents) -> Money:
    return round_money(D(cents) / Decimal(100))


def amounts_match(a, b, tolerance: Money = CENT) -> bool:
    # 1 cent tolerance, inclusive of float noise on the other side
    return abs(D(a) - D(b)) < tolerance + Decimal("0.000001")
