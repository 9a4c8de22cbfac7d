from decimal import Decimal, ROUND_HALF_UP


CENT = Decimal("0.01")


def to_cents(amount: Decimal) -> int:
    return int((Decimal(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_cents(cents: int) -> Decimal:
    return (Decimal(cents) / 100).quantize(CENT)


def format_amount(cents: int) -> str:
    """Plain decimal text without trailing zeros, e.g. 10000 -> '100', 1050 -> '10.5'."""
    value = Decimal(cents).scaleb(-2).normalize()
    return f"{value:f}"
