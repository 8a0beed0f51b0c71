from decimal import ROUND_HALF_UP, Decimal


def to_decimal(value) -> Decimal:
    if isinstance(value, Decimal):
        return value
    # str() first so floats like 0.2 do not drag binary noise into the product.
    return Decimal(str(value))


def round_half_up(value) -> int:
    return int(to_decimal(value).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def percent_of(amount_cents: int, fraction) -> int:
    """``amount_cents * fraction`` rounded half-up to whole cents."""
    return round_half_up(Decimal(int(amount_cents)) * to_decimal(fraction))
