"""Additive platform fee arithmetic.

The buyer is charged ``base + fee`` where ``fee = base * p / 100``; the seller
keeps ``base`` in full. Every amount is a ``Decimal`` quantized to cents with
ROUND_HALF_UP, and ``split_additive`` assigns the rounding remainder to the fee
so that ``base + fee`` always equals the charged total exactly.
"""
from decimal import Decimal, ROUND_HALF_UP

from settlement.errors import IrrecoverableError, ValidationError

CENT = Decimal("0.01")
HUNDRED = Decimal("100")


def to_decimal(value) -> Decimal:
    if isinstance(value, Decimal):
        return value
    # floats go through str() so 107.9 stays 107.9
    return Decimal(str(value))


def quantize(value) -> Decimal:
    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def to_minor_units(amount) -> int:
    """Convert a major-unit amount (dollars) to processor minor units (cents)."""
    return int((quantize(amount) * HUNDRED).to_integral_value(rounding=ROUND_HALF_UP))


def from_minor_units(cents: int) -> Decimal:
    return quantize(Decimal(int(cents)) / HUNDRED)


def _check_inputs(amount, fee_percent) -> tuple[Decimal, Decimal]:
    amount = quantize(amount)
    fee_percent = to_decimal(fee_percent)
    if fee_percent < 0:
        raise ValidationError("Platform fee percentage cannot be negative", code="invalid_fee_percent")
    if amount < 0:
        raise ValidationError("Amount cannot be negative", code="invalid_amount")
    return amount, fee_percent


def split_additive(total_charged, fee_percent) -> tuple[Decimal, Decimal]:
    """Split a charged total into ``(base, fee)``."""
    total, fee_percent = _check_inputs(total_charged, fee_percent)
    base = quantize(total / (1 + fee_percent / HUNDRED))
    fee = total - base
    if base < 0 or fee < 0:
        raise IrrecoverableError(
            f"Fee split of {total} at {fee_percent}% produced base={base} fee={fee}"
        )
    return base, fee


def apply_additive(base, fee_percent) -> Decimal:
    """Compose the charged total from a seller base amount."""
    base, fee_percent = _check_inputs(base, fee_percent)
    return quantize(base * (1 + fee_percent / HUNDRED))
