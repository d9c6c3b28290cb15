from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Union


AmountInput = Union[Decimal, str, int, float]

# Fits a 32-bit INTEGER column on every supported backend.
MAX_AMOUNT_CENTS = 1_000_000_000


def parse_amount(value: AmountInput) -> int:
    """Parse a currency amount into integer cents.

    Only positive, finite amounts up to ``MAX_AMOUNT_CENTS`` are valid.
    """
    if isinstance(value, bool):
        raise ValueError("Invalid amount")
    try:
        amount = Decimal(str(value).strip())
    except InvalidOperation as exc:
        raise ValueError("Invalid amount") from exc
    if not amount.is_finite():
        raise ValueError("Amount must be a finite number")
    # Bounds are checked before scaling so huge exponents never reach quantize().
    if amount <= 0:
        raise ValueError("Amount must be positive")
    if amount > Decimal(MAX_AMOUNT_CENTS) / 100:
        raise ValueError("Amount is too large")
    cents = int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    if cents <= 0:
        raise ValueError("Amount must be positive")
    return cents


def cents_to_units(cents: int) -> float:
    return float(Decimal(cents) / 100)
