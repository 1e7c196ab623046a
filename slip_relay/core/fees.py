"""
Amount normalization and platform fee computation.
"""
import math
import re
from typing import Any, Optional

from .exceptions import ValidationError

MIN_AMOUNT_CENTS = 50  # Stripe minimum charge


def normalize_amount(value: Any) -> int:
    """
    Coerce a caller-supplied amount to whole cents.

    The result is ``max(50, floor(value))``. Missing, boolean, non-numeric
    and non-finite input is rejected rather than silently zeroed.

    Args:
        value: Amount in cents as sent by the front-end

    Returns:
        int: Amount in cents, at least the Stripe minimum

    Raises:
        ValidationError: If the amount is not a finite number
    """
    if value is None or isinstance(value, bool):
        raise ValidationError("amount_cents is required", code="invalid_amount")

    if isinstance(value, str):
        value = value.strip()
        if re.fullmatch(r"[+-]?\d+", value):
            value = int(value)

    # Integers stay exact; float() would round past 2**53
    if isinstance(value, int):
        return max(MIN_AMOUNT_CENTS, value)

    try:
        amount = float(value)
    except (TypeError, ValueError):
        raise ValidationError(
            f"amount_cents must be a number, got {value!r}", code="invalid_amount"
        )

    if not math.isfinite(amount):
        raise ValidationError("amount_cents must be finite", code="invalid_amount")

    return max(MIN_AMOUNT_CENTS, math.floor(amount))


def compute_fee(amount_cents: int, bps: int = 0, fixed: int = 0) -> int:
    """
    Platform fee: ``floor(amount_cents * bps / 10000) + fixed``.

    A zero rate or zero fixed fee disables that term.
    """
    fee = 0
    if bps:
        fee += (amount_cents * bps) // 10000
    if fixed:
        fee += fixed
    return fee


def application_fee_for(
    amount_cents: int,
    connected_account_id: Optional[str],
    bps: int = 0,
    fixed: int = 0,
) -> Optional[int]:
    """
    Fee to send with a destination charge, or None to omit the parameter.

    Only charged when funds go to a connected account and the fee is positive.
    """
    if not connected_account_id:
        return None
    fee = compute_fee(amount_cents, bps, fixed)
    return fee if fee > 0 else None
