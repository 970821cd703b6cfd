"""Split builders for new expenses.

Each builder returns ``(user_id, share_amount)`` pairs whose amounts add up
to the expense amount to the cent.
"""
from __future__ import annotations

from decimal import Decimal, InvalidOperation, ROUND_DOWN
from typing import Any, Dict, List, Optional, Sequence, Tuple

from .money import CENT, ZERO, amounts_close, quantize, to_decimal

SPLIT_TYPES = ("equal", "manual")
SPLIT_METHODS = ("amount", "percentage")

HUNDRED = Decimal("100")

Split = Tuple[int, Decimal]


def _check_members(user_ids: Sequence[int]) -> None:
    if not user_ids:
        raise ValueError("no_split_members")
    if len(set(user_ids)) != len(user_ids):
        raise ValueError("duplicate_split_member")


def equal_split(amount: Decimal, user_ids: Sequence[int]) -> List[Split]:
    _check_members(user_ids)

    count = len(user_ids)
    per_person = (amount / count).quantize(CENT, rounding=ROUND_DOWN)
    # Leftover cents go one each to the last members.
    leftover = int((quantize(amount) - per_person * count) / CENT)

    return [
        (user_id, per_person + CENT if index >= count - leftover else per_person)
        for index, user_id in enumerate(user_ids)
    ]


def _parse_entries(user_ids: Sequence[int], custom: Dict[Any, Any]) -> List[Split]:
    parsed: List[Split] = []
    for user_id in user_ids:
        raw = custom.get(user_id, custom.get(str(user_id), 0))
        if raw in (None, ""):
            raw = 0
        try:
            value = to_decimal(raw)
        except (TypeError, ValueError, InvalidOperation):
            raise ValueError("invalid_split_value") from None
        if value < ZERO:
            raise ValueError("invalid_split_value")
        parsed.append((user_id, value))
    return parsed


def manual_amount_split(amount: Decimal, user_ids: Sequence[int], custom: Dict[Any, Any]) -> List[Split]:
    _check_members(user_ids)
    shares = _parse_entries(user_ids, custom)

    total = sum((value for _, value in shares), ZERO)
    if not amounts_close(total, amount):
        raise ValueError("share_total_mismatch")
    return shares


def percentage_split(amount: Decimal, user_ids: Sequence[int], custom: Dict[Any, Any]) -> List[Split]:
    _check_members(user_ids)
    percentages = _parse_entries(user_ids, custom)

    total_pct = sum((pct for _, pct in percentages), ZERO)
    if not amounts_close(total_pct, HUNDRED):
        raise ValueError("percentage_total_mismatch")

    shares: List[Split] = []
    total_assigned = ZERO
    for user_id, pct in percentages[:-1]:
        share = quantize(amount * pct / HUNDRED)
        shares.append((user_id, share))
        total_assigned += share

    remainder = quantize(amount - total_assigned)
    if remainder < ZERO:
        raise ValueError("percentage_total_mismatch")
    shares.append((percentages[-1][0], remainder))
    return shares


def build_splits(
    amount: Decimal,
    split_type: str,
    user_ids: Sequence[int],
    split_method: Optional[str] = None,
    custom: Optional[Dict[Any, Any]] = None,
) -> List[Split]:
    if split_type not in SPLIT_TYPES:
        raise ValueError("invalid_split_type")
    if split_type == "equal":
        return equal_split(amount, user_ids)

    split_method = split_method or "amount"
    if split_method not in SPLIT_METHODS:
        raise ValueError("invalid_split_method")
    if split_method == "amount":
        return manual_amount_split(amount, user_ids, custom or {})
    return percentage_split(amount, user_ids, custom or {})
